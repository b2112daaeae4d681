"""SessionGuard -- HTTP API."""
