"""SessionGuard -- API routers."""
