"""
SessionGuard -- client-side session consistency watchdog.

Keeps a client's belief about who is logged in aligned with the remote
authentication provider, detects identity drift, and guarantees the client
never stays silently authenticated as the wrong subject.
"""

__version__ = "0.1.0"
