"""
SessionGuard -- Telemetry

Structured logging setup.
"""

from sessionguard.telemetry.logging import setup_logging

__all__ = ["setup_logging"]
