"""Logging setup with optional Logfire forwarding.

Modules get their logger through ``get_logger(__name__)``. Records go to
stderr; when ``LOGFIRE_TOKEN`` is set they are also sent to Logfire.
"""

import logging
import os
from typing import Optional

import logfire

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False


def get_logger(name: str) -> logging.Logger:
    """Get a module logger under the standard logging hierarchy."""
    return logging.getLogger(name)


def configure_logging(level: str = "INFO", service_name: Optional[str] = None) -> None:
    """Configure root logging once per process.

    Args:
        level: Log level name (debug, info, warning, error)
        service_name: Name reported to Logfire
    """
    global _configured

    root = logging.getLogger()
    root.setLevel(level.upper())
    if _configured:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

    if os.getenv("LOGFIRE_TOKEN"):
        logfire.configure(
            send_to_logfire="if-token-present",
            service_name=service_name or "dbmigrate",
            console=False,
        )
        root.addHandler(logfire.LogfireLoggingHandler())

    _configured = True


__all__ = ["configure_logging", "get_logger", "logfire"]
