"""Database adapters for the migration source and target.

Concrete adapters import their driver at module import time; use
``create_adapter`` to get a clear error when a driver is missing.
"""

from .factory import SUPPORTED_DATABASES, create_adapter

__all__ = [
    "SUPPORTED_DATABASES",
    "create_adapter",
]
