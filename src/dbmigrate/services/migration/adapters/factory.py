"""Adapter selection by configured database type."""

import importlib
import logging
from typing import Optional

from ..database_adapter import DatabaseAdapter
from ..errors import ConfigurationError, DriverNotInstalledError
from ..events import EventEmitter
from ..models import ConnectionConfig

logger = logging.getLogger(__name__)

# database type -> (module, class, driver package on the index)
SUPPORTED_DATABASES: dict[str, tuple[str, str, str]] = {
    "vertica": (".vertica_adapter", "VerticaAdapter", "vertica-python"),
    "postgresql": (".postgresql_adapter", "PostgreSQLAdapter", "psycopg[binary] psycopg-pool"),
}

DEFAULT_PORTS = {
    "vertica": 5433,
    "postgresql": 5432,
}


def create_adapter(
    database_type: str,
    config: ConnectionConfig,
    events: Optional[EventEmitter] = None,
    default_schema: str = "public",
) -> DatabaseAdapter:
    """Instantiate the adapter for a database type.

    Args:
        database_type: ``vertica`` or ``postgresql``
        config: Connection settings
        events: Observer shared with the pipeline
        default_schema: Namespace used when a call names none

    Raises:
        ConfigurationError: Unknown database type
        DriverNotInstalledError: The driver package cannot be imported
    """
    key = database_type.strip().lower()
    if key not in SUPPORTED_DATABASES:
        raise ConfigurationError(
            f"Unsupported database type: {database_type}. "
            f"Supported types: {', '.join(sorted(SUPPORTED_DATABASES))}"
        )

    module_name, class_name, package = SUPPORTED_DATABASES[key]
    try:
        module = importlib.import_module(module_name, __package__)
    except ImportError as e:
        logger.error(f"Driver for {key} is not installed: {e}")
        raise DriverNotInstalledError(key, package) from e

    adapter_class = getattr(module, class_name)
    return adapter_class(config, events=events, default_schema=default_schema)
