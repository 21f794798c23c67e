"""Exception hierarchy for the migration engine.

Row-local failures (transformation errors, rejected inserts) are recovered
and reported through ``BatchResult`` / ``TableMigrationResult``. Everything
raised from here upwards terminates the current table's pipeline and is
handled by the orchestrator or a front end.
"""

from typing import Any, Optional


class MigrationError(Exception):
    """Base class for all migration engine errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(MigrationError):
    """Settings, mappings or adapter selection are invalid."""


class DriverNotInstalledError(ConfigurationError):
    """The client library for a configured database type is not importable."""

    def __init__(self, database_type: str, package: str) -> None:
        super().__init__(
            f"The {database_type} driver is not installed. "
            f"Install it with: pip install {package}",
            {"database_type": database_type, "package": package},
        )
        self.database_type = database_type
        self.package = package


class AdapterConnectionError(MigrationError, ConnectionError):
    """An adapter could not reach (or lost) its database."""


class IntrospectionError(MigrationError):
    """Table metadata could not be read; the table must not be written."""

    def __init__(self, message: str, table: Optional[str] = None) -> None:
        super().__init__(message, {"table": table})
        self.table = table


class TransformationError(MigrationError):
    """A single row could not be transformed into the target shape."""

    def __init__(self, message: str, column: Optional[str] = None) -> None:
        super().__init__(message, {"column": column})
        self.column = column


class BatchFailedError(MigrationError):
    """A batch failed while the pipeline runs in fail-fast mode."""

    def __init__(self, message: str, batch_result: Any, offset: int) -> None:
        super().__init__(message, {"offset": offset})
        self.batch_result = batch_result
        self.offset = offset
