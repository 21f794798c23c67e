"""Migration settings loaded from YAML or JSON files.

A configuration file has one ``migration`` section::

    migration:
      name: vertica-to-postgresql
      source: {type: vertica, host: ..., database: ...}
      target: {type: postgresql, host: ..., database: ...}
      mappings: {path: ../mappings/vertica-to-postgresql}
      settings: {batch_size: 1000, parallel_workers: 1}
      tables: [...]

String values may reference environment variables as ``${VAR}`` or
``${VAR:-default}``. A ``.env`` file is loaded first.
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..services.migration.adapters.factory import DEFAULT_PORTS, SUPPORTED_DATABASES
from ..services.migration.column_mapper import DEFAULT_CODE_SENTINEL
from ..services.migration.errors import ConfigurationError
from ..services.migration.hierarchy import OrderingStrategy
from ..services.migration.models import ConnectionConfig, DataTypeMapping, TableMappingConfig
from .logfire_config import get_logger

logger = get_logger(__name__)

SUPPORTED_SUFFIXES = (".yaml", ".yml", ".json")

TABLE_MAPPINGS_FILE = "table-mappings.yaml"
COLUMN_MAPPINGS_FILE = "column-mappings.yaml"
DATA_TYPE_MAPPINGS_FILE = "data-type-mappings.yaml"

# Environment variables that override credentials, per database type
CREDENTIAL_ENV_VARS = {
    "vertica": ("VERTICA_USERNAME", "VERTICA_PASSWORD"),
    "postgresql": ("POSTGRES_USERNAME", "POSTGRES_PASSWORD"),
}

_ENV_REFERENCE = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


class DatabaseSettings(BaseModel):
    """Connection settings for one side of the migration."""
    model_config = ConfigDict(extra="ignore")

    type: str
    host: str = "localhost"
    port: Optional[int] = None
    database: str = ""
    username: str = ""
    password: str = Field(default="", repr=False)
    ssl: bool = False
    default_schema: str = "public"
    connection_timeout: float = 30.0
    query_timeout: float = 60.0
    extra_params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in SUPPORTED_DATABASES:
            raise ValueError(
                f"unsupported database type '{value}' "
                f"(supported: {', '.join(sorted(SUPPORTED_DATABASES))})"
            )
        return value

    @model_validator(mode="after")
    def _default_port(self) -> "DatabaseSettings":
        if self.port is None:
            self.port = DEFAULT_PORTS[self.type]
        return self

    def to_connection_config(self) -> ConnectionConfig:
        return ConnectionConfig(
            host=self.host,
            port=self.port,
            database=self.database,
            username=self.username,
            password=self.password,
            ssl=self.ssl,
            connection_timeout=self.connection_timeout,
            query_timeout=self.query_timeout,
            extra_params=self.extra_params,
        )


class RunSettings(BaseModel):
    """Knobs for how tables are migrated."""
    model_config = ConfigDict(extra="ignore")

    batch_size: int = 1000
    parallel_workers: int = 1
    fail_fast: bool = False
    stop_on_table_failure: bool = False
    strict_batches: bool = False
    null_code_sentinel: str = DEFAULT_CODE_SENTINEL
    ordering_strategy: OrderingStrategy = OrderingStrategy.TOPOLOGICAL
    log_level: str = "info"

    @model_validator(mode="before")
    @classmethod
    def _continue_on_error(cls, data: Any) -> Any:
        # Older configuration files spell table-level behavior this way
        if isinstance(data, dict) and "continue_on_error" in data and "stop_on_table_failure" not in data:
            data = dict(data)
            data["stop_on_table_failure"] = not data.pop("continue_on_error")
        return data

    @field_validator("batch_size", "parallel_workers")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than 0")
        return value


class MigrationSettings(BaseModel):
    """Validated migration configuration consumed by the orchestrator."""
    model_config = ConfigDict(extra="ignore")

    name: str = "migration"
    description: Optional[str] = None
    source: DatabaseSettings
    target: DatabaseSettings
    settings: RunSettings = Field(default_factory=RunSettings)
    tables: list[TableMappingConfig] = Field(default_factory=list)
    type_mappings: list[DataTypeMapping] = Field(default_factory=list)
    config_path: Optional[Path] = None

    @field_validator("tables")
    @classmethod
    def _unique_tables(cls, tables: list[TableMappingConfig]) -> list[TableMappingConfig]:
        seen: set[str] = set()
        for table in tables:
            key = table.source_table.lower()
            if key in seen:
                raise ValueError(f"duplicate table mapping for {table.source_table}")
            seen.add(key)
        return tables

    def enabled_tables(self) -> list[TableMappingConfig]:
        return [table for table in self.tables if table.enabled]

    def find_table_mapping(self, source_table: str) -> Optional[TableMappingConfig]:
        for table in self.tables:
            if table.source_table.lower() == source_table.lower():
                return table
        return None

    def problems(self) -> list[str]:
        """Checks that need no database: incomplete connection details."""
        errors = []
        for side, database in (("Source", self.source), ("Target", self.target)):
            if not database.host or not database.database:
                errors.append(f"{side} database connection information is incomplete")
        if not self.tables:
            errors.append("No table mappings configured")
        return errors


def expand_env(value: Any) -> Any:
    """Replace ``${VAR}`` references in every string of a parsed document.

    Unset variables without a default are left as written.
    """
    if isinstance(value, str):
        def replace(match: re.Match) -> str:
            name, default = match.group(1), match.group(2)
            if name in os.environ:
                return os.environ[name]
            return default if default is not None else match.group(0)
        return _ENV_REFERENCE.sub(replace, value)
    if isinstance(value, dict):
        return {key: expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env(item) for item in value]
    return value


def read_document(path: Path) -> Any:
    """Parse a YAML or JSON file.

    Raises:
        ConfigurationError: Missing file, unsupported suffix or parse error
    """
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise ConfigurationError(
            f"Unsupported config file format: {path.suffix or path.name}. Use .yaml, .yml, or .json"
        )
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            if suffix == ".json":
                return json.load(f)
            return yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to parse config file {path}: {e}") from e


def _normalize_type_mapping(entry: dict[str, Any]) -> dict[str, Any]:
    entry = dict(entry)
    if "transformation" in entry and "transformer" not in entry:
        entry["transformer"] = entry.pop("transformation")
        entry.setdefault("requires_transformation", True)
    return entry


def _merge_tables(
    inline: list[dict[str, Any]],
    from_file: list[dict[str, Any]],
    column_mappings: dict[str, list[dict[str, Any]]],
) -> list[dict[str, Any]]:
    """Inline tables win over mapping-file tables; column mappings attach by source table."""
    tables: dict[str, dict[str, Any]] = {}
    for entry in list(from_file) + list(inline):
        if not isinstance(entry, dict) or not entry.get("source_table"):
            raise ConfigurationError(f"Table mapping without source_table: {entry!r}")
        entry = dict(entry)
        entry.setdefault("target_table", str(entry["source_table"]).lower())
        tables[str(entry["source_table"]).lower()] = entry

    for table_name, mappings in column_mappings.items():
        key = str(table_name).lower()
        if key not in tables:
            logger.warning(
                "column_mappings_without_table",
                extra={"table": table_name},
            )
            tables[key] = {"source_table": table_name, "target_table": key}
        tables[key].setdefault("column_mappings", mappings or [])

    return list(tables.values())


def _load_mapping_directory(directory: Path) -> tuple[list, dict, list]:
    """Read the optional mapping files of a mappings directory."""
    tables: list = []
    columns: dict = {}
    types: list = []

    if not directory.is_dir():
        raise ConfigurationError(f"Mappings directory not found: {directory}")

    table_file = directory / TABLE_MAPPINGS_FILE
    if table_file.exists():
        tables = (read_document(table_file) or {}).get("tables") or []

    column_file = directory / COLUMN_MAPPINGS_FILE
    if column_file.exists():
        columns = (read_document(column_file) or {}).get("column_mappings") or {}

    type_file = directory / DATA_TYPE_MAPPINGS_FILE
    if type_file.exists():
        types = (read_document(type_file) or {}).get("type_mappings") or []

    return tables, columns, types


def _apply_credential_overrides(database: dict[str, Any]) -> dict[str, Any]:
    database = dict(database)
    variables = CREDENTIAL_ENV_VARS.get(str(database.get("type", "")).lower())
    if variables:
        username_var, password_var = variables
        if os.getenv(username_var):
            database["username"] = os.environ[username_var]
        if os.getenv(password_var):
            database["password"] = os.environ[password_var]
    return database


def load_settings(path: str | Path, env_file: Optional[str | Path] = None) -> MigrationSettings:
    """Load and validate a migration configuration file.

    Args:
        path: ``.yaml``, ``.yml`` or ``.json`` file
        env_file: ``.env`` file to load (default: search from the working directory)

    Returns:
        Validated settings

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    path = Path(path)
    if env_file:
        load_dotenv(dotenv_path=env_file)
    else:
        load_dotenv()

    document = expand_env(read_document(path) or {})
    if not isinstance(document, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    migration = dict(document.get("migration", document))
    for section in ("source", "target"):
        if not isinstance(migration.get(section), dict):
            raise ConfigurationError(f"Missing '{section}' database section in {path}")
        migration[section] = _apply_credential_overrides(migration[section])

    file_tables: list = []
    file_columns: dict = {}
    file_types: list = []
    mappings_path = (migration.get("mappings") or {}).get("path")
    if mappings_path:
        directory = Path(mappings_path)
        if not directory.is_absolute():
            directory = path.parent / directory
        file_tables, file_columns, file_types = (
            expand_env(part) for part in _load_mapping_directory(directory)
        )

    column_mappings = dict(file_columns)
    column_mappings.update(migration.get("column_mappings") or {})
    migration["tables"] = _merge_tables(migration.get("tables") or [], file_tables, column_mappings)

    type_mappings: dict[str, dict[str, Any]] = {}
    for entry in list(file_types) + list(migration.get("type_mappings") or []):
        entry = _normalize_type_mapping(entry)
        type_mappings[str(entry.get("source_type", "")).lower()] = entry
    migration["type_mappings"] = list(type_mappings.values())

    try:
        settings = MigrationSettings(**migration, config_path=path)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e

    logger.info(
        "settings_loaded",
        extra={
            "config": str(path),
            "tables": len(settings.tables),
            "type_mappings": len(settings.type_mappings),
        },
    )
    return settings
