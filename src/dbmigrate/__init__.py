"""dbmigrate - bulk table migration from Vertica to PostgreSQL."""

__version__ = "0.1.0"
