"""Service layer for dbmigrate."""
