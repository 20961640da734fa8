"""Database schema and pool helpers."""
from .schema_manager import (
    DDL_PATH,
    create_pool,
    create_schema,
    database_errors,
    init_schema_tables,
    schema_context,
)

__all__ = [
    "DDL_PATH",
    "create_pool",
    "create_schema",
    "database_errors",
    "init_schema_tables",
    "schema_context",
]
