"""Schema management and connection pooling.

All docdrift tables live in one PostgreSQL schema; the pool pins search_path
to it so queries can use bare table names.
"""
from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import asyncpg

from docdrift.config import DatabaseConfig
from docdrift.errors import DatabaseError

logger = logging.getLogger(__name__)

DDL_PATH = Path(__file__).parent / "schema.sql"


async def create_schema(conn: asyncpg.Connection, schema_name: str) -> None:
    """Create a schema if it doesn't exist.

    Args:
        conn: Database connection
        schema_name: Name of the schema to create
    """
    await conn.execute(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"')


async def init_schema_tables(conn: asyncpg.Connection, schema_name: str) -> None:
    """Initialize all docdrift tables in a schema.

    Args:
        conn: Database connection
        schema_name: Name of the schema to initialize
    """
    ddl_sql = DDL_PATH.read_text()

    # Extensions are database-wide, not schema-specific
    await conn.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')
    await conn.execute('CREATE EXTENSION IF NOT EXISTS vector')

    await create_schema(conn, schema_name)

    filtered_ddl = '\n'.join(
        line for line in ddl_sql.split('\n')
        if not line.strip().upper().startswith('CREATE EXTENSION')
    )

    async with schema_context(conn, schema_name):
        await conn.execute(filtered_ddl)

    logger.info(f"Initialized docdrift tables in schema {schema_name}")


@asynccontextmanager
async def schema_context(
    conn: asyncpg.Connection,
    schema_name: str
) -> AsyncIterator[asyncpg.Connection]:
    """Context manager that sets search_path for a schema.

    Args:
        conn: Database connection
        schema_name: Schema name to use

    Yields:
        The same connection with search_path set
    """
    old_path = await conn.fetchval("SHOW search_path")

    try:
        # public stays on the path for the vector extension types
        await conn.execute(f'SET search_path TO "{schema_name}", public')
        yield conn
    finally:
        await conn.execute(f'SET search_path TO {old_path}')


async def create_pool(config: DatabaseConfig) -> asyncpg.Pool:
    """Create a connection pool pinned to the docdrift schema.

    Args:
        config: Database configuration

    Returns:
        asyncpg pool

    Raises:
        DatabaseError: If the database is unreachable
    """
    try:
        pool = await asyncpg.create_pool(
            dsn=config.dsn,
            min_size=config.pool_min_size,
            max_size=config.pool_max_size,
            server_settings={"search_path": f'"{config.schema_name}", public'},
        )
    except (asyncpg.PostgresError, OSError) as e:
        raise DatabaseError(f"Could not connect to database: {e}") from e

    logger.info(f"Database pool ready (schema={config.schema_name})")
    return pool


@asynccontextmanager
async def database_errors(operation: str) -> AsyncIterator[None]:
    """Re-raise driver failures as DatabaseError.

    Args:
        operation: Short description used in the error message
    """
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        raise DatabaseError(f"{operation} failed: {e}") from e
