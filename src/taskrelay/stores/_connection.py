"""
Connection handling helper for SQL store operations.

Stores accept either an AsyncEngine or an AsyncConnection. The helper
yields a connection in both cases and wraps SQLAlchemy failures in
`StoreError`, so callers only ever see library exceptions.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from taskrelay.exceptions import StoreError


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Context manager for executing database operations.

    Args:
        conn: Database connection or engine
        transactional: If True, wrap in transaction (begin).
                       If False, use bare connection (connect).
                       Only applies when conn is an AsyncEngine.

    Yields:
        AsyncConnection ready for execute() calls

    Raises:
        StoreError: If SQLAlchemy raises inside the block

    Example:
        >>> async with execute_with_connection(self.conn) as conn:
        ...     await conn.execute(query, params)
    """
    try:
        if isinstance(conn, AsyncEngine):
            if transactional:
                async with conn.begin() as connection:
                    yield connection
            else:
                async with conn.connect() as connection:
                    yield connection
        else:
            # Caller owns transaction management of a passed-in connection
            yield conn
    except SQLAlchemyError as e:
        raise StoreError(f"Database operation failed: {e}") from e
