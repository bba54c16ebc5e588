"""
Connection scopes for SQLAlchemy-backed components.

Database targets and the run repository are constructed with either an
``AsyncEngine`` or a caller-owned ``AsyncConnection``. ``open_connection``
turns either into a connection for one unit of work:

- ``TRANSACTION``: ``engine.begin()``, committed on exit, rolled back on error
- ``READ``: ``engine.connect()`` without an explicit transaction
- ``AUTOCOMMIT``: ``engine.connect()`` switched to ``isolation_level="AUTOCOMMIT"``,
  for statements PostgreSQL refuses inside a transaction block
  (``CREATE INDEX CONCURRENTLY``, ``VACUUM``)

A caller-owned connection is yielded as is for ``TRANSACTION`` and ``READ``;
the caller owns its transaction. ``AUTOCOMMIT`` needs an engine.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


class ConnectionMode(Enum):
    TRANSACTION = "transaction"
    READ = "read"
    AUTOCOMMIT = "autocommit"


@asynccontextmanager
async def open_connection(
    bind: AsyncEngine | AsyncConnection,
    mode: ConnectionMode = ConnectionMode.TRANSACTION,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection from ``bind`` in the requested mode.

    Raises:
        ValueError: If ``AUTOCOMMIT`` is requested on a caller-owned connection
    """
    if isinstance(bind, AsyncConnection):
        if mode is ConnectionMode.AUTOCOMMIT:
            raise ValueError("AUTOCOMMIT needs an engine, got a caller-owned connection")
        yield bind
        return

    if mode is ConnectionMode.TRANSACTION:
        async with bind.begin() as conn:
            yield conn
        return

    async with bind.connect() as conn:
        if mode is ConnectionMode.AUTOCOMMIT:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
        yield conn


__all__ = ["ConnectionMode", "open_connection"]
