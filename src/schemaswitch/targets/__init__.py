"""
Database targets for the blue and green environments.

Exports:
    - DatabaseTarget: Protocol the orchestrator depends on
    - SchemaSnapshot: Captured state used by rollback points
    - SQLAlchemyDatabaseTarget: Target over a SQLAlchemy async engine
    - InMemoryDatabaseTarget: Statement-log target with fault injection
"""

from schemaswitch.targets.base import DatabaseTarget, SchemaSnapshot
from schemaswitch.targets.memory import InMemoryDatabaseTarget
from schemaswitch.targets.sql import (
    DEFAULT_EXCLUDED_TABLES,
    SQLAlchemyDatabaseTarget,
    requires_autocommit,
)

__all__ = [
    "DatabaseTarget",
    "SchemaSnapshot",
    "SQLAlchemyDatabaseTarget",
    "InMemoryDatabaseTarget",
    "DEFAULT_EXCLUDED_TABLES",
    "requires_autocommit",
]
