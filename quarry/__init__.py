"""
Quarry - Async Relational Data Access for Python
================================================

A fluent SQL query builder and an Active Record model layer on top of
aiosqlite, asyncpg and aiomysql.

Features:
---------
- Chainable query builder with identifier safety
- Active Record models with attribute casting
- Relationships with batched eager loading
- Lifecycle observers with opt-in vetoing
- Soft deletes and automatic timestamps
- Pagination

Quick Start:
    from quarry import Database, Model

    class User(Model):
        __table_name__ = "users"

    async with Database("sqlite:///app.db") as db:
        User.use(db)
        user = await User.create({"name": "Ada"})
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

from quarry.orm import (
    Database,
    DatabaseConfig,
    Model,
    Observer,
    QueryBuilder,
    VetoingObserver,
)

__all__ = [
    "__version__",
    "Database",
    "DatabaseConfig",
    "Model",
    "Observer",
    "QueryBuilder",
    "VetoingObserver",
]
