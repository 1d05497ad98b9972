"""
Shared fixtures: an in-memory SQLite database with the test schema.
"""

import pytest

from quarry.orm import Database, Model


SCHEMA = [
    """CREATE TABLE countries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT,
        created_at TEXT,
        updated_at TEXT
    )""",
    """CREATE TABLE users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT,
        email TEXT,
        country_id INTEGER,
        is_admin INTEGER NOT NULL DEFAULT 0,
        settings TEXT,
        born_on TEXT,
        created_at TEXT,
        updated_at TEXT
    )""",
    """CREATE TABLE profiles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER,
        bio TEXT,
        created_at TEXT,
        updated_at TEXT
    )""",
    """CREATE TABLE posts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER,
        title TEXT,
        deleted_at TEXT,
        created_at TEXT,
        updated_at TEXT
    )""",
    """CREATE TABLE comments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        post_id INTEGER,
        body TEXT,
        created_at TEXT,
        updated_at TEXT
    )""",
    """CREATE TABLE roles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT
    )""",
    """CREATE TABLE role_user (
        user_id INTEGER,
        role_id INTEGER
    )""",
    """CREATE TABLE images (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        url TEXT,
        imageable_type TEXT,
        imageable_id INTEGER,
        created_at TEXT,
        updated_at TEXT
    )""",
]


class RecordingDatabase(Database):
    """Database that remembers every statement it runs."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.statements = []

    async def query(self, sql, params=None):
        self.statements.append((sql, list(params or [])))
        return await super().query(sql, params)

    async def execute(self, sql, params=None, primary_key="id"):
        self.statements.append((sql, list(params or [])))
        return await super().execute(sql, params, primary_key)

    def reset(self):
        self.statements.clear()

    @property
    def selects(self):
        return [sql for sql, _ in self.statements if sql.startswith("SELECT")]


@pytest.fixture
async def db():
    """Connected database with the test schema, bound to every model."""
    database = RecordingDatabase("sqlite:///:memory:")
    await database.connect()

    for statement in SCHEMA:
        await database.execute(statement)

    Model.use(database)
    database.reset()

    yield database

    Model._database = None
    await database.close()
