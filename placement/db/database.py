"""Database access supporting both SQLite (aiosqlite) and PostgreSQL (asyncpg).

Backend is selected via the DATABASE_URL setting:
  - starts with "postgresql://" → asyncpg
  - absent / empty             → aiosqlite (uses DATABASE_PATH)

Repositories write SQL with ? placeholders and call ``commit()`` through the
orchestrator once per operation. The PostgreSQL wrapper converts placeholders
to $1, $2, … and opens a transaction lazily so that the same unit-of-work
semantics hold on both backends.
"""

import re
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from alembic import command
from alembic.config import Config

from placement.config import settings

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


def _is_postgres() -> bool:
    return settings.database_url.startswith("postgresql://")


# ── SQLite ────────────────────────────────────────────────────────────

async def connect_sqlite(path: str | None = None):
    import aiosqlite
    db = await aiosqlite.connect(path or settings.database_path)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    return db


# ── PostgreSQL wrapper ────────────────────────────────────────────────

_pg_pool = None


async def _get_pg_pool():
    global _pg_pool
    if _pg_pool is None:
        import asyncpg
        _pg_pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=2,
            max_size=10,
        )
    return _pg_pool


# Matches quoted strings (left alone) or a bare ? placeholder
_PARAM_RE = re.compile(r"'[^']*'|(\?)")


def _convert_placeholders(sql: str) -> str:
    """Replace ? with $1, $2, … for asyncpg, skipping ?s inside string literals."""
    counter = [0]

    def _replacer(match):
        if match.group(1) is None:
            return match.group(0)
        counter[0] += 1
        return f"${counter[0]}"

    return _PARAM_RE.sub(_replacer, sql)


class PgCursor:
    """Mimics the slice of the aiosqlite cursor API the repositories use."""

    __slots__ = ("_rows", "_idx")

    def __init__(self, rows=None):
        self._rows = rows or []
        self._idx = 0

    async def fetchone(self):
        if self._idx < len(self._rows):
            row = self._rows[self._idx]
            self._idx += 1
            return dict(row)
        return None

    async def fetchall(self):
        remaining = self._rows[self._idx:]
        self._idx = len(self._rows)
        return [dict(r) for r in remaining]


class PgConnection:
    """Wraps an asyncpg connection to present an aiosqlite-compatible interface."""

    def __init__(self, conn):
        self._conn = conn
        self._tx = None

    async def _ensure_tx(self):
        if self._tx is None:
            self._tx = self._conn.transaction()
            await self._tx.start()

    async def execute(self, sql: str, params=None):
        pg_sql = _convert_placeholders(sql)
        args = tuple(params) if params else ()
        await self._ensure_tx()

        if pg_sql.lstrip().upper().startswith("SELECT"):
            rows = await self._conn.fetch(pg_sql, *args)
            return PgCursor(rows=rows)
        await self._conn.execute(pg_sql, *args)
        return PgCursor()

    async def commit(self):
        if self._tx is not None:
            tx, self._tx = self._tx, None
            await tx.commit()

    async def rollback(self):
        if self._tx is not None:
            tx, self._tx = self._tx, None
            await tx.rollback()

    async def close(self):
        # Pool release is handled by get_db(); drop anything left uncommitted
        await self.rollback()


# ── Public API ────────────────────────────────────────────────────────

@asynccontextmanager
async def open_db():
    """Open a connection for the lifetime of the block (requests, outbox worker)."""
    if _is_postgres():
        pool = await _get_pg_pool()
        async with pool.acquire() as conn:
            pg_conn = PgConnection(conn)
            try:
                yield pg_conn
            finally:
                await pg_conn.close()
    else:
        db = await connect_sqlite()
        try:
            yield db
        finally:
            await db.close()


async def get_db() -> AsyncGenerator:
    """FastAPI dependency that yields a database connection and closes it after the request."""
    async with open_db() as db:
        yield db


def _run_alembic_upgrade():
    """Run Alembic migrations to head (synchronous, called once at startup)."""
    alembic_cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "migrations"))
    alembic_cfg.attributes["configure_logger"] = False

    if _is_postgres():
        alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url)
    else:
        alembic_cfg.set_main_option(
            "sqlalchemy.url", f"sqlite:///{settings.database_path}"
        )

    command.upgrade(alembic_cfg, "head")


async def init_db():
    if _is_postgres():
        logger.info("Using PostgreSQL backend: %s", settings.database_url.split("@")[-1])
    else:
        db_path = Path(settings.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Using SQLite backend: %s", settings.database_path)

    _run_alembic_upgrade()


async def close_db():
    """Shutdown hook: close the connection pool if using PostgreSQL."""
    global _pg_pool
    if _pg_pool is not None:
        await _pg_pool.close()
        _pg_pool = None
