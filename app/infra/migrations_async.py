# app/infra/migrations_async.py
"""
Async database migrations runner (asyncpg).
"""
from __future__ import annotations
from pathlib import Path

from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Serializes concurrent runners (web + worker starting together)
_MIGRATION_LOCK_KEY = 7_340_221


def _sql_dir() -> Path:
    """Get SQL migrations directory path."""
    # Next to this file: app/infra/sql
    return Path(__file__).resolve().parent / "sql"


def pending_files() -> list[Path]:
    return sorted(p for p in _sql_dir().glob("*.sql") if p.is_file())


async def apply_migrations() -> dict:
    """
    Apply SQL migrations from app/infra/sql directory.

    Migrations are applied in alphabetical order (001_dispatch_schema.sql, ...).
    Already applied migrations are tracked in schema_migrations table.

    Returns:
        dict with keys:
            - ok: bool (True if successful)
            - applied: list[str] (migration filenames applied in this run)
            - count: int (number of migrations applied)
    """
    files = pending_files()

    async with db_conn(autocommit=False) as conn:
        await conn.execute("SELECT pg_advisory_xact_lock($1)", _MIGRATION_LOCK_KEY)

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )

        rows = await conn.fetch("SELECT version FROM schema_migrations")
        applied = {row['version'] for row in rows}

        applied_now = []
        for p in files:
            version = p.name
            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue

            logger.info(f"Applying migration: {version}")
            await conn.execute(p.read_text(encoding="utf-8"))
            await conn.execute(
                "INSERT INTO schema_migrations(version) VALUES ($1)",
                version
            )

            applied_now.append(version)
            logger.info(f"Migration {version} applied successfully")

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}


async def current_schema_version() -> str | None:
    """Latest applied migration filename, or None on an empty database."""
    async with db_conn() as conn:
        exists = await conn.fetchval("SELECT to_regclass('public.schema_migrations') IS NOT NULL")
        if not exists:
            return None
        return await conn.fetchval("SELECT max(version) FROM schema_migrations")
