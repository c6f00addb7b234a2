# app/infra/migrations_async.py
"""
Async database migrations runner (asyncpg).

Files in ``app/infra/sql`` are applied in name order, each one in its own
transaction together with its ``schema_migrations`` row.
"""
from __future__ import annotations
from pathlib import Path

from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

REQUIRED_TABLES = ("scheduled_notifications", "push_tokens")


def _sql_dir() -> Path:
    return Path(__file__).resolve().parent / "sql"


def pending_files(applied: set[str], sql_dir: Path | None = None) -> list[Path]:
    """Migration files not yet recorded in ``schema_migrations``, in apply order."""
    sql_dir = sql_dir or _sql_dir()
    return [
        p for p in sorted(sql_dir.glob("*.sql"))
        if p.is_file() and p.name not in applied
    ]


async def _applied_versions() -> set[str]:
    async with db_conn() as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )
        rows = await conn.fetch("SELECT version FROM schema_migrations")
        return {row['version'] for row in rows}


async def apply_migrations(sql_dir: Path | None = None) -> dict:
    """
    Apply pending SQL migrations.

    Returns:
        dict with keys:
            - ok: bool
            - applied: list[str] (filenames applied in this run)
            - count: int
    """
    applied = await _applied_versions()
    applied_now: list[str] = []

    for p in pending_files(applied, sql_dir):
        version = p.name
        logger.info(f"Applying migration: {version}")
        sql = p.read_text(encoding="utf-8")

        async with db_conn(autocommit=False) as conn:
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations(version) VALUES ($1)",
                version
            )

        applied_now.append(version)
        logger.info(f"Migration {version} applied successfully")

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
