# mayday/infra/migrations_async.py
"""
Applies mayday/infra/sql/*.sql in filename order, once each.

Web and worker processes may start together, so the run holds a
transaction-scoped advisory lock and only one of them migrates.
"""
from __future__ import annotations

from pathlib import Path

from mayday.infra.db_async import db_conn
from mayday.infra.logging_config import get_logger

logger = get_logger(__name__)

SQL_DIR = Path(__file__).resolve().parent / "sql"
MIGRATION_LOCK_KEY = 48_151_623  # pg_advisory_xact_lock key


def migration_files(sql_dir: Path = SQL_DIR) -> list[Path]:
    return sorted(p for p in sql_dir.glob("*.sql") if p.is_file())


async def apply_migrations(sql_dir: Path = SQL_DIR) -> dict:
    """
    Returns:
        dict with keys ok, applied (filenames run by this call), count
    """
    applied_now: list[str] = []

    async with db_conn(autocommit=False) as conn:
        await conn.execute("SELECT pg_advisory_xact_lock($1)", MIGRATION_LOCK_KEY)
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )
        done = {r["version"] for r in await conn.fetch("SELECT version FROM schema_migrations")}

        for path in migration_files(sql_dir):
            if path.name in done:
                continue
            logger.info(f"Applying migration {path.name}")
            await conn.execute(path.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", path.name)
            applied_now.append(path.name)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
