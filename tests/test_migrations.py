# tests/test_migrations.py
"""Tests for the SQL migration runner with a mocked connection"""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from mayday.infra.migrations_async import MIGRATION_LOCK_KEY, apply_migrations, migration_files


def _conn(applied_versions):
    mock_conn = AsyncMock()
    mock_conn.fetch = AsyncMock(return_value=[{"version": v} for v in applied_versions])
    return mock_conn


async def _run(mock_conn, **kwargs):
    with patch("mayday.infra.migrations_async.db_conn") as mock_ctx:
        mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
        mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)
        result = await apply_migrations(**kwargs)
    mock_ctx.assert_called_once_with(autocommit=False)
    return result


def test_packaged_migrations_are_found():
    assert [p.name for p in migration_files()][0] == "001_init.sql"


@pytest.mark.asyncio
async def test_fresh_database_applies_everything():
    mock_conn = _conn([])

    result = await _run(mock_conn)

    assert result["applied"] == ["001_init.sql"]
    first_call = mock_conn.execute.call_args_list[0]
    assert first_call.args == ("SELECT pg_advisory_xact_lock($1)", MIGRATION_LOCK_KEY)
    assert mock_conn.execute.call_args_list[-1].args[1] == "001_init.sql"


@pytest.mark.asyncio
async def test_applied_versions_are_skipped():
    mock_conn = _conn(["001_init.sql"])

    result = await _run(mock_conn)

    assert result == {"ok": True, "applied": [], "count": 0}
    # lock + schema_migrations table only
    assert mock_conn.execute.await_count == 2


@pytest.mark.asyncio
async def test_custom_directory_in_filename_order(tmp_path):
    (tmp_path / "002_second.sql").write_text("SELECT 2;")
    (tmp_path / "001_first.sql").write_text("SELECT 1;")
    (tmp_path / "notes.txt").write_text("not a migration")

    result = await _run(_conn([]), sql_dir=tmp_path)

    assert result["applied"] == ["001_first.sql", "002_second.sql"]
