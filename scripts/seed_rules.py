#!/usr/bin/env python3
"""
Load a JSON law rule file into the law_rules table.

Usage:
    python scripts/seed_rules.py                      # packaged West Virginia rules
    python scripts/seed_rules.py path/to/rules.json   # custom rule file
    python scripts/seed_rules.py --migrate            # apply migrations first

Reads DATABASE_URL from the environment (or .env), like the service.
Run it after editing a rule file when RULE_TABLE_SOURCE=postgres.
"""
import asyncio
import sys

from mayday.config import settings
from mayday.core.law.table import load_rule_table
from mayday.infra.db_async import close_pool, init_pool
from mayday.infra.logging_config import get_logger, setup_logging
from mayday.infra.migrations_async import apply_migrations
from mayday.infra.pg_rule_table_async import AsyncPostgresRuleTable

logger = get_logger("seed_rules")


async def seed(path: str | None, migrate: bool) -> int:
    table = load_rule_table(path)
    await init_pool()
    try:
        if migrate:
            result = await apply_migrations()
            logger.info(f"Migrations applied: {result['applied']}")
        return await AsyncPostgresRuleTable().upsert_rows(table.rows)
    finally:
        await close_pool()


def main():
    path = None
    migrate = False

    for arg in sys.argv[1:]:
        if arg == "--migrate":
            migrate = True
        elif arg in ("--help", "-h"):
            print(__doc__)
            return
        else:
            path = arg

    setup_logging(level=settings.log_level, use_json=False)
    count = asyncio.run(seed(path, migrate))
    print(f"Seeded {count} rules")


if __name__ == "__main__":
    main()
