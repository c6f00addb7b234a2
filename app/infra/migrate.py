#!/usr/bin/env python3
# app/infra/migrate.py
"""
Standalone migration runner.

    python -m app.infra.migrate

Run it before starting the web or worker process; neither applies
migrations on its own.
"""
import asyncio
import sys

from app.config import settings
from app.infra.db_async import close_pool, init_pool
from app.infra.logging_config import get_logger, setup_logging
from app.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


async def main() -> int:
    setup_logging(level=settings.log_level, use_json=settings.is_production)
    logger.info("=" * 60)
    logger.info("Database Migration Runner")
    logger.info(f"Environment: {settings.app_env}")
    if not settings.database_url:
        logger.info(f"Database: {settings.pghost}:{settings.pgport}/{settings.pgdatabase}")
    logger.info("=" * 60)

    try:
        await init_pool()
        result = await apply_migrations()
    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    if result['applied']:
        for migration in result['applied']:
            logger.info(f"  applied {migration}")
    else:
        logger.info("No new migrations to apply")

    return 0 if result['ok'] else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
