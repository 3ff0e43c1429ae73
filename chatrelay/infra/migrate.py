# chatrelay/infra/migrate.py
"""
Standalone migration runner.

    python -m chatrelay.infra.migrate

Run before starting the application (CI/CD step, init container or by hand).
The application validates the schema version at startup but never migrates.
"""
import asyncio
import sys

from chatrelay.config import settings
from chatrelay.infra.db_async import init_pool, close_pool
from chatrelay.infra.logging_config import setup_logging, get_logger
from chatrelay.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


async def main() -> int:
    logger.info("=" * 60)
    logger.info("chatrelay database migrations")
    logger.info(f"Environment: {settings.app_env}")
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

    if result["applied"]:
        for migration in result["applied"]:
            logger.info(f"  applied {migration}")
    else:
        logger.info("No new migrations to apply")

    return 0 if result["ok"] else 1


if __name__ == "__main__":
    setup_logging(level=settings.log_level, use_json=settings.is_production)
    sys.exit(asyncio.run(main()))
