# chatrelay/infra/schema_validator.py
"""
Schema version check at startup.

Migrations run separately (``python -m chatrelay.infra.migrate``); the
application refuses to start against a schema older or newer than
``settings.expected_schema_version``.
"""
from __future__ import annotations
from chatrelay.config import settings
from chatrelay.infra.db_async import db_conn
from chatrelay.infra.logging_config import get_logger

logger = get_logger(__name__)

_MIGRATE_HINT = "Run migrations first: python -m chatrelay.infra.migrate"


async def validate_schema_version() -> dict:
    """
    Raises:
        RuntimeError: schema_migrations missing, empty, or at the wrong version
    """
    async with db_conn() as conn:
        table_exists = await conn.fetchval(
            """
            SELECT EXISTS (
                SELECT FROM information_schema.tables
                WHERE table_schema = 'public'
                AND table_name = 'schema_migrations'
            )
            """
        )

        if not table_exists:
            error = f"Schema migrations table not found. {_MIGRATE_HINT}"
            logger.critical(error)
            raise RuntimeError(error)

        latest = await conn.fetchrow(
            """
            SELECT version, applied_at
            FROM schema_migrations
            ORDER BY version DESC
            LIMIT 1
            """
        )

    if not latest:
        error = f"No migrations have been applied. {_MIGRATE_HINT}"
        logger.critical(error)
        raise RuntimeError(error)

    current_version = latest['version']
    if current_version != settings.expected_schema_version:
        error = (
            f"Schema version mismatch! "
            f"Expected: {settings.expected_schema_version}, "
            f"Found: {current_version}. {_MIGRATE_HINT}"
        )
        logger.critical(error)
        raise RuntimeError(error)

    logger.info(f"Schema version validated: {current_version}")
    return {
        "ok": True,
        "current_version": current_version,
        "expected_version": settings.expected_schema_version,
    }


async def get_schema_info() -> dict:
    """Applied migrations, for the detailed health report."""
    async with db_conn() as conn:
        rows = await conn.fetch(
            """
            SELECT version, applied_at
            FROM schema_migrations
            ORDER BY applied_at
            """
        )

    return {
        "migrations_applied": len(rows),
        "latest_version": rows[-1]['version'] if rows else None,
        "expected_version": settings.expected_schema_version,
    }
