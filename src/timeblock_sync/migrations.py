"""Programmatic Alembic migration runner for the calendar sync tables.

Lets ``timeblock-sync migrate`` (and embedding applications) upgrade the
schema without shelling out to the Alembic CLI.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"

CORE_CHAIN = "core"

_URL_SCHEME_PREFIXES = ("postgresql+asyncpg://", "postgres://")


def sqlalchemy_url(db_url: str) -> str:
    """Turn an asyncpg-style URL into one SQLAlchemy's sync engine accepts."""
    for prefix in _URL_SCHEME_PREFIXES:
        if db_url.startswith(prefix):
            return "postgresql://" + db_url[len(prefix) :]
    return db_url


def build_alembic_config(db_url: str) -> Config:
    """Build an Alembic Config pointing at the core version chain.

    Args:
        db_url: Database URL in any form accepted by ``database.url``.

    Returns:
        A configured alembic.config.Config instance.
    """
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Alembic Config uses configparser interpolation; percent-encoded DB URLs
    # must escape '%' as '%%'.
    config.set_main_option("sqlalchemy.url", sqlalchemy_url(db_url).replace("%", "%%"))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions" / CORE_CHAIN))
    return config


async def run_migrations(db_url: str) -> None:
    """Upgrade the calendar sync schema to head.

    Alembic drives a synchronous engine, so the upgrade runs in a worker
    thread to keep the event loop free.
    """
    config = build_alembic_config(db_url)
    logger.info("Running migration chain to head (chain=%s)", CORE_CHAIN)
    await asyncio.to_thread(command.upgrade, config, f"{CORE_CHAIN}@head")
