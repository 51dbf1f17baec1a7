"""
Migration Runner - Applies pending Alembic migrations at application startup.

Switched on with RUN_MIGRATIONS_ON_STARTUP; otherwise run `alembic upgrade head`
as a deploy step.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.engine import Connection
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from ava_api.db.session import Database

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


@dataclass(frozen=True)
class MigrationStatus:
    current_revision: str | None
    head_revision: str | None

    @property
    def pending(self) -> bool:
        return self.current_revision != self.head_revision


def build_alembic_config(database_url: str, ini_path: Path = ALEMBIC_INI_PATH) -> Config:
    """Alembic config pointing at the application database."""
    alembic_cfg = Config(str(ini_path))
    # ConfigParser interpolation treats % specially
    alembic_cfg.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    # Keep structlog's handlers; env.py would otherwise reconfigure logging
    alembic_cfg.attributes["configure_logger"] = False
    return alembic_cfg


def head_revision(alembic_cfg: Config) -> str | None:
    """Get the head revision from migration scripts."""
    return ScriptDirectory.from_config(alembic_cfg).get_current_head()


def _current_revision(connection: Connection) -> str | None:
    return MigrationContext.configure(connection).get_current_revision()


async def check_migrations_status(database: Database, database_url: str) -> MigrationStatus:
    """Compare the database revision with the newest migration script."""
    alembic_cfg = build_alembic_config(database_url)
    async with database.engine.connect() as connection:
        current = await connection.run_sync(_current_revision)
    return MigrationStatus(current_revision=current, head_revision=head_revision(alembic_cfg))


async def run_migrations(database: Database, database_url: str) -> None:
    """
    Run pending Alembic migrations.

    A no-op when the schema is already at head. env.py drives its own event
    loop, so the upgrade runs in a worker thread.
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    status = await check_migrations_status(database, database_url)
    if not status.pending:
        logger.info("database_schema_current", revision=status.current_revision)
        return

    logger.info(
        "database_migration_starting",
        current_revision=status.current_revision,
        head_revision=status.head_revision,
    )
    try:
        await asyncio.to_thread(command.upgrade, build_alembic_config(database_url), "head")
    except Exception as e:
        logger.error("database_migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e

    logger.info("database_migration_complete", revision=status.head_revision)
