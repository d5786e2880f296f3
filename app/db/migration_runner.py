"""
Migration Runner - Applies pending Alembic migrations at application startup.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from app.config import settings

logger = logging.getLogger(__name__)

ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


@dataclass(frozen=True)
class MigrationStatus:
    """Current vs head revision of the database schema."""

    current_revision: str | None
    head_revision: str | None

    @property
    def pending(self) -> bool:
        return self.current_revision != self.head_revision


def sync_database_url(url: str | None = None) -> str:
    """
    Synchronous driver URL for the Alembic command API.

    The application talks to PostgreSQL through asyncpg; Alembic's command API
    needs a blocking driver.
    """
    return (url or settings.database_url).replace("asyncpg", "psycopg2")


def _alembic_config() -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_database_url().replace("%", "%%"))
    return alembic_cfg


def _current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        return MigrationContext.configure(conn).get_current_revision()


def _head_revision(alembic_cfg: Config) -> str | None:
    return ScriptDirectory.from_config(alembic_cfg).get_current_head()


def check_migrations_status() -> MigrationStatus:
    """Inspect the schema revision without applying anything."""
    alembic_cfg = _alembic_config()
    engine = create_engine(sync_database_url())
    try:
        return MigrationStatus(
            current_revision=_current_revision(engine),
            head_revision=_head_revision(alembic_cfg),
        )
    finally:
        engine.dispose()


def run_migrations() -> None:
    """
    Run pending Alembic migrations.

    Called at application startup so the schema is current before the first
    request. Raises RuntimeError if an upgrade fails.
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("Alembic config not found at %s, skipping migrations", ALEMBIC_INI_PATH)
        return

    try:
        status = check_migrations_status()
        if not status.pending:
            logger.info("Database schema is up to date (revision: %s)", status.current_revision)
            return

        logger.info(
            "Running migrations from %s to %s", status.current_revision, status.head_revision
        )
        command.upgrade(_alembic_config(), "head")
        logger.info("Migrations complete")
    except Exception as e:
        logger.error("Migration failed: %s", e)
        raise RuntimeError(f"Database migration failed: {e}") from e
