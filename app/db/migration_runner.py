"""
Schema migrations for the ledger tables.

With RUN_MIGRATIONS_ON_STARTUP the application upgrades the schema to the
newest Alembic revision before serving; otherwise `alembic upgrade head` runs
as a deploy step. Alembic drives a synchronous psycopg2 connection.
"""

from pathlib import Path

from sqlalchemy import create_engine
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from app.config import settings

logger = get_logger(__name__)

ALEMBIC_INI_PATH = Path(__file__).resolve().parents[2] / "alembic.ini"


def get_sync_database_url() -> str:
    """DATABASE_URL with the asyncpg driver swapped for psycopg2."""
    return settings.database_url.replace("+asyncpg", "+psycopg2")


def _alembic_config(sync_url: str) -> Config:
    config = Config(str(ALEMBIC_INI_PATH))
    # ConfigParser interpolation treats % as a directive
    config.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    return config


def pending_revision(config: Config, sync_url: str) -> tuple[str | None, str | None]:
    """(current, head) revisions; equal when the schema is up to date."""
    head = ScriptDirectory.from_config(config).get_current_head()
    engine = create_engine(sync_url)
    try:
        with engine.connect() as conn:
            current = MigrationContext.configure(conn).get_current_revision()
    finally:
        engine.dispose()
    return current, head


def run_migrations() -> None:
    """
    Upgrade the ledger schema to head.

    Raises:
        RuntimeError: If the upgrade fails; the application must not start
            against a partially migrated schema
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    sync_url = get_sync_database_url()
    config = _alembic_config(sync_url)

    try:
        current, head = pending_revision(config, sync_url)
        if current == head:
            logger.info("schema_up_to_date", revision=current)
            return

        logger.info("schema_upgrade_started", from_revision=current, to_revision=head)
        command.upgrade(config, "head")
        logger.info("schema_upgrade_completed", revision=head)
    except Exception as e:
        logger.error("schema_upgrade_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e
