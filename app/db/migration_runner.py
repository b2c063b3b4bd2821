"""
Migration Runner - Runs Alembic migrations at application startup.

Pending migrations are applied before the app starts serving requests.
"""

from pathlib import Path

from sqlalchemy import Engine, create_engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from app.config import settings
from app.observability.logging import get_logger

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def _get_sync_database_url() -> str:
    """Get synchronous database URL for migrations.

    Alembic's command API uses synchronous connections, so asyncpg URLs are
    converted to psycopg2 URLs.
    """
    return settings.database_url.replace("asyncpg", "psycopg2")


def _get_current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    script = ScriptDirectory.from_config(alembic_cfg)
    return script.get_current_head()


def run_migrations() -> None:
    """
    Run pending Alembic migrations.

    Blocking; call from a worker thread inside the event loop.
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    engine = create_engine(_get_sync_database_url())

    try:
        current = _get_current_revision(engine)
        head = _get_head_revision(alembic_cfg)

        if current == head:
            logger.info("database_schema_up_to_date", revision=current)
            return

        logger.info("database_migrations_running", from_revision=current, to_revision=head)

        with engine.begin() as connection:
            alembic_cfg.attributes["connection"] = connection
            command.upgrade(alembic_cfg, "head")

        logger.info("database_migrations_complete", revision=_get_current_revision(engine))

    except Exception as e:
        logger.error("database_migration_failed", error=str(e), exc_info=True)
        raise RuntimeError(f"Database migration failed: {e}") from e

    finally:
        engine.dispose()
