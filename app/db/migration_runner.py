"""
Migration Runner - Runs Alembic migrations at application startup.

Pending migrations are applied before the API starts accepting requests.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import Engine, create_engine, text

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

from app.config import settings

logger = logging.getLogger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"

# Arbitrary constant shared by every instance of the service
MIGRATION_LOCK_KEY = 7_240_118


@dataclass(frozen=True)
class MigrationStatus:
    """Current and head schema revisions."""

    current_revision: str | None
    head_revision: str

    @property
    def pending(self) -> bool:
        return self.current_revision != self.head_revision


def sync_database_url(url: str) -> str:
    """Convert an async driver URL to its synchronous counterpart.

    Alembic's command API uses synchronous connections.
    """
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


def _alembic_config(sync_url: str) -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    alembic_cfg.attributes["url_overridden"] = True
    return alembic_cfg


def _get_current_revision(engine: Engine) -> str | None:
    """Get the current database revision."""
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str:
    """Get the head revision from migration scripts."""
    script = ScriptDirectory.from_config(alembic_cfg)
    head = script.get_current_head()
    if head is None:
        raise RuntimeError("No migration scripts found")
    return head


def check_migrations_status(database_url: str | None = None) -> MigrationStatus:
    """Check migration status without applying them."""
    sync_url = sync_database_url(database_url or settings.database_url)
    alembic_cfg = _alembic_config(sync_url)
    engine = create_engine(sync_url)
    try:
        return MigrationStatus(
            current_revision=_get_current_revision(engine),
            head_revision=_get_head_revision(alembic_cfg),
        )
    finally:
        engine.dispose()


def run_migrations(database_url: str | None = None) -> None:
    """
    Run pending Alembic migrations.

    Called at application startup to ensure the database schema is up to date.
    On PostgreSQL the upgrade runs under a transaction-scoped advisory lock so
    that replicas starting together migrate one at a time.
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning(f"Alembic config not found at {ALEMBIC_INI_PATH}, skipping migrations")
        return

    sync_url = sync_database_url(database_url or settings.database_url)
    alembic_cfg = _alembic_config(sync_url)
    engine = create_engine(sync_url)

    try:
        with engine.begin() as conn:
            if conn.dialect.name == "postgresql":
                conn.execute(
                    text("SELECT pg_advisory_xact_lock(:key)"), {"key": MIGRATION_LOCK_KEY}
                )

            current = MigrationContext.configure(conn).get_current_revision()
            head = _get_head_revision(alembic_cfg)
            if current == head:
                logger.info(f"Database schema is up to date (revision: {current})")
                return

            logger.info(f"Running migrations from {current} to {head}")
            alembic_cfg.attributes["connection"] = conn
            command.upgrade(alembic_cfg, "head")

        logger.info(f"Migrations complete. Database now at revision: {head}")

    except Exception as e:
        logger.error(f"Migration failed: {e}")
        raise RuntimeError(f"Database migration failed: {e}") from e
    finally:
        engine.dispose()
