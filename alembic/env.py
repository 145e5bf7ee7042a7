"""Alembic environment - runs migrations with a synchronous connection."""

import os
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context

from app.db.models import Base

config = context.config

# The app configures its own logging before running migrations
if config.config_file_name is not None and not config.attributes.get("url_overridden"):
    fileConfig(config.config_file_name, disable_existing_loggers=False)

# DATABASE_URL wins over alembic.ini when running `alembic upgrade head` by hand
if os.getenv("DATABASE_URL") and not config.attributes.get("url_overridden"):
    url = os.environ["DATABASE_URL"].replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")
    config.set_main_option("sqlalchemy.url", url.replace("%", "%%"))

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit SQL without a database connection."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations against a live connection."""
    connection = config.attributes.get("connection")
    if connection is not None:
        # Supplied by the startup runner, which holds the migration lock on it
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()
        return

    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
