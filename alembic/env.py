import os
import sys
from logging.config import fileConfig
from pathlib import Path

from sqlalchemy import engine_from_config, pool
from sqlalchemy.engine import make_url

from alembic import context

# Make the src layout importable when alembic runs from a checkout
project_root = Path(__file__).resolve().parent.parent
src_root = project_root / "src"
if str(src_root) not in sys.path:
    sys.path.insert(0, str(src_root))

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Import models so their tables are registered with Base.metadata
from urbain.transit.db import Base  # noqa: E402
from urbain.transit.settings import settings  # noqa: E402
from urbain.transit.subscriptions.models import *  # noqa: F401,F403,E402

target_metadata = Base.metadata


def get_database_url() -> str:
    """
    Resolve the database URL: DATABASE_URL, then alembic.ini, then settings.

    Migrations run on a synchronous engine, so async driver suffixes
    (``+aiosqlite``, ``+asyncpg``) are stripped.
    """
    database_url = (
        os.getenv("DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
        or settings.database.url
    )
    url = make_url(database_url)
    if url.drivername.endswith(("+aiosqlite", "+asyncpg")):
        url = url.set(drivername=url.get_backend_name())
    return url.render_as_string(hide_password=False)


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode, emitting SQL to the script output."""
    context.configure(
        url=get_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode against a live connection."""
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = get_database_url()

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        if connection.dialect.name == "postgresql":
            connection.exec_driver_sql("SET lock_timeout = '5s'")
            connection.exec_driver_sql("SET statement_timeout = '60s'")
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
            # SQLite needs batch mode for ALTER TABLE
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
