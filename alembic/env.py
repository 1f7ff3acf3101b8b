# alembic/env.py
import logging
import os
import sys
from logging.config import fileConfig

from sqlalchemy import create_engine, pool
from alembic import context

# make sure project root is on sys.path so `knowledge_base` imports work
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from knowledge_base.config import settings  # noqa: E402
from knowledge_base.models import Base  # noqa: E402

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata


def _to_sync_url(async_url: str) -> str:
    """
    Convert async driver scheme to sync driver for Alembic
    (postgresql+asyncpg -> postgresql+psycopg2, sqlite+aiosqlite -> sqlite).
    """
    return async_url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


db_url = os.environ.get("DATABASE_URL") or settings.database_url
sync_db_url = _to_sync_url(db_url)
logger.info("Using DB URL (masked): %s...", sync_db_url[:40])

# an explicit sqlalchemy.url in alembic.ini wins
if not config.get_main_option("sqlalchemy.url"):
    config.set_main_option("sqlalchemy.url", sync_db_url)


def run_migrations_offline():
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = create_engine(config.get_main_option("sqlalchemy.url"), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
