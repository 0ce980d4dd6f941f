"""Alembic environment for the trayflow schema (async engine, asyncpg).

The target database defaults to ``DATABASE_URL`` from ``trayflow.config``;
``alembic -x database_url=... upgrade head`` points a one-off run elsewhere.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.ext.asyncio import create_async_engine

from trayflow.config import get_settings

# The package import registers every table on Base.metadata; importing
# trayflow.models.base alone would leave autogenerate blind.
from trayflow.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    overrides = context.get_x_argument(as_dictionary=True)
    return overrides.get("database_url") or get_settings().database_url


def _skip_empty_revisions(migration_context, revision, directives) -> None:  # type: ignore[no-untyped-def]
    """Do not write an autogenerate revision that contains no operations."""
    if getattr(config.cmd_opts, "autogenerate", False):
        script = directives[0]
        if script.upgrade_ops.is_empty():
            directives[:] = []


def _configure(**kwargs) -> None:  # type: ignore[no-untyped-def]
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        compare_server_default=True,
        transaction_per_migration=True,
        process_revision_directives=_skip_empty_revisions,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the migration SQL to stdout for review by a DBA."""
    _configure(
        url=_database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_with_connection(connection) -> None:  # type: ignore[no-untyped-def]
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    connectable = create_async_engine(_database_url())
    async with connectable.connect() as connection:
        await connection.run_sync(_run_with_connection)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
