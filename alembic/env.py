"""Alembic environment for comicgen SQLite storage."""

from __future__ import annotations

import logging

from sqlalchemy import engine_from_config, pool

from alembic import context
from comicgen.storage.sqlmodel_models import SQLModel

config = context.config
target_metadata = SQLModel.metadata

_migration_logger = logging.getLogger("alembic.runtime.migration")


def run_migrations_offline() -> None:
    """Emit migration SQL without a live connection."""

    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations against the configured SQLite database."""

    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=True,
        )
        with context.begin_transaction():
            context.run_migrations()
        _migration_logger.debug("Migrations applied for %s", connection.engine.url)
    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
