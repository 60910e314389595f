"""Alembic environment for the carepath schema."""

from __future__ import annotations

from alembic import context
import sqlalchemy as sa
from sqlalchemy import pool

from carepath.db.config import get_database_settings
from carepath.db.models import Base

config = context.config
settings = get_database_settings()
config.set_main_option("sqlalchemy.url", settings.url)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=settings.url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine_options = settings.engine_options()
    connect_args = engine_options.pop("connect_args", {})
    engine = sa.create_engine(
        settings.url,
        connect_args=connect_args,
        poolclass=pool.NullPool,
        echo=engine_options.get("echo", False),
    )

    with engine.begin() as connection:
        if settings.is_postgres:
            connection.execute(sa.text("SET TIME ZONE 'UTC'"))
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            transaction_per_migration=True,
        )
        context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
