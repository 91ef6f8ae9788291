"""
Alembic environment.

The database URL is provided by run_migrations(); when alembic is invoked
from the command line it falls back to the application configuration.
"""
from alembic import context
from sqlalchemy import pool, create_engine
from sqlalchemy.engine import Connection

from opportunity_engine.db.database import Base

# Import all models to register them with Base.metadata
import opportunity_engine.db.models  # noqa: F401

config = context.config
target_metadata = Base.metadata


def _database_url() -> str:
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url
    from opportunity_engine.config import get_config
    return get_config().database.url


def run_migrations_offline() -> None:
    """Emit migration SQL to the script output without a connection"""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations against a live connection"""
    connectable = create_engine(_database_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        do_run_migrations(connection)

    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
