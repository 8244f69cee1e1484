from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from quote_chat.config import get_settings
from quote_chat.thread_store import ChatStoreBase

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = ChatStoreBase.metadata
_CHAT_TABLES = frozenset(target_metadata.tables)


def _database_url() -> str:
    return get_settings().database_url or config.get_main_option("sqlalchemy.url")


def _include_object(obj, name, type_, reflected, compare_to) -> bool:
    # quotes, organizations, profiles and memberships live in the same database but belong to the platform schema.
    if type_ == "table":
        return name in _CHAT_TABLES
    return True


def _configure(**options) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_object=_include_object,
        compare_type=True,
        **options,
    )


def run_migrations_offline() -> None:
    _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(_database_url(), poolclass=pool.NullPool, future=True)
    with engine.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
