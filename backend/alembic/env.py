from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

# backend/ は alembic.ini の prepend_sys_path で解決
from app.core.database import Base
from app.core.config import settings

# 課金モデルをインポート (autogenerate用)
import app.models  # noqa: F401

config = context.config

# .env の DATABASE_URL を優先
config.set_main_option("sqlalchemy.url", settings.DATABASE_URL)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# SQLite は ALTER が限定的なためバッチモードで差分を適用
_render_as_batch = settings.DATABASE_URL.startswith("sqlite")


def run_migrations_offline() -> None:
    """オフラインモード: SQL出力のみ"""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        render_as_batch=_render_as_batch,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """オンラインモード: DB接続してマイグレーション実行"""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=_render_as_batch,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
