from __future__ import annotations

import os
import sys
from logging.config import fileConfig

from sqlalchemy import pool

from alembic import context

# ---------------------------------------------------------
# Alembic Config
# ---------------------------------------------------------
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# ---------------------------------------------------------
# env.py vit dans merenda/alembic/env.py : racine du repo sur sys.path
# ---------------------------------------------------------
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from merenda.app.config import get_settings  # noqa: E402
from merenda.app.db.base import Base  # noqa: E402
from merenda.app.db.models import models_v1  # noqa: F401,E402  (import for side effects)
from merenda.app.db.session import make_engine  # noqa: E402

target_metadata = Base.metadata

# DATABASE_URL (env / .env) prime sur alembic.ini
if not config.get_main_option("sqlalchemy.url") or os.getenv("DATABASE_URL"):
    config.set_main_option("sqlalchemy.url", get_settings().DATABASE_URL)


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    # même moteur que l'application : pragma FK sous SQLite
    connectable = make_engine(config.get_main_option("sqlalchemy.url"), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
