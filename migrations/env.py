from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from app.yiba.models import Base
# Module models register their tables on Base.metadata when imported.
from app.yiba.modules.documents import models as _documents  # noqa: F401
from app.yiba.modules.email_templates import models as _email_templates  # noqa: F401
from app.yiba.modules.institutions import models as _institutions  # noqa: F401
from app.yiba.modules.invites import models as _invites  # noqa: F401
from app.yiba.modules.learners import models as _learners  # noqa: F401
from app.yiba.modules.notifications import models as _notifications  # noqa: F401
from app.yiba.modules.qcto_requests import models as _qcto_requests  # noqa: F401
from app.yiba.modules.readiness import models as _readiness  # noqa: F401
from app.yiba.modules.reviews import models as _reviews  # noqa: F401
from app.yiba.modules.submissions import models as _submissions  # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

db_url = (os.environ.get("DATABASE_URL") or "").strip()
if db_url:
    config.set_main_option("sqlalchemy.url", db_url)
elif not config.get_main_option("sqlalchemy.url"):
    config.set_main_option("sqlalchemy.url", "sqlite:///yiba.db")

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
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
