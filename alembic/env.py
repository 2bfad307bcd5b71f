import os
import sys
from logging.config import fileConfig

from alembic import context

# run_migrations_online builds its own engine with graphrollup.core.db.build_engine
# so SQLite paths are prepared the same way the service prepares them.

# Add project root so graphrollup.* imports work
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from graphrollup.core.config import settings  # noqa: E402
from graphrollup.core.db import Base, build_engine  # noqa: E402

# Import all models so they're registered with Base
from graphrollup.core.eventstore.models import RollupEventRecord  # noqa: E402
from graphrollup.database.models import (  # noqa: E402
    RollupConfigurationRecord,
    RollupExecutionRecord,
    RollupMergedGraphRecord,
)

config = context.config
# DATABASE_URL overrides alembic.ini; an empty ini url falls back to settings
if os.environ.get("DATABASE_URL"):
    config.set_main_option("sqlalchemy.url", settings.sqlalchemy_url)
elif (
    not config.get_main_option("sqlalchemy.url")
    or config.get_main_option("sqlalchemy.url") == "sqlite:///"
):
    config.set_main_option("sqlalchemy.url", settings.sqlalchemy_url)

if not config.get_main_option("sqlalchemy.url"):
    raise ValueError(
        "No sqlalchemy.url configured in alembic.ini or environment variables. "
        "Please set DATABASE_URL or configure sqlalchemy.url in alembic.ini."
    )

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline():
    url = config.get_main_option("sqlalchemy.url")
    context.configure(url=url, target_metadata=target_metadata, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    url = config.get_main_option("sqlalchemy.url")
    if url is None:
        raise RuntimeError("sqlalchemy.url must be set before running migrations")
    connectable = build_engine(url)

    assert all(
        model.__tablename__ in Base.metadata.tables
        for model in [
            RollupEventRecord,
            RollupConfigurationRecord,
            RollupExecutionRecord,
            RollupMergedGraphRecord,
        ]
    ), "Rollup models must be registered with Base.metadata"

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()

    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
