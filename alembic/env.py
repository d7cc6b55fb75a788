"""
Alembic environment configuration for the rental admin backend.

Imports all model modules so their tables are registered with Base.metadata,
then uses DATABASE_URL from app config (single source of truth).
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from rental_admin.core.config import get_settings
from rental_admin.core.models import Base

# Import all model modules so their tables are registered with Base.metadata
import rental_admin.core.models  # noqa: F401 - marketplace and admin tables
import rental_admin.core.duplicate_models  # noqa: F401 - duplicate hub tables

# Alembic Config object (provides access to alembic.ini values)
config = context.config

# Set up Python logging from alembic.ini
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Target metadata for autogenerate
target_metadata = Base.metadata

# The marketplace app owns users/properties/bookings/... and migrates them
# itself; autogenerate here only tracks the tables this service creates.
MANAGED_TABLES = {"duplicatecases", "duplicatemergeoperations", "admin_audit_logs"}


def include_name(name, type_, parent_names):
    """Filter for autogenerate: only track tables this service owns."""
    if type_ == "table":
        return name in MANAGED_TABLES
    return True


def get_url() -> str:
    """Read DATABASE_URL from app settings (same source as the running app)."""
    return get_settings().database_url


def run_migrations_offline() -> None:
    """Generate SQL without a live DB connection."""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_name=include_name,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Connect to the database and apply migrations."""
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = get_url()

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            include_name=include_name,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
