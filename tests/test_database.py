"""
Unit tests for engine options and schema creation.
"""
import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.pool import QueuePool

from rental_admin.core.database import create_tables, engine_options


@pytest.mark.unit
def test_postgres_engine_is_pooled():
    options = engine_options("postgresql://admin:secret@db/rental")

    assert options["poolclass"] is QueuePool
    assert options["pool_pre_ping"] is True
    assert "connect_args" not in options


@pytest.mark.unit
def test_sqlite_engine_skips_pool_options():
    options = engine_options("sqlite:///./rental_admin.db")

    assert options == {"connect_args": {"check_same_thread": False}}


@pytest.mark.unit
def test_create_tables_includes_duplicate_hub_tables():
    engine = create_engine("sqlite://", **engine_options("sqlite://"))

    create_tables(engine)
    create_tables(engine)

    tables = set(inspect(engine).get_table_names())
    assert {"users", "duplicatecases", "duplicatemergeoperations", "admin_audit_logs"} <= tables
