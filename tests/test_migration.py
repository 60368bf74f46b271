"""Tests that the initial migration builds the same schema as the ORM metadata."""
import importlib.util
from pathlib import Path

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect, text

from devchain_core.models import Base

MIGRATION_PATH = Path(__file__).resolve().parents[1] / "alembic" / "versions" / "001_initial_schema.py"


def _load_migration():
    spec = importlib.util.spec_from_file_location("migration_001_initial_schema", MIGRATION_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def migrated_engine():
    engine = create_engine("sqlite://")
    migration = _load_migration()
    with engine.begin() as connection:
        with Operations.context(MigrationContext.configure(connection)):
            migration.upgrade()
    yield engine, migration
    engine.dispose()


class TestInitialMigration:
    def test_revision_identifiers(self):
        migration = _load_migration()
        assert migration.revision == "001"
        assert migration.down_revision is None

    def test_tables_match_metadata(self, migrated_engine):
        engine, _ = migrated_engine
        assert set(inspect(engine).get_table_names()) == set(Base.metadata.tables)

    def test_columns_match_metadata(self, migrated_engine):
        """Every table has exactly the columns the models declare."""
        engine, _ = migrated_engine
        inspector = inspect(engine)

        for name, table in Base.metadata.tables.items():
            migrated = {column["name"] for column in inspector.get_columns(name)}
            assert migrated == set(table.columns.keys()), name

    def test_guest_name_index_is_unique(self, migrated_engine):
        engine, _ = migrated_engine
        with engine.connect() as connection:
            ddl = connection.execute(
                text("SELECT sql FROM sqlite_master WHERE name = :name"), {"name": "guests_project_name_unique"}
            ).scalar_one()
        assert ddl.upper().startswith("CREATE UNIQUE INDEX")
        assert "lower(name)" in ddl

    def test_downgrade_drops_everything(self, migrated_engine):
        engine, migration = migrated_engine
        with engine.begin() as connection:
            with Operations.context(MigrationContext.configure(connection)):
                migration.downgrade()

        assert inspect(engine).get_table_names() == []
