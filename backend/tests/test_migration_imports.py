import importlib.util
from pathlib import Path

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

from app.infra import models  # noqa: F401
from app.infra.db import Base

VERSIONS_DIR = Path(__file__).resolve().parent.parent / "alembic" / "versions"


def _load_migration(name: str):
    spec = importlib.util.spec_from_file_location(f"migration_{name}", VERSIONS_DIR / f"{name}.py")
    assert spec and spec.loader
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)  # type: ignore[union-attr]
    return module


def _table_columns(conn) -> dict[str, set[str]]:
    inspector = sa.inspect(conn)
    return {
        table: {column["name"] for column in inspector.get_columns(table)}
        for table in inspector.get_table_names()
    }


def test_initial_migration_matches_models() -> None:
    module = _load_migration("0001_initial")
    assert module.revision == "0001_initial"
    assert module.down_revision is None

    engine = sa.create_engine("sqlite://")
    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            module.upgrade()
        migrated = _table_columns(conn)

    expected = {table.name: {column.name for column in table.columns} for table in Base.metadata.sorted_tables}
    assert migrated == expected


def test_initial_migration_downgrade_drops_everything() -> None:
    module = _load_migration("0001_initial")

    engine = sa.create_engine("sqlite://")
    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            module.upgrade()
            module.downgrade()
        assert sa.inspect(conn).get_table_names() == []
