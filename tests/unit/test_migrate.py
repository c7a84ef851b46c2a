import importlib.util
from pathlib import Path

import psycopg2
import pytest

pytestmark = [pytest.mark.unit]

MIGRATE_PATH = Path(__file__).resolve().parents[2] / "db" / "migrate.py"


def _load_migrate():
    spec = importlib.util.spec_from_file_location("db_migrate", MIGRATE_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


migrate = _load_migrate()


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False

    def execute(self, sql, params=None):
        if self.conn.fail_on and self.conn.fail_on in sql:
            raise psycopg2.ProgrammingError("syntax error")
        self.conn.executed.append((sql, params))

    def fetchall(self):
        return [(v,) for v in self.conn.applied]


class FakePgConn:
    def __init__(self, applied=(), fail_on=None):
        self.applied = list(applied)
        self.fail_on = fail_on
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.autocommit = True

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


@pytest.fixture
def migrations_dir(tmp_path):
    (tmp_path / "010_add_index.sql").write_text("CREATE INDEX idx_x ON t (x);")
    (tmp_path / "002_seed.sql").write_text("INSERT INTO t VALUES (1);")
    (tmp_path / "001_base.sql").write_text("CREATE TABLE t (x int);")
    (tmp_path / "notes.sql").write_text("-- not a migration")
    return tmp_path


def test_migration_files_sorted_numerically(migrations_dir):
    names = [p.name for _, p in migrate.migration_files(migrations_dir)]
    assert names == ["001_base.sql", "002_seed.sql", "010_add_index.sql"]


def test_duplicate_versions_rejected(migrations_dir):
    (migrations_dir / "002_other.sql").write_text("SELECT 1;")
    with pytest.raises(migrate.MigrationError, match="Duplicate migration version 002"):
        migrate.migration_files(migrations_dir)


def test_shipped_migrations_are_ordered():
    versions = [v for v, _ in migrate.migration_files()]
    assert versions[:2] == ["001", "002"]


def test_run_applies_only_pending(migrations_dir):
    conn = FakePgConn(applied=["001"])
    assert migrate.run_migrations(conn, migrations_dir) == 2
    assert conn.autocommit is False
    recorded = [params for sql, params in conn.executed if sql.startswith("INSERT INTO schema_migrations")]
    assert recorded == [("002", "002_seed.sql"), ("010", "010_add_index.sql")]
    assert not any("CREATE TABLE t" in sql for sql, _ in conn.executed)


def test_run_when_up_to_date(migrations_dir):
    conn = FakePgConn(applied=["001", "002", "010"])
    assert migrate.run_migrations(conn, migrations_dir) == 0


def test_failed_migration_rolls_back(migrations_dir):
    conn = FakePgConn(fail_on="INSERT INTO t")
    with pytest.raises(migrate.MigrationError, match="002_seed.sql"):
        migrate.run_migrations(conn, migrations_dir)
    assert conn.rollbacks == 1


def test_connection_kwargs(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db/x")
    assert migrate.connection_kwargs() == {"dsn": "postgresql://u:p@db/x"}
    monkeypatch.delenv("DATABASE_URL")
    monkeypatch.setenv("PG_PORT", "6543")
    assert migrate.connection_kwargs()["port"] == 6543


def test_status_output(migrations_dir, capsys):
    migrate.print_status(FakePgConn(applied=["001"]), migrations_dir)
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].split() == ["applied", "001_base.sql"]
    assert lines[2].split() == ["pending", "010_add_index.sql"]
