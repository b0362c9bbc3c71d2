import pytest
from sqlalchemy import text
from typer.testing import CliRunner

import database.connection as connection
from database.connection import create_app_engine, get_connection_url
from database.models import Base
from dev import database as database_cli


@pytest.fixture
def db_env(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    for key in ("DB_USER", "DB_PASSWORD", "DB_HOST", "DB_PORT", "DB_NAME", "DB_DIR"):
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


# ==============================================================================
# URL
# ==============================================================================

def test_sqlite_file_lives_under_db_dir(db_env, tmp_path):
    db_env.setenv("DB_ENGINE", "sqlite")
    db_env.setenv("DB_DIR", str(tmp_path / "instance"))
    db_env.setenv("DB_NAME", "manager.db")

    url = get_connection_url()

    assert url.get_backend_name() == "sqlite"
    assert url.database == str(tmp_path / "instance" / "manager.db")
    assert (tmp_path / "instance").is_dir()


def test_postgres_url_uses_psycopg2(db_env):
    db_env.setenv("DB_ENGINE", "postgresql")
    db_env.setenv("DB_USER", "arma")
    db_env.setenv("DB_PASSWORD", "s3cret")
    db_env.setenv("DB_HOST", "db")
    db_env.setenv("DB_PORT", "5433")
    db_env.setenv("DB_NAME", "reforger")

    url = get_connection_url()

    assert url.drivername == "postgresql+psycopg2"
    assert (url.host, url.port, url.database) == ("db", 5433, "reforger")
    assert url.password == "s3cret"


def test_database_url_wins(db_env):
    db_env.setenv("DB_ENGINE", "postgresql")
    db_env.setenv("DATABASE_URL", "mysql+pymysql://arma:pw@db/reforger")

    assert get_connection_url().drivername == "mysql+pymysql"


def test_unknown_engine_is_rejected(db_env):
    db_env.setenv("DB_ENGINE", "oracle")

    with pytest.raises(ValueError, match="oracle"):
        get_connection_url()


# ==============================================================================
# Engine
# ==============================================================================

def test_sqlite_engine_enforces_foreign_keys(tmp_path):
    engine = create_app_engine(f"sqlite:///{tmp_path / 'fk.db'}")
    try:
        with engine.connect() as conn:
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
    finally:
        engine.dispose()


# ==============================================================================
# CLI
# ==============================================================================

def test_info_lists_tables(tmp_path, monkeypatch):
    engine = create_app_engine(f"sqlite:///{tmp_path / 'info.db'}")
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(connection, "engine", engine)

    result = CliRunner().invoke(database_cli.app, ["info"])

    assert result.exit_code == 0
    assert "server_connections: 0" in result.output
    engine.dispose()


def test_info_reports_missing_schema(tmp_path, monkeypatch):
    engine = create_app_engine(f"sqlite:///{tmp_path / 'empty.db'}")
    monkeypatch.setattr(connection, "engine", engine)

    result = CliRunner().invoke(database_cli.app, ["info"])

    assert result.exit_code == 1
    assert "missing" in result.output
    engine.dispose()
