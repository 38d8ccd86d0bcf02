"""
Tests for settings loading and gateway configuration checks.
"""
import os

import pytest
from pydantic import ValidationError

from dompersist.config import DomainSettings
from dompersist.errors import ConfigError
from dompersist.sql.gateway import SqlGateway


def test_settings_from_env(tmp_path, monkeypatch):
    dotenv = tmp_path / ".env"
    dotenv.write_text("DOMPERSIST_MAX_IN_CLAUSE=50\nDOMPERSIST_POOL_SIZE=3\n")
    monkeypatch.setenv("DOMPERSIST_DB_URL", "sqlite:///from_env.db")
    monkeypatch.setenv("DOMPERSIST_POOL_SIZE", "7")

    try:
        settings = DomainSettings.from_env(str(dotenv), query_timeout=5)
    finally:
        os.environ.pop("DOMPERSIST_MAX_IN_CLAUSE", None)

    assert settings.db_url == "sqlite:///from_env.db"
    assert settings.pool_size == 7  # environment wins over the .env file
    assert settings.max_in_clause == 50
    assert settings.query_timeout == 5
    assert settings.data_horizon_period == "1M"


def test_invalid_settings():
    with pytest.raises(ValidationError):
        DomainSettings(pool_size=0)
    with pytest.raises(ValidationError):
        DomainSettings(max_in_clause=0)


def test_in_memory_sqlite_is_rejected():
    with pytest.raises(ConfigError):
        SqlGateway("sqlite://")
    with pytest.raises(ConfigError):
        SqlGateway("sqlite:///:memory:")


def test_unknown_backend_is_rejected():
    with pytest.raises(ConfigError):
        SqlGateway("firebird://user@localhost/db")


def test_unregistered_table_lookup(db_url):
    gateway = SqlGateway(db_url)
    try:
        with pytest.raises(ConfigError):
            gateway.table("DOM_NOWHERE")
        with gateway.connect() as conn:
            with pytest.raises(ConfigError):
                gateway.register_table(conn, "DOM_NOWHERE")
            info = gateway.register_table(conn, "dom_account")
        assert info.name == "DOM_ACCOUNT"
        assert info.column("code").max_length == 16
        assert not info.column("name").nullable
        assert info.primary_key == ["ID"]
    finally:
        gateway.close()
