"""Tests for settings and broker options."""

from hitl_broker.config import BrokerOptions, Settings


def test_settings_defaults(monkeypatch):
    for name in ("HITL_DIR", "HITL_PORT", "HITL_TOKEN", "WATCH_POLL_MS"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(_env_file=None)
    assert settings.HITL_PORT == 7842
    assert settings.HITL_DIR == ""
    assert settings.HITL_TOKEN == ""
    assert settings.WATCH_POLL_MS == 1000
    assert settings.CONNECT_POLL_MS == 1200
    assert settings.RUNTIME_EVENTS_LIMIT == 200


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("HITL_PORT", "9000")
    monkeypatch.setenv("HITL_TOKEN", "s3cret")
    settings = Settings(_env_file=None)
    assert settings.HITL_PORT == 9000
    assert settings.HITL_TOKEN == "s3cret"


def test_options_from_settings_uses_hitl_dir(monkeypatch):
    monkeypatch.setenv("HITL_DIR", "/srv/hitl")
    options = BrokerOptions.from_settings(source=Settings(_env_file=None))
    assert options.dir is None
    assert options.env == {"HITL_DIR": "/srv/hitl"}


def test_options_explicit_dir_wins(monkeypatch):
    monkeypatch.setenv("HITL_DIR", "/srv/hitl")
    options = BrokerOptions.from_settings("local", source=Settings(_env_file=None))
    assert options.dir == "local"


def test_options_without_env(monkeypatch):
    monkeypatch.delenv("HITL_DIR", raising=False)
    options = BrokerOptions.from_settings(source=Settings(_env_file=None))
    assert options.env == {}
