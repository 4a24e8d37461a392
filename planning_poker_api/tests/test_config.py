import pytest

from src.api.config import DEFAULT_EMOJI, load_settings


def test_defaults(monkeypatch):
    for name in ("POKER_STORE_TIMEOUT", "POKER_DEFAULT_EMOJI", "POKER_CORS_ORIGINS", "LOG_FILE", "PORT"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.store_timeout_seconds == 5.0
    assert settings.default_emoji == DEFAULT_EMOJI
    assert settings.cors_origins == ["*"]
    assert settings.log_file is None
    assert settings.port == 3001


def test_overrides(monkeypatch):
    monkeypatch.setenv("POKER_STORE_TIMEOUT", "1.5")
    monkeypatch.setenv("POKER_DEFAULT_EMOJI", "🃏")
    monkeypatch.setenv("POKER_CORS_ORIGINS", "https://a.example, https://b.example,")
    settings = load_settings()
    assert settings.store_timeout_seconds == 1.5
    assert settings.default_emoji == "🃏"
    assert settings.cors_origins == ["https://a.example", "https://b.example"]


@pytest.mark.parametrize("raw", ["soon", "0", "-2"])
def test_bad_timeout(monkeypatch, raw):
    monkeypatch.setenv("POKER_STORE_TIMEOUT", raw)
    with pytest.raises(ValueError):
        load_settings()
