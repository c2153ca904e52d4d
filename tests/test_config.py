from pathlib import Path

from config import Settings


def test_defaults(monkeypatch):
    for name in (
        "TMDB_API_KEY", "TMDB_LANGUAGE", "BATCH_SIZE", "BATCH_DELAY", "HOME_COUNTRY", "DB_PATH"
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.tmdb_api_key is None
    assert settings.db_path == Path("data/collection.db")
    assert settings.tmdb_language == "zh-CN"
    assert settings.home_country == "CN"
    assert settings.fallback_country == "US"
    assert settings.batch_size == 8
    assert settings.batch_delay == 1.2
    assert settings.backfill_schedule is None


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("TMDB_API_KEY", "abc123")
    monkeypatch.setenv("BATCH_SIZE", "4")
    monkeypatch.setenv("HOME_COUNTRY", "GB")

    from importlib import reload
    import config

    reload(config)

    assert config.settings.tmdb_api_key == "abc123"
    assert config.settings.batch_size == 4
    assert config.settings.home_country == "GB"


def test_locale_language_variable_is_not_the_tmdb_language(monkeypatch):
    monkeypatch.delenv("TMDB_LANGUAGE", raising=False)
    monkeypatch.setenv("LANGUAGE", "en_US:en")

    assert Settings(_env_file=None).tmdb_language == "zh-CN"
