from importlib import reload

import pytest
from sqlalchemy import inspect, text

from vidscribe import config as config_module
from vidscribe.bootstrap import build_store
from vidscribe.db.database import create_tables, make_engine, make_session_factory
from vidscribe.services.sql_store import SqlJobStore
from vidscribe.services.store import InMemoryJobStore

from .conftest import register_video


@pytest.fixture
def reloaded_config(monkeypatch):
    """Reload settings under patched env, then restore the originals."""
    yield monkeypatch
    monkeypatch.undo()
    reload(config_module)


def test_settings_from_env(reloaded_config):
    reloaded_config.setenv("DATABASE_URL", "sqlite:///:memory:")
    reloaded_config.setenv("JOB_MAX_ATTEMPTS", "5")
    reloaded_config.setenv("NOTION_API_KEY", "secret_abc")
    reloaded_config.setenv("LOG_LEVEL", "debug")

    reload(config_module)

    assert config_module.settings.DATABASE_URL == "sqlite:///:memory:"
    assert config_module.settings.JOB_MAX_ATTEMPTS == 5
    assert config_module.settings.LOG_LEVEL == "DEBUG"
    assert config_module.settings.notion_enabled is True


def test_empty_env_values_fall_back_to_defaults(reloaded_config):
    reloaded_config.setenv("WHISPER_MODEL", "")
    reloaded_config.setenv("MAX_AUDIO_FILE_BYTES", "")
    reloaded_config.setenv("NOTION_API_KEY", "")

    reload(config_module)

    assert config_module.settings.WHISPER_MODEL == "whisper-1"
    assert config_module.settings.MAX_AUDIO_FILE_BYTES == 25 * 1024 * 1024
    assert config_module.settings.notion_enabled is False


def test_engine_and_tables():
    engine = make_engine("sqlite:///:memory:")
    create_tables(engine)

    with engine.connect() as conn:
        assert conn.execute(text("SELECT 1")).scalar() == 1
    assert {"videos", "processing_jobs", "transcripts"} <= set(inspect(engine).get_table_names())
    engine.dispose()


def test_in_memory_sqlite_is_shared_across_sessions():
    engine = make_engine("sqlite://")
    create_tables(engine)
    store = SqlJobStore(make_session_factory(engine))

    register_video(store)

    assert store.get_video("video-1") is not None
    engine.dispose()


def test_build_store_selects_backend():
    settings = config_module.Settings()

    settings.DATABASE_URL = "memory"
    assert isinstance(build_store(settings), InMemoryJobStore)

    settings.DATABASE_URL = "sqlite://"
    assert isinstance(build_store(settings), SqlJobStore)
