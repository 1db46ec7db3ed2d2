"""
Unit tests for settings loading and logging setup.

Settings come from defaults, environment variables (nested with ``__``)
and an optional .env file.
"""

import logging

import pytest
from pydantic import ValidationError

from runebook.config import settings as settings_module
from runebook.config.logging import (
    DATE_FORMAT,
    ROOT_LOGGER_NAME,
    ColoredFormatter,
    get_logger,
    setup_logging,
)
from runebook.config.settings import (
    KnowledgeBaseSettings,
    SearchSettings,
    Settings,
    get_settings,
    load_settings,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate tests from the developer's environment and .env file."""
    for name in ("KB__DATABASE_PATH", "EMBEDDING__PROVIDER", "SEARCH__RRF_K", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(settings_module, "_settings", None)


@pytest.fixture
def restore_logger():
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    saved = (logger.level, list(logger.handlers), logger.propagate)
    yield logger
    logger.setLevel(saved[0])
    logger.handlers[:] = saved[1]
    logger.propagate = saved[2]


class TestDefaults:

    def test_defaults(self):
        settings = Settings()

        assert settings.environment == "development"
        assert settings.kb.database_path == "data/runebook.db"
        assert settings.kb.min_entry_chars == 20
        assert settings.embedding.provider == "local"
        assert settings.embedding.dimension is None
        assert settings.search.rrf_k == 60
        assert settings.search.candidate_pool == 50
        assert settings.search.default_limit == 20

    def test_validation(self):
        with pytest.raises(ValidationError):
            KnowledgeBaseSettings(min_entry_chars=0)
        with pytest.raises(ValidationError):
            SearchSettings(lexical_timeout=0)


class TestEnvironment:

    def test_nested_environment_variables(self, monkeypatch):
        monkeypatch.setenv("KB__DATABASE_PATH", "/srv/runebook.db")
        monkeypatch.setenv("EMBEDDING__PROVIDER", "none")
        monkeypatch.setenv("SEARCH__RRF_K", "10")

        settings = Settings()

        assert settings.kb.database_path == "/srv/runebook.db"
        assert settings.embedding.provider == "none"
        assert settings.search.rrf_k == 10

    def test_env_file(self, tmp_path):
        env_file = tmp_path / "custom.env"
        env_file.write_text("LOG_LEVEL=DEBUG\nEMBEDDING__PROVIDER=litellm\n")

        settings = load_settings(env_file=env_file)

        assert settings.log_level == "DEBUG"
        assert settings.embedding.provider == "litellm"
        assert get_settings() is settings

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestLogging:

    def test_get_logger_nests_under_root(self):
        assert get_logger("runebook.kb.engine").name == "runebook.kb.engine"
        assert get_logger("scripts.tool").name == "runebook.scripts.tool"

    def test_setup_logging_configures_root(self, restore_logger, tmp_path):
        log_file = tmp_path / "logs" / "runebook.log"
        settings = Settings(log_level="WARNING", log_file=log_file)

        setup_logging(settings)
        get_logger("runebook.test").warning("shield wall")
        for handler in restore_logger.handlers:
            handler.flush()

        assert restore_logger.level == logging.WARNING
        assert len(restore_logger.handlers) == 2
        assert "shield wall" in log_file.read_text()

    def test_third_party_loggers_quieted(self, restore_logger):
        chroma_logger = logging.getLogger("chromadb")
        saved = chroma_logger.level
        try:
            setup_logging(Settings(log_level="INFO"))
            assert chroma_logger.level == logging.WARNING

            setup_logging(Settings(log_level="DEBUG"))
            assert chroma_logger.level == logging.DEBUG
        finally:
            chroma_logger.setLevel(saved)

    def test_colored_formatter_leaves_record_untouched(self):
        formatter = ColoredFormatter(fmt="%(levelname)s %(message)s", datefmt=DATE_FORMAT)
        record = logging.LogRecord("runebook", logging.ERROR, __file__, 1, "boom", None, None)

        assert formatter.format(record) == "\033[31mERROR\033[0m boom"
        assert record.levelname == "ERROR"

        plain = ColoredFormatter(fmt="%(levelname)s %(message)s", datefmt=DATE_FORMAT, use_color=False)
        assert plain.format(record) == "ERROR boom"
