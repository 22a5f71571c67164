"""Tests for settings from the environment and feed source files."""

import logging

import pytest

from jobfeed.config import DEFAULT_FEEDS, ImportSettings, load_feed_sources
from jobfeed.errors import ConfigurationError
from jobfeed.factory import build_orchestrator
from jobfeed.queue.memory import InMemoryQueueBroker
from jobfeed.queue.sql import SQLQueueBroker
from jobfeed.storage.sql import SQLJobStorage


class TestImportSettings:
    def test_defaults_from_empty_environment(self) -> None:
        settings = ImportSettings.from_env({})

        assert settings.request_timeout == 30.0
        assert settings.max_retries == 3
        assert settings.concurrency == 5
        assert settings.cron_schedule == "0 * * * *"
        assert settings.queue_name == "job-import"
        assert settings.uses_memory
        assert settings.feeds_file is None
        assert settings.log_level_number == logging.INFO

    def test_values_from_environment(self) -> None:
        settings = ImportSettings.from_env(
            {
                "REQUEST_TIMEOUT": "10",
                "MAX_RETRIES": "5",
                "CONCURRENCY": "2",
                "CRON_SCHEDULE": "*/30 * * * *",
                "QUEUE_SUBMIT_TIMEOUT": "1.5",
                "DATABASE_URL": "sqlite:///jobs.db",
                "LOG_LEVEL": "debug",
                "UNRELATED": "ignored",
            }
        )

        assert settings.request_timeout == 10.0
        assert settings.max_retries == 5
        assert settings.concurrency == 2
        assert settings.cron_schedule == "*/30 * * * *"
        assert settings.queue_submit_timeout == 1.5
        assert not settings.uses_memory
        assert settings.log_level_number == logging.DEBUG

    def test_blank_values_use_defaults(self) -> None:
        assert ImportSettings.from_env({"CONCURRENCY": "  "}).concurrency == 5

    def test_overrides_are_validated(self) -> None:
        settings = ImportSettings.from_env({})

        assert settings.with_overrides(cron_schedule="*/5 * * * *").cron_schedule == "*/5 * * * *"
        with pytest.raises(ConfigurationError, match="Invalid cron schedule"):
            settings.with_overrides(cron_schedule="every hour")
        with pytest.raises(ConfigurationError, match="concurrency"):
            settings.with_overrides(concurrency=0)

    @pytest.mark.parametrize(
        "environ",
        [
            {"REQUEST_TIMEOUT": "soon"},
            {"MAX_RETRIES": "0"},
            {"CONCURRENCY": "-1"},
            {"CRON_SCHEDULE": "every hour"},
            {"CRON_TIMEZONE": "Nowhere/Special"},
        ],
    )
    def test_invalid_values(self, environ: dict) -> None:
        with pytest.raises(ConfigurationError):
            ImportSettings.from_env(environ)


class TestLoadFeedSources:
    def test_builtin_list(self) -> None:
        feeds = load_feed_sources()
        assert feeds == list(DEFAULT_FEEDS)
        assert all(f.url.startswith("https://") for f in feeds)

    def test_top_level_list(self, tmp_path) -> None:
        path = tmp_path / "feeds.yaml"
        path.write_text("- url: https://a.example.com/rss\n  name: A\n- url: https://b.example.com/rss\n  name: B\n")

        feeds = load_feed_sources(path)

        assert [(f.name, f.url) for f in feeds] == [
            ("A", "https://a.example.com/rss"),
            ("B", "https://b.example.com/rss"),
        ]

    def test_feeds_key(self, tmp_path) -> None:
        path = tmp_path / "feeds.yaml"
        path.write_text("feeds:\n  - url: https://a.example.com/rss\n    name: A\n")

        assert load_feed_sources(str(path))[0].name == "A"

    @pytest.mark.parametrize(
        "content",
        ["", "feeds: []\n", "- name: Missing url\n", "feeds: [unclosed\n", "just a string\n"],
    )
    def test_malformed_files(self, tmp_path, content: str) -> None:
        path = tmp_path / "feeds.yaml"
        path.write_text(content)

        with pytest.raises(ConfigurationError):
            load_feed_sources(path)

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_feed_sources(tmp_path / "nope.yaml")


class TestFactory:
    async def test_memory_orchestrator(self) -> None:
        orchestrator = build_orchestrator(ImportSettings(), feeds=[])

        assert isinstance(orchestrator.queue.broker, InMemoryQueueBroker)
        assert orchestrator.queue.submit_timeout == 20.0
        assert orchestrator.queue_name == "job-import"
        await orchestrator.queue.close()

    async def test_sql_orchestrator_shares_one_database(self, tmp_path) -> None:
        settings = ImportSettings(database_url=f"sqlite:///{tmp_path / 'jobfeed.db'}", concurrency=3)

        orchestrator = build_orchestrator(settings)

        assert isinstance(orchestrator.job_storage, SQLJobStorage)
        assert isinstance(orchestrator.queue.broker, SQLQueueBroker)
        assert orchestrator.job_storage.engine is orchestrator.queue.broker.engine
        assert orchestrator.concurrency == 3
        assert len(orchestrator.feeds) == len(DEFAULT_FEEDS)
        await orchestrator.queue.close()
