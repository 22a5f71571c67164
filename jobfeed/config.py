"""
Importer settings and feed source configuration.

Settings come from environment variables; every one has a default, so an
empty environment gives a working in-memory importer:

  REQUEST_TIMEOUT       per-request fetch timeout in seconds (default: 30)
  MAX_RETRIES           fetch attempts per feed (default: 3)
  CONCURRENCY           queue workers (default: 5)
  CRON_SCHEDULE         five-field crontab expression (default: 0 * * * *)
  CRON_TIMEZONE         timezone for the schedule (default: UTC)
  QUEUE_NAME            queue carrying import batches (default: job-import)
  QUEUE_SUBMIT_TIMEOUT  seconds to wait when enqueueing (default: 20)
  QUEUE_STATS_TIMEOUT   seconds to wait for each stats count (default: 3)
  DATABASE_URL          memory:// or any SQLAlchemy URL (default: memory://)
  FEEDS_FILE            YAML list of {url, name} feed sources (default: built-in list)
  USER_AGENT            User-Agent header sent with fetches
  LOG_LEVEL             logging level name (default: INFO)
"""

import logging
import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, ValidationError

from jobfeed.errors import ConfigurationError
from jobfeed.models import FeedSource
from jobfeed.pipeline.fetcher import DEFAULT_USER_AGENT
from jobfeed.scheduler import DEFAULT_CRON_SCHEDULE, validate_cron

logger = logging.getLogger(__name__)

MEMORY_URL = "memory://"

DEFAULT_FEEDS: tuple[FeedSource, ...] = (
    FeedSource(url="https://jobicy.com/?feed=job_feed", name="Jobicy - All Jobs"),
    FeedSource(
        url="https://jobicy.com/?feed=job_feed&job_categories=smm&job_types=full-time",
        name="Jobicy - SMM Full-time",
    ),
    FeedSource(
        url="https://jobicy.com/?feed=job_feed&job_categories=seller&job_types=full-time&search_region=france",
        name="Jobicy - Seller France",
    ),
    FeedSource(
        url="https://jobicy.com/?feed=job_feed&job_categories=design-multimedia",
        name="Jobicy - Design & Multimedia",
    ),
    FeedSource(url="https://jobicy.com/?feed=job_feed&job_categories=data-science", name="Jobicy - Data Science"),
    FeedSource(url="https://jobicy.com/?feed=job_feed&job_categories=copywriting", name="Jobicy - Copywriting"),
    FeedSource(url="https://jobicy.com/?feed=job_feed&job_categories=business", name="Jobicy - Business"),
    FeedSource(url="https://jobicy.com/?feed=job_feed&job_categories=management", name="Jobicy - Management"),
    FeedSource(url="https://www.higheredjobs.com/rss/articleFeed.cfm", name="HigherEdJobs"),
)

# Environment variable -> settings field.
ENV_FIELDS = {
    "REQUEST_TIMEOUT": "request_timeout",
    "MAX_RETRIES": "max_retries",
    "CONCURRENCY": "concurrency",
    "CRON_SCHEDULE": "cron_schedule",
    "CRON_TIMEZONE": "cron_timezone",
    "QUEUE_NAME": "queue_name",
    "QUEUE_SUBMIT_TIMEOUT": "queue_submit_timeout",
    "QUEUE_STATS_TIMEOUT": "queue_stats_timeout",
    "DATABASE_URL": "database_url",
    "FEEDS_FILE": "feeds_file",
    "USER_AGENT": "user_agent",
    "LOG_LEVEL": "log_level",
}


class ImportSettings(BaseModel):
    """Validated importer settings."""

    model_config = {"frozen": True}

    request_timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    concurrency: int = Field(default=5, ge=1)
    cron_schedule: str = DEFAULT_CRON_SCHEDULE
    cron_timezone: str = "UTC"
    queue_name: str = Field(default="job-import", min_length=1)
    queue_submit_timeout: float = Field(default=20.0, gt=0)
    queue_stats_timeout: float = Field(default=3.0, gt=0)
    database_url: str = MEMORY_URL
    feeds_file: Path | None = None
    user_agent: str = DEFAULT_USER_AGENT
    log_level: str = "INFO"

    @property
    def uses_memory(self) -> bool:
        return self.database_url == MEMORY_URL

    @property
    def log_level_number(self) -> int:
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ImportSettings":
        """Build settings from ``environ`` (``os.environ`` by default).

        Raises:
            ConfigurationError: If a value has the wrong type or range, or the
                cron schedule is invalid.
        """
        environ = os.environ if environ is None else environ
        values = {field: environ[var] for var, field in ENV_FIELDS.items() if environ.get(var, "").strip()}
        return cls.from_values(values)

    @classmethod
    def from_values(cls, values: Mapping[str, Any]) -> "ImportSettings":
        """Validate ``values`` the same way as `from_env`.

        Raises:
            ConfigurationError: If a value is invalid.
        """
        try:
            settings = cls.model_validate(dict(values))
        except ValidationError as e:
            problems = "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors())
            raise ConfigurationError(f"Invalid settings: {problems}") from e
        validate_cron(settings.cron_schedule, settings.cron_timezone)
        return settings

    def with_overrides(self, **overrides: Any) -> "ImportSettings":
        """Return a validated copy with ``overrides`` applied."""
        return self.from_values({**self.model_dump(), **overrides})


def load_feed_sources(path: Path | str | None = None) -> list[FeedSource]:
    """Read feed sources from a YAML file, or return the built-in list.

    The file holds a list of ``{url, name}`` mappings, either at the top level
    or under a ``feeds`` key.

    Raises:
        ConfigurationError: If the file is missing, unreadable or malformed.
    """
    if path is None:
        return list(DEFAULT_FEEDS)
    source = Path(path)
    try:
        data = yaml.safe_load(source.read_text())
    except FileNotFoundError as e:
        raise ConfigurationError(f"Feeds file not found: {source}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Feeds file {source} is not valid YAML: {e}") from e

    if isinstance(data, dict):
        data = data.get("feeds")
    if not isinstance(data, list) or not data:
        raise ConfigurationError(f"Feeds file {source} must contain a non-empty list of feeds")
    try:
        feeds = [FeedSource.model_validate(item) for item in data]
    except ValidationError as e:
        raise ConfigurationError(f"Invalid feed entry in {source}: {e}") from e
    logger.info("Loaded %d feed source(s) from %s", len(feeds), source)
    return feeds
