"""Map loose feed items onto `JobRecord`.

Every target field is read through an ordered chain of candidate keys; the
first present, non-empty value wins. Keys are matched case-insensitively so
``pubDate`` and ``pubdate`` are the same field. Values may be plain strings,
nested dicts (mixed-content elements) or lists (repeated elements); they are
all reduced to trimmed text before use.
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Iterable

from pydantic import ValidationError

from jobfeed.clock import ensure_aware, utc_now
from jobfeed.errors import NormalizationError
from jobfeed.models import (
    EmploymentType,
    ExperienceLevel,
    FailedJob,
    JobRecord,
    JobRequirements,
    RemoteMode,
    SalaryPeriod,
    SalaryRange,
)
from jobfeed.pipeline.parser import TEXT_KEY

logger = logging.getLogger(__name__)

UNTITLED_JOB = "Untitled Job"
UNKNOWN_COMPANY = "Unknown Company"

TITLE_KEYS = ("title", "name", "job_title")
DESCRIPTION_KEYS = ("description", "summary", "content", "job_description")
COMPANY_KEYS = ("company", "employer", "organization")
LOCATION_KEYS = ("location", "city", "place")
JOB_TYPE_KEYS = ("job_type", "type", "employment_type")
CATEGORY_KEYS = ("category", "industry", "job_category")
SALARY_KEYS = ("salary", "compensation")
URL_KEYS = ("link", "url", "apply_url")
EMAIL_KEYS = ("email", "application_email", "apply_email")
GUID_KEYS = ("guid", "id", "link")
DATE_KEYS = ("pubdate", "published", "date", "updated")
TAG_KEYS = ("tags",)
SKILL_KEYS = ("skills",)
EDUCATION_KEYS = ("education",)

REMOTE_KEYWORDS = (
    "remote",
    "work from home",
    "wfh",
    "telecommute",
    "virtual",
    "home-based",
    "home based",
    "anywhere",
    "distributed",
)

# Checked in order; the first tier with a matching keyword wins.
EXPERIENCE_TIERS: tuple[tuple[ExperienceLevel, tuple[str, ...]], ...] = (
    (ExperienceLevel.SENIOR, ("senior", "lead", "principal")),
    (ExperienceLevel.EXECUTIVE, ("executive", "director", "vp", "chief")),
    (ExperienceLevel.ENTRY, ("entry", "junior", "graduate", "intern")),
    (ExperienceLevel.MID, ("mid", "intermediate", "experienced")),
)

EMPLOYMENT_TYPES: tuple[tuple[EmploymentType, tuple[str, ...]], ...] = (
    (EmploymentType.PART_TIME, ("part-time", "part time", "parttime")),
    (EmploymentType.INTERNSHIP, ("intern",)),
    (EmploymentType.FREELANCE, ("freelance",)),
    (EmploymentType.CONTRACT, ("contract", "temporary", "temp")),
    (EmploymentType.FULL_TIME, ("full-time", "full time", "fulltime", "permanent")),
)

CURRENCY_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY", "₹": "INR"}
CURRENCY_CODES = ("USD", "EUR", "GBP", "CAD", "AUD", "CHF", "JPY", "INR", "NZD", "SGD")
SALARY_PERIODS: tuple[tuple[SalaryPeriod, tuple[str, ...]], ...] = (
    (SalaryPeriod.HOURLY, ("hour", "/hr", "hourly")),
    (SalaryPeriod.DAILY, ("day", "daily")),
    (SalaryPeriod.WEEKLY, ("week",)),
    (SalaryPeriod.MONTHLY, ("month",)),
    (SalaryPeriod.YEARLY, ("year", "annum", "annual", "/yr")),
)
_AMOUNT_RE = re.compile(r"(\d[\d,]*(?:\.\d+)?)\s*([kK])?")
_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")


def as_text(value: Any) -> str:
    """Reduce a loose item value to trimmed text.

    Lists yield their first non-empty entry; dicts yield their mixed-in text or,
    failing that, the text of their children joined by spaces.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        for entry in value:
            text = as_text(entry)
            if text:
                return text
        return ""
    if isinstance(value, dict):
        if value.get(TEXT_KEY):
            return as_text(value[TEXT_KEY])
        return " ".join(t for t in (as_text(v) for v in value.values()) if t)
    return str(value).strip()


def as_list(value: Any) -> list[str]:
    """A native list, or a comma-separated string, as a list of non-empty strings."""
    if value is None:
        return []
    if isinstance(value, list):
        entries = [as_text(v) for v in value]
    elif isinstance(value, dict):
        return as_list(list(value.values()))
    else:
        entries = as_text(value).split(",")
    return [e.strip() for e in entries if e and e.strip()]


def first_of(item: dict[str, Any], keys: Iterable[str]) -> str:
    """First non-empty text among ``keys`` of a lower-cased item."""
    for key in keys:
        text = as_text(item.get(key))
        if text:
            return text
    return ""


def detect_remote(title: str, description: str) -> bool:
    text = f"{title} {description}".lower()
    return any(keyword in text for keyword in REMOTE_KEYWORDS)


def detect_remote_mode(title: str, description: str) -> RemoteMode:
    if not detect_remote(title, description):
        return RemoteMode.ON_SITE
    if "hybrid" in f"{title} {description}".lower():
        return RemoteMode.HYBRID
    return RemoteMode.REMOTE


def detect_experience_level(title: str, description: str) -> ExperienceLevel:
    text = f"{title} {description}".lower()
    for level, keywords in EXPERIENCE_TIERS:
        if any(keyword in text for keyword in keywords):
            return level
    return ExperienceLevel.MID


def parse_employment_type(text: str) -> EmploymentType:
    lowered = text.lower()
    for employment_type, keywords in EMPLOYMENT_TYPES:
        if any(keyword in lowered for keyword in keywords):
            return employment_type
    return EmploymentType.FULL_TIME


def parse_salary(text: str) -> SalaryRange:
    """Read amounts, currency and period out of free-form salary text."""
    if not text:
        return SalaryRange()
    currency = "USD"
    for symbol, code in CURRENCY_SYMBOLS.items():
        if symbol in text:
            currency = code
            break
    upper = text.upper()
    for code in CURRENCY_CODES:
        if code in upper:
            currency = code
            break
    period = SalaryPeriod.YEARLY
    lowered = text.lower()
    for candidate, keywords in SALARY_PERIODS:
        if any(keyword in lowered for keyword in keywords):
            period = candidate
            break
    amounts = []
    for number, thousands in _AMOUNT_RE.findall(text):
        amount = float(number.replace(",", ""))
        amounts.append(amount * 1000 if thousands else amount)
    return SalaryRange(
        min=amounts[0] if amounts else None,
        max=amounts[1] if len(amounts) > 1 else (amounts[0] if amounts else None),
        currency=currency,
        period=period,
        text=text,
    )


def parse_published(value: str, default: datetime | None = None) -> datetime:
    """Parse an RFC 822 or ISO 8601 date; naive values are taken as UTC."""
    if value:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            parsed = None
        if parsed is not None:
            return ensure_aware(parsed)
        try:
            return ensure_aware(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            logger.debug("Unrecognized publication date %r; using ingestion time", value)
    return default or utc_now()


def synthesize_guid(feed_url: str) -> str:
    """Last-resort identifier; never reproducible, so it defeats deduplication."""
    stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"{feed_url}-{stamp}-{uuid.uuid4().hex[:12]}"


class JobNormalizer:
    """Convert loose parsed items into `JobRecord` instances."""

    def map_item(self, item: dict[str, Any], feed_url: str, feed_name: str) -> JobRecord:
        """Map one item, raising `NormalizationError` on any failure."""
        if not isinstance(item, dict):
            raise NormalizationError(f"Feed item must be a mapping, got {type(item).__name__}")
        if not feed_url or not feed_url.strip():
            raise NormalizationError("Feed URL is required to key imported jobs")
        fields = {str(k).lower(): v for k, v in item.items()}

        title = first_of(fields, TITLE_KEYS) or UNTITLED_JOB
        description = first_of(fields, DESCRIPTION_KEYS)
        company = first_of(fields, COMPANY_KEYS) or UNKNOWN_COMPANY

        guid = first_of(fields, GUID_KEYS)
        if not guid:
            guid = synthesize_guid(feed_url.strip())
            logger.warning("Item %r from %s has no guid, id or link; synthesized %s", title, feed_name, guid)

        url = first_of(fields, URL_KEYS)
        email = first_of(fields, EMAIL_KEYS)
        if not email and url.lower().startswith("mailto:"):
            email = url[len("mailto:") :].split("?", 1)[0].strip()
            url = ""
        if email:
            match = _EMAIL_RE.search(email)
            email = match.group(0) if match else ""

        try:
            return JobRecord(
                title=title,
                company=company,
                location=first_of(fields, LOCATION_KEYS),
                description=description,
                salary=parse_salary(first_of(fields, SALARY_KEYS)),
                requirements=JobRequirements(
                    experience=detect_experience_level(title, description),
                    education=first_of(fields, EDUCATION_KEYS),
                    skills=as_list(next((fields[k] for k in SKILL_KEYS if k in fields), None)),
                ),
                employment_type=parse_employment_type(first_of(fields, JOB_TYPE_KEYS)),
                remote_mode=detect_remote_mode(title, description),
                category=first_of(fields, CATEGORY_KEYS),
                application_url=url,
                application_email=email,
                source_feed=feed_url.strip(),
                source_name=feed_name.strip() or feed_url.strip(),
                guid=guid,
                published_at=parse_published(first_of(fields, DATE_KEYS)),
                tags=as_list(next((fields[k] for k in TAG_KEYS if k in fields), None)),
                raw_data=item,
            )
        except ValidationError as e:
            raise NormalizationError(f"Invalid job record: {e.error_count()} validation error(s)") from e

    def normalize(self, item: dict[str, Any], feed_url: str, feed_name: str) -> JobRecord | None:
        """Map one item; returns None (and logs a warning) if it cannot be mapped."""
        try:
            return self.map_item(item, feed_url, feed_name)
        except Exception as e:
            logger.warning("Failed to normalize job from %s: %s", feed_name, e)
            return None

    def normalize_batch(
        self, items: list[dict[str, Any]], feed_url: str, feed_name: str
    ) -> tuple[list[JobRecord], list[FailedJob]]:
        """Map every item; returns the jobs plus a `FailedJob` per dropped item."""
        jobs: list[JobRecord] = []
        rejected: list[FailedJob] = []
        for item in items:
            try:
                jobs.append(self.map_item(item, feed_url, feed_name))
            except Exception as e:
                logger.warning("Failed to normalize job from %s: %s", feed_name, e)
                fields = {str(k).lower(): v for k, v in item.items()} if isinstance(item, dict) else {}
                rejected.append(
                    FailedJob(
                        guid=first_of(fields, GUID_KEYS),
                        title=first_of(fields, TITLE_KEYS),
                        reason="normalization",
                        error=str(e),
                    )
                )
        logger.info("Normalized %s of %s item(s) from %s", len(jobs), len(items), feed_name)
        return jobs, rejected
