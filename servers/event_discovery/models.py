"""
Pydantic models for the discovery pipeline.

These models define the core data types used throughout the pipeline:
- Market, Category, CrawlSource: read-mostly configuration records
- Job: one discovery attempt and its lifecycle state
- CandidateRecord: an event extracted from a provider response
- StoredRecord: a candidate that survived validation and was persisted
- ValidationResult, InsertResult: per-item outcomes with audit detail
"""

import re
import uuid
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


ISO_DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")

# Provider output sometimes spells out missing values
NULLISH_STRINGS = {"", "null", "undefined", "none", "n/a"}


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class JobStatus(str, Enum):
    """Lifecycle states of a discovery job."""

    PENDING = "pending"
    SEARCHING = "searching"
    CRAWLING = "crawling"
    VALIDATING = "validating"
    STORING = "storing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class DiscoveryMethod(str, Enum):
    SEARCH = "search"
    CRAWL = "crawl"


class ValidationStatus(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    REJECTED = "rejected"
    NEEDS_REVIEW = "needs_review"


class Recommendation(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    NEEDS_REVIEW = "needs_review"


class CrawlOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    NO_EVENTS = "no_events"


class CrawlFrequency(str, Enum):
    """How often a crawl source should be revisited."""

    DAILY = "daily"
    TWICE_WEEKLY = "twice_weekly"
    WEEKLY = "weekly"

    @property
    def interval(self) -> timedelta:
        return {
            CrawlFrequency.DAILY: timedelta(days=1),
            CrawlFrequency.TWICE_WEEKLY: timedelta(days=3.5),
            CrawlFrequency.WEEKLY: timedelta(days=7),
        }[self]


class InsertOutcome(str, Enum):
    INSERTED = "inserted"
    FUZZY_DUPLICATE = "fuzzy_duplicate"
    EXACT_DUPLICATE = "exact_duplicate"


class Market(BaseModel):
    """A geographic market events are discovered for."""

    id: str = Field(default_factory=new_id)
    name: str
    region_description: str = ""
    latitude: float
    longitude: float
    radius_miles: float = 25.0
    is_active: bool = True
    search_sources: list[str] = Field(default_factory=list)
    source_prompt_context: Optional[str] = None


class Category(BaseModel):
    """An event category searched for within a market."""

    id: str = Field(default_factory=new_id)
    name: str
    pillar: str = "Discover"  # Move, Discover, Connect
    description: Optional[str] = None
    search_sub_prompt: Optional[str] = None
    exclusion_rules: Optional[str] = None
    is_active: bool = True


class CrawlSource(BaseModel):
    """A URL crawled on a recurring schedule to extract events."""

    id: str = Field(default_factory=new_id)
    market_id: str
    url: str
    name: Optional[str] = None
    content_selector: Optional[str] = None
    crawl_frequency: CrawlFrequency = CrawlFrequency.WEEKLY
    is_active: bool = True
    consecutive_failures: int = 0
    last_crawled_at: Optional[datetime] = None
    last_crawl_status: Optional[CrawlOutcome] = None
    last_crawl_error: Optional[str] = None
    last_events_found: int = 0
    total_events_found: int = 0


class DateWindow(BaseModel):
    """Half-open date range [start, end) a job searches within."""

    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "DateWindow":
        if self.end <= self.start:
            raise ValueError(f"Date window end {self.end} must be after start {self.start}")
        return self

    @classmethod
    def upcoming(cls, days: int = 90, today: Optional[date] = None) -> "DateWindow":
        """Window starting today and spanning the given number of days."""
        start = today or utcnow().date()
        return cls(start=start, end=start + timedelta(days=days))

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end


class Job(BaseModel):
    """One discovery attempt for a market against a category or a crawl source."""

    id: str = Field(default_factory=new_id)
    market_id: str
    category_id: Optional[str] = None  # search jobs
    source_id: Optional[str] = None  # crawl jobs
    method: DiscoveryMethod
    status: JobStatus = JobStatus.PENDING
    window: DateWindow

    # Counters
    events_found: int = 0
    events_validated: int = 0
    events_stored: int = 0

    # Audit
    prompt_used: Optional[str] = None
    raw_response: Optional[str] = None
    error_message: Optional[str] = None

    # Timing
    created_at: datetime = Field(default_factory=utcnow)
    scheduled_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    claimed_by: Optional[str] = None

    @model_validator(mode="after")
    def _check_target(self) -> "Job":
        if self.method == DiscoveryMethod.SEARCH and not self.category_id:
            raise ValueError("Search jobs require a category_id")
        if self.method == DiscoveryMethod.CRAWL and not self.source_id:
            raise ValueError("Crawl jobs require a source_id")
        return self


class CandidateRecord(BaseModel):
    """An unvalidated event as returned by a search or crawl provider.

    Providers answer in camelCase JSON; both spellings are accepted.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    # Core event info
    title: str
    description: Optional[str] = None
    brief_summary: Optional[str] = None

    # Timing
    date_raw: Optional[str] = None
    date_start: Optional[str] = None  # YYYY-MM-DD
    date_end: Optional[str] = None
    time_start: Optional[str] = None
    time_end: Optional[str] = None
    is_recurring: bool = False
    recurrence_pattern: Optional[str] = None

    # Location
    location_name: Optional[str] = None
    location_address: Optional[str] = None
    location_city: Optional[str] = None
    location_state: Optional[str] = None
    is_virtual: bool = False
    virtual_url: Optional[str] = None

    # Cost
    cost_raw: Optional[str] = None
    cost_type: Optional[str] = None  # free, paid, donation, varies
    cost_min: Optional[float] = None
    cost_max: Optional[float] = None

    # Provenance
    source_url: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    discovery_job_id: Optional[str] = None

    @field_validator(
        "title", "description", "brief_summary", "date_raw", "date_start",
        "date_end", "time_start", "time_end", "recurrence_pattern",
        "location_name", "location_address", "location_city", "location_state",
        "virtual_url", "cost_raw", "cost_type", "source_url",
        mode="before",
    )
    @classmethod
    def _sanitize_text(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            value = str(value)
        value = value.strip()
        if value.lower() in NULLISH_STRINGS:
            return None
        return value

    @field_validator("is_recurring", "is_virtual", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in ("true", "yes", "1")
        return bool(value)

    @field_validator("cost_min", "cost_max", mode="before")
    @classmethod
    def _numeric_cost(cls, value: Any) -> Optional[float]:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _tag_list(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(tag).strip() for tag in value if isinstance(tag, str) and tag.strip()]

    @property
    def start_date(self) -> Optional[date]:
        """Parsed start date, or None when no date can be read."""
        return parse_event_date(self.date_start, self.date_raw)

    @property
    def end_date(self) -> Optional[date]:
        return parse_event_date(self.date_end, None)


def parse_event_date(structured: Optional[str], raw: Optional[str]) -> Optional[date]:
    """Parse an event date from the structured field, falling back to raw text.

    The structured field is parsed strictly; raw text is only scanned for an
    ISO date so that phrases like "Every Tuesday" never produce a guess.
    """
    for text in (structured, raw):
        if not text:
            continue
        match = ISO_DATE_PATTERN.search(text)
        if match:
            try:
                return date.fromisoformat(match.group())
            except ValueError:
                continue

    if structured:
        try:
            return date_parser.parse(structured).date()
        except (ValueError, TypeError, OverflowError):
            return None
    return None


class StoredRecord(CandidateRecord):
    """A candidate that survived validation policy and was persisted."""

    id: str = Field(default_factory=new_id)
    market_id: str
    category_id: Optional[str] = None
    pillar: Optional[str] = None
    source: DiscoveryMethod = DiscoveryMethod.SEARCH
    fingerprint: str = ""
    validation_status: ValidationStatus = ValidationStatus.PENDING
    validation_confidence: Optional[float] = None
    validation_notes: Optional[str] = None
    is_duplicate: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class ValidationResult(BaseModel):
    """Verdict of the validation provider for one candidate."""

    is_valid: bool = True
    confidence: float = Field(ge=0.0, le=1.0)
    issues: list[str] = Field(default_factory=list)
    corrections: dict[str, Any] = Field(default_factory=dict)
    recommendation: Recommendation = Recommendation.NEEDS_REVIEW
    corrected_record: CandidateRecord


class InsertResult(BaseModel):
    """Outcome of inserting one record through the deduplication engine."""

    outcome: InsertOutcome
    fingerprint: str
    record: Optional[StoredRecord] = None
    matched_id: Optional[str] = None
    similarity: Optional[float] = None

    @property
    def inserted(self) -> bool:
        return self.outcome != InsertOutcome.EXACT_DUPLICATE


class CallLog(BaseModel):
    """One external provider call, kept for operability."""

    id: str = Field(default_factory=new_id)
    provider: str  # perplexity, openai, http
    model: Optional[str] = None
    action: str  # discovery, crawl_extraction, validation
    prompt: str
    response: str
    duration_ms: int
    tokens_used: Optional[int] = None
    status: str  # success, error
    error_message: Optional[str] = None
    market_id: Optional[str] = None
    job_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class PageContent(BaseModel):
    """Readable text extracted from a crawled page."""

    text: str
    title: str = ""
    links: list[str] = Field(default_factory=list)


class AcquisitionResult(BaseModel):
    """Candidates returned by an acquisition strategy plus the audit trail."""

    candidates: list[CandidateRecord]
    prompt: Optional[str] = None
    raw_response: Optional[str] = None
    discarded: int = 0
