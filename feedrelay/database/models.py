"""
FeedRelay Data Models
=====================

Pydantic models and dataclasses for feed configuration, feed state, items,
AI analyses and publications. The models mirror the database schema and
carry from_db_row constructors for the repositories.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..utils.exceptions import ValidationError
from ..utils.validators import URLValidator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string; such strings sort chronologically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class ParserOptions(BaseModel):
    """Per-feed parsing options."""

    max_items: Optional[int] = Field(default=None, ge=1, description="Keep only the first N entries")


class FeedConfig(BaseModel):
    """Configured feed source (read-only input to the pipeline)."""

    id: int = Field(..., ge=1, description="Feed identifier, unique within a run")
    url: str = Field(..., description="Feed URL (http or https)")
    name: Optional[str] = Field(default=None, max_length=255)
    enabled: bool = Field(default=True)
    timeout: Optional[int] = Field(default=None, ge=1, le=300, description="Request timeout override in seconds")
    cache_ttl: int = Field(default=0, ge=0, description="Fetch cache TTL in seconds (0 disables caching)")
    parser_options: ParserOptions = Field(default_factory=ParserOptions)
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra request headers")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        """Require an absolute http(s) URL."""
        try:
            return URLValidator.validate_feed_url(v)
        except ValidationError as e:
            raise ValueError(e.user_message)

    @property
    def display_name(self) -> str:
        return self.name or self.url

    def __str__(self) -> str:
        return f"FeedConfig({self.id}:{self.display_name})"


class FeedState(BaseModel):
    """Fetch bookkeeping for a single feed."""

    feed_id: int
    url: Optional[str] = None
    last_fetch_at: Optional[datetime] = Field(default=None, description="Last successful fetch")
    fetch_token: Optional[str] = Field(default=None, description="ETag from the last successful fetch")
    last_modified: Optional[str] = Field(default=None, description="Last-Modified header value")
    failure_count: int = Field(default=0, ge=0, description="Consecutive failures")
    last_status: Optional[int] = Field(default=None, description="Last HTTP status, 0 for network errors")
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    backoff_until: Optional[datetime] = None

    def is_in_backoff(self, now: Optional[datetime] = None) -> bool:
        if self.backoff_until is None:
            return False
        return (now or utc_now()) < self.backoff_until

    def is_healthy(self) -> bool:
        return self.failure_count == 0

    @classmethod
    def from_db_row(cls, row: Any) -> "FeedState":
        return cls(**dict(row))


class CandidateItem(BaseModel):
    """Normalized feed entry not yet accepted by the item store."""

    guid: Optional[str] = None
    link: Optional[str] = None
    title: str = ""
    description: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    published_at: Optional[datetime] = None
    author: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict, description="Subset of the source entry")

    @property
    def is_malformed(self) -> bool:
        """Items without both a title and a link cannot be published."""
        return not (self.title or "").strip() and not (self.link or "").strip()

    def text_for_analysis(self) -> str:
        return self.description or self.title


class Item(BaseModel):
    """Stored, deduplicated item."""

    id: int
    feed_id: int
    content_key: str
    guid: Optional[str] = None
    title: str = ""
    link: Optional[str] = None
    description: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    published_at: Optional[datetime] = None
    author: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @classmethod
    def from_db_row(cls, row: Any) -> "Item":
        """Create Item from database row with JSON parsing."""
        data = dict(row)
        data["categories"] = json.loads(data.pop("categories_json", None) or "[]")
        data["raw"] = json.loads(data.pop("raw_json", None) or "{}")
        return cls(**data)

    def text_for_analysis(self) -> str:
        return self.description or self.title

    def __str__(self) -> str:
        return f"Item({self.id}:{self.title[:50]})"


class OutcomeStatus(str, Enum):
    """Result of a single model attempt."""

    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    INVALID_RESPONSE = "invalid_response"
    ERROR = "error"


@dataclass
class CompletionResponse:
    """Normalized answer of the completion capability."""

    text: str
    tokens_prompt: int = 0
    tokens_completion: int = 0
    usage: Optional[float] = None
    usage_cache: Optional[float] = None
    usage_data: Optional[float] = None
    usage_web: Optional[float] = None
    usage_file: Optional[float] = None


@dataclass
class ModelOutcome:
    """Outcome of one model in the fallback chain."""

    model: str
    status: OutcomeStatus
    response: Optional[CompletionResponse] = None
    error: Optional[str] = None
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


def compute_net_cost(
    usage: Optional[float],
    usage_cache: Optional[float] = None,
    usage_data: Optional[float] = None,
    usage_web: Optional[float] = None,
    usage_file: Optional[float] = None,
) -> Decimal:
    """Net cost of a completion.

    Compensation components carry their own sign (negative values are
    rebates) and are added as-is. Missing components count as zero.
    Components are summed as decimals built from their shortest repr so the
    result is exact.
    """
    total = Decimal("0")
    for component in (usage, usage_data, usage_cache, usage_web, usage_file):
        if component is None:
            continue
        total += Decimal(str(component))
    return total


@dataclass
class AnalysisResult:
    """Outcome of analyzing one item with the model fallback chain."""

    item_id: int
    purpose: str
    success: bool
    model_used: Optional[str] = None
    models_attempted: List[str] = field(default_factory=list)
    attempts: List[ModelOutcome] = field(default_factory=list)
    result_text: Optional[str] = None
    tokens_prompt: int = 0
    tokens_completion: int = 0
    usage: Optional[float] = None
    usage_cache: Optional[float] = None
    usage_data: Optional[float] = None
    usage_web: Optional[float] = None
    usage_file: Optional[float] = None
    error: Optional[str] = None
    language: Optional[str] = None
    duration_ms: int = 0

    @property
    def net_cost(self) -> Decimal:
        return compute_net_cost(
            self.usage, self.usage_cache, self.usage_data, self.usage_web, self.usage_file
        )

    @property
    def fallback_used(self) -> bool:
        return self.success and len(self.models_attempted) > 1


class AnalysisStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class AIAnalysis(BaseModel):
    """Persisted analysis record."""

    id: int
    item_id: int
    purpose: str
    status: AnalysisStatus
    model_used: Optional[str] = None
    models_attempted: List[str] = Field(default_factory=list)
    result_text: Optional[str] = None
    tokens_prompt: int = 0
    tokens_completion: int = 0
    usage_gross: Optional[float] = None
    usage_cache: Optional[float] = None
    usage_data: Optional[float] = None
    usage_web: Optional[float] = None
    usage_file: Optional[float] = None
    usage_net: Optional[float] = None
    error_message: Optional[str] = None
    language: Optional[str] = None
    duration_ms: int = 0
    is_current: bool = True
    superseded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_db_row(cls, row: Any) -> "AIAnalysis":
        data = dict(row)
        data["models_attempted"] = json.loads(data.pop("models_attempted_json", None) or "[]")
        return cls(**data)

    @property
    def net_cost(self) -> Decimal:
        """Net cost recomputed from the stored components."""
        return compute_net_cost(
            self.usage_gross, self.usage_cache, self.usage_data, self.usage_web, self.usage_file
        )

    def result_payload(self) -> Optional[Dict[str, Any]]:
        """Analysis text parsed as JSON, when it is a JSON object."""
        if not self.result_text:
            return None
        try:
            payload = json.loads(self.result_text)
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None


class PublicationStatus(str, Enum):
    """Delivery status of an (item, target) pair."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Publication(BaseModel):
    """Persisted publication row."""

    id: int
    item_id: int
    target: str
    status: PublicationStatus
    platform_message_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None

    @classmethod
    def from_db_row(cls, row: Any) -> "Publication":
        return cls(**dict(row))


@dataclass
class PublicationOutcome:
    """What a publish call observed or did."""

    item_id: int
    target: str
    status: PublicationStatus
    platform_message_id: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    sent_now: bool = False
    skipped: bool = False

    @property
    def is_sent(self) -> bool:
        return self.status == PublicationStatus.SENT

    @classmethod
    def from_publication(cls, publication: Publication, skipped: bool = False) -> "PublicationOutcome":
        return cls(
            item_id=publication.item_id,
            target=publication.target,
            status=publication.status,
            platform_message_id=publication.platform_message_id,
            attempts=publication.attempts,
            error=publication.last_error,
            skipped=skipped,
        )
