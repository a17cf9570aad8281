"""
Location Stats — Pydantic Models
==================================

Location configuration, normalized CRM records, metric buckets and the
aggregation results served by the stats API.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

METRICS = ("leads", "appointments", "shows", "no_shows", "wins", "cold")

DAY_MS = 86_400_000
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_timestamp_ms(value: Any) -> Optional[int]:
    """
    Convert a CRM timestamp to epoch milliseconds.

    Accepts epoch milliseconds (int/float or numeric string) and ISO-8601
    strings; naive ISO values are treated as UTC. Returns None when the value
    is missing or unparseable.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return (parsed - EPOCH) // timedelta(milliseconds=1)
    return None


def normalize_tags(raw: Any) -> Tuple[str, ...]:
    if not raw:
        return ()
    if isinstance(raw, str):
        raw = raw.split(",")
    tags = []
    for tag in raw:
        tag = str(tag).strip().lower()
        if tag and tag not in tags:
            tags.append(tag)
    return tuple(tags)


def normalize_stage_name(name: str) -> str:
    """``"No Show"`` -> ``"no-show"``."""
    return "-".join(str(name).strip().lower().replace("_", " ").split())


# ─── Location Configuration ─────────────────────────────────

class PipelineRef(BaseModel):
    """A whitelisted pipeline of one sub-account."""
    model_config = ConfigDict(frozen=True)

    name: str
    pipeline_id: str
    stage_ids: Dict[str, str] = Field(default_factory=dict)

    def stage_id(self, stage_name: str) -> Optional[str]:
        return self.stage_ids.get(normalize_stage_name(stage_name))


class CalendarRef(BaseModel):
    """A calendar whose appointments carry show/no-show outcomes."""
    model_config = ConfigDict(frozen=True)

    name: str
    calendar_id: str


class LocationConfig(BaseModel):
    """
    One physical business location, fully resolved at startup.

    ``api_key`` is scoped to the sub-account and is excluded from every dump
    and repr.
    """
    model_config = ConfigDict(frozen=True)

    slug: str
    display_name: str
    sub_account_id: str
    api_key: str = Field(repr=False, exclude=True)
    pipelines: Tuple[PipelineRef, ...] = ()
    calendars: Tuple[CalendarRef, ...] = ()
    discovery_error: Optional[str] = None

    @field_validator("slug")
    @classmethod
    def _slug_is_normalized(cls, value: str) -> str:
        slug = slugify(value)
        if not slug:
            raise ValueError("slug must not be empty")
        return slug

    def public_view(self) -> Dict[str, str]:
        return {"slug": self.slug, "displayName": self.display_name}


def slugify(name: str) -> str:
    """``"Lake Oswego "`` -> ``"lake-oswego"``."""
    return "-".join(str(name).strip().lower().split())


# ─── Date Window ────────────────────────────────────────────

class DateWindow(BaseModel):
    """Inclusive UTC millisecond window."""
    model_config = ConfigDict(frozen=True)

    start_ms: int
    end_ms: int

    @model_validator(mode="after")
    def _ordered(self) -> "DateWindow":
        if self.start_ms > self.end_ms:
            raise ValueError("start_ms must not be after end_ms")
        return self

    def contains(self, ts_ms: Optional[int]) -> bool:
        return ts_ms is not None and self.start_ms <= ts_ms <= self.end_ms

    @property
    def start_date(self) -> str:
        return _iso_date(self.start_ms)

    @property
    def end_date(self) -> str:
        return _iso_date(self.end_ms)

    def to_response(self) -> Dict[str, str]:
        return {"startDate": self.start_date, "endDate": self.end_date}


def _iso_date(ts_ms: int) -> str:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).date().isoformat()


# ─── CRM Records ────────────────────────────────────────────

class Contact(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    tags: Tuple[str, ...] = ()

    @classmethod
    def from_api(cls, raw: Mapping[str, Any]) -> "Contact":
        return cls(
            id=str(raw.get("id", "")),
            created_at=parse_timestamp_ms(raw.get("dateAdded") or raw.get("createdAt")),
            updated_at=parse_timestamp_ms(raw.get("dateUpdated") or raw.get("updatedAt")),
            tags=normalize_tags(raw.get("tags")),
        )


class Opportunity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    pipeline_id: Optional[str] = None
    stage_id: Optional[str] = None
    status: Optional[str] = None
    tags: Tuple[str, ...] = ()
    created_at: Optional[int] = None
    contact_id: Optional[str] = None

    @classmethod
    def from_api(cls, raw: Mapping[str, Any], pipeline_id: str = None) -> "Opportunity":
        contact = raw.get("contact") or {}
        tags = normalize_tags(
            list(normalize_tags(raw.get("tags"))) + list(normalize_tags(contact.get("tags")))
        )
        contact_id = raw.get("contactId") or contact.get("id")
        return cls(
            id=str(raw.get("id", "")),
            pipeline_id=raw.get("pipelineId") or pipeline_id,
            stage_id=raw.get("pipelineStageId") or raw.get("stageId"),
            status=(raw.get("status") or "").lower() or None,
            tags=tags,
            created_at=parse_timestamp_ms(raw.get("createdAt") or raw.get("dateAdded")),
            contact_id=str(contact_id) if contact_id else None,
        )


class Appointment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    calendar_id: Optional[str] = None
    start_time: Optional[int] = None
    status: Optional[str] = None

    @classmethod
    def from_api(cls, raw: Mapping[str, Any], calendar_id: str = None) -> "Appointment":
        status = raw.get("appointmentStatus") or raw.get("status") or ""
        return cls(
            id=str(raw.get("id", "")),
            calendar_id=raw.get("calendarId") or calendar_id,
            start_time=parse_timestamp_ms(raw.get("startTime")),
            status=status.lower() or None,
        )


# ─── Metric Buckets ─────────────────────────────────────────

class MetricBucket(BaseModel):
    """Counts for one scope (combined, a pipeline, a calendar)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    leads: int = Field(0, ge=0)
    appointments: int = Field(0, ge=0)
    shows: int = Field(0, ge=0)
    no_shows: int = Field(0, ge=0)
    wins: int = Field(0, ge=0)
    cold: int = Field(0, ge=0)

    def add(self, metric: str, count: int = 1) -> None:
        if metric not in METRICS:
            raise KeyError(f"Unknown metric: {metric}")
        setattr(self, metric, getattr(self, metric) + count)

    def merge(self, other: "MetricBucket") -> None:
        for metric in METRICS:
            self.add(metric, getattr(other, metric))

    def copy_bucket(self) -> "MetricBucket":
        return MetricBucket(**{m: getattr(self, m) for m in METRICS})

    def to_response(self) -> Dict[str, int]:
        return self.model_dump(by_alias=True)


class ErrorMarker(BaseModel):
    """Replaces a breakdown bucket whose sub-fetch failed."""
    model_config = ConfigDict(frozen=True)

    error: bool = True
    details: str

    def to_response(self) -> Dict[str, Any]:
        return {"error": True, "details": self.details}


Breakdown = Dict[str, Union[MetricBucket, ErrorMarker]]


def _breakdown_response(breakdown: Breakdown) -> Dict[str, Any]:
    return {name: bucket.to_response() for name, bucket in breakdown.items()}


# ─── Aggregation Results ────────────────────────────────────

class AggregationResult(BaseModel):
    """Stats for one location over one window."""
    location_slug: str
    display_name: str
    window: DateWindow
    strategy: str
    combined: MetricBucket = Field(default_factory=MetricBucket)
    pipelines: Breakdown = Field(default_factory=dict)
    calendars: Breakdown = Field(default_factory=dict)

    @property
    def failed_buckets(self) -> List[str]:
        return [
            name
            for name, bucket in list(self.pipelines.items()) + list(self.calendars.items())
            if isinstance(bucket, ErrorMarker)
        ]

    def to_response(self) -> Dict[str, Any]:
        return {
            "location": self.display_name,
            "slug": self.location_slug,
            "dateRange": self.window.to_response(),
            "strategy": self.strategy,
            "combined": self.combined.to_response(),
            "pipelines": _breakdown_response(self.pipelines),
            "calendars": _breakdown_response(self.calendars),
        }


class MultiLocationResult(BaseModel):
    """Stats summed over several locations."""
    selection: List[str]
    window: DateWindow
    combined: MetricBucket = Field(default_factory=MetricBucket)
    by_location: Dict[str, Union[AggregationResult, ErrorMarker]] = Field(default_factory=dict)
    by_pipeline: Dict[str, MetricBucket] = Field(default_factory=dict)
    by_calendar: Dict[str, MetricBucket] = Field(default_factory=dict)

    def to_response(self) -> Dict[str, Any]:
        return {
            "selection": list(self.selection),
            "dateRange": self.window.to_response(),
            "combined": self.combined.to_response(),
            "byLocation": {
                slug: entry.to_response() for slug, entry in self.by_location.items()
            },
            "byPipeline": {name: b.to_response() for name, b in self.by_pipeline.items()},
            "byCalendar": {name: b.to_response() for name, b in self.by_calendar.items()},
        }
