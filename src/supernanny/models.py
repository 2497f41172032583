"""Core data models for supernanny.

Uses Pydantic v2 for validation, ULID for sortable unique IDs.
"""

import logging
from datetime import date, datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    computed_field,
    model_validator,
)
from ulid import ULID

logger = logging.getLogger(__name__)


def generate_id() -> str:
    """Generate a ULID (sortable, unique identifier)."""
    return str(ULID())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


EventType = Literal[
    "feeding",
    "sleep",
    "diaper",
    "milestone",
    "measurement",
    "bath",
    "medication",
    "activity",
    "note",
]

# Types the timeline knows how to draw; the rest fall back to a generic card.
RENDERABLE_TYPES = ("feeding", "sleep", "diaper", "milestone")


# ─────────────────────────────────────────────────────────────────────────────
# Metrics (tagged by event type)
# ─────────────────────────────────────────────────────────────────────────────


class FeedingMetrics(BaseModel):
    kind: Literal["feeding"] = "feeding"
    amount: int | float | str | None = None
    unit: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class SleepMetrics(BaseModel):
    kind: Literal["sleep"] = "sleep"
    duration: int | float | None = None  # minutes
    extra: dict[str, Any] = Field(default_factory=dict)


class DiaperMetrics(BaseModel):
    kind: Literal["diaper"] = "diaper"
    diaper_type: str | None = None  # wet, dirty, both, dry
    extra: dict[str, Any] = Field(default_factory=dict)


class MeasurementMetrics(BaseModel):
    kind: Literal["measurement"] = "measurement"
    weight: float | None = None
    height: float | None = None
    temperature: float | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class UnrecognizedMetrics(BaseModel):
    """Metrics for event types without a dedicated shape, or that failed validation."""

    kind: Literal["unrecognized"] = "unrecognized"
    values: dict[str, Any] = Field(default_factory=dict)


Metrics = Annotated[
    Union[FeedingMetrics, SleepMetrics, DiaperMetrics, MeasurementMetrics, UnrecognizedMetrics],
    Field(discriminator="kind"),
]

_METRIC_MODELS: dict[str, type[BaseModel]] = {
    "feeding": FeedingMetrics,
    "sleep": SleepMetrics,
    "diaper": DiaperMetrics,
    "measurement": MeasurementMetrics,
}


def parse_metrics(event_type: str, raw: dict | BaseModel | None) -> BaseModel:
    """Turn the extractor's loose metrics bag into the variant for ``event_type``.

    Keys the variant does not know are kept in its ``extra`` dict. Values that
    fail validation degrade to ``UnrecognizedMetrics`` instead of raising.
    """
    if isinstance(raw, BaseModel):
        return raw

    values = dict(raw or {})
    model = _METRIC_MODELS.get(event_type)
    if model is None:
        return UnrecognizedMetrics(values=values)

    known = {
        key: values.pop(key)
        for key in list(values)
        if key in model.model_fields and key not in ("kind", "extra")
    }
    try:
        return model(**known, extra=values)
    except ValidationError as e:
        logger.warning(f"Metrics for {event_type} event did not validate, keeping raw values: {e}")
        return UnrecognizedMetrics(values={**known, **values})


# ─────────────────────────────────────────────────────────────────────────────
# Extracted and displayed events
# ─────────────────────────────────────────────────────────────────────────────


class EventMetadata(BaseModel):
    """Extraction-time metadata attached to a persisted event."""

    event_time: str | None = None
    confidence_score: int | None = None
    event_hash: str | None = None
    text_snippet: str | None = None
    original_time_string: str | None = None  # as spoken in the transcript


class RawExtractedEvent(BaseModel):
    """One event produced by the extraction step. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    event_type: EventType
    event_time: str | None = None   # free text from the transcript
    start_time: str | None = None   # ISO datetime from the persisted record
    metrics: Metrics = Field(default_factory=UnrecognizedMetrics)
    tags: list[str] = Field(default_factory=list)
    summary: str | None = None
    text_snippet: str | None = None
    confidence_score: int = Field(default=0, ge=0, le=100)
    event_hash: str | None = None
    diary_entry_id: str | None = None
    created_at: str | None = None
    metadata: EventMetadata | None = None

    @model_validator(mode="before")
    @classmethod
    def _tag_metrics(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            data["metrics"] = parse_metrics(data.get("event_type", ""), data.get("metrics"))
            for key in ("tags", "confidence_score"):
                if data.get(key) is None:
                    data.pop(key, None)
        return data


class StoredEvent(RawExtractedEvent):
    """An event row fetched from the ``events`` table, with its diary text."""

    diary_text: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_diary(cls, data: Any) -> Any:
        if isinstance(data, dict) and "diary_text" not in data:
            diary = data.get("diary_entries")
            if isinstance(diary, dict):
                data = {**data, "diary_text": diary.get("raw_text")}
        return data


class DisplayTimelineEvent(BaseModel):
    """The record the timeline renders and the local cache stores.

    Serialized with the web client's camelCase keys (``by_alias=True``).
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: EventType
    time: str                       # display label, not sortable
    timestamp: str | None = None    # ISO-8601, sort key only
    description: str
    full_narrative: str | None = Field(default=None, alias="fullNarrative")
    related_patterns: list[str] = Field(default_factory=list, alias="relatedPatterns")
    is_new: bool = Field(default=False, alias="isNew")

    @computed_field(alias="hasDetails")
    @property
    def has_details(self) -> bool:
        return bool(self.full_narrative)

    @property
    def is_renderable(self) -> bool:
        return self.type in RENDERABLE_TYPES

    def to_cache_dict(self) -> dict:
        """Serialize for the local cache blob.

        ``is_new`` is left out: a reloaded event is never new again.
        """
        return self.model_dump(mode="json", by_alias=True, exclude={"is_new"})


# ─────────────────────────────────────────────────────────────────────────────
# Platform payloads
# ─────────────────────────────────────────────────────────────────────────────


class DiaryEntry(BaseModel):
    """Persisted transcript of one recording session."""

    id: str
    tenant_id: str
    user_id: str
    raw_text: str
    audio_file_id: str | None = None
    duration: float | None = None
    created_at: str


class TranscriptionResult(BaseModel):
    """Response of the transcription function, or a locally built failure."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    error: str | None = None
    failed_step: str | None = Field(default=None, alias="failedStep")
    transcription: str | None = None
    events: list[RawExtractedEvent] = Field(default_factory=list)
    diary_entry: DiaryEntry | None = None

    @model_validator(mode="before")
    @classmethod
    def _collect_events(cls, data: Any) -> Any:
        # Older function deployments returned a single `event` or nested the
        # list under `structured_data`.
        if isinstance(data, dict) and not data.get("events"):
            data = dict(data)
            data.pop("events", None)
            structured = data.get("structured_data") or {}
            if isinstance(structured, dict) and structured.get("events"):
                data["events"] = structured["events"]
            elif isinstance(data.get("event"), dict):
                data["events"] = [data["event"]]
        return data

    @property
    def event_ids(self) -> list[str]:
        return [e.id for e in self.events if e.id]

    @classmethod
    def failure(cls, error: str, failed_step: str) -> "TranscriptionResult":
        return cls(success=False, error=error, failed_step=failed_step)


class InvitationResult(BaseModel):
    """Response of the invitation function."""

    success: bool = False
    code: str | None = None
    message: str | None = None
    error: str | None = None
    details: str | None = None

    @property
    def display_message(self) -> str:
        if self.success:
            return self.message or "Invitation sent successfully"
        if self.error and self.details:
            return f"{self.error}: {self.details}"
        return self.error or "Failed to send invitation"


class User(BaseModel):
    id: str
    email: str | None = None
    app_metadata: dict[str, Any] = Field(default_factory=dict)
    user_metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def onboarding_completed(self) -> bool:
        return self.user_metadata.get("onboarding_completed") is True

    @property
    def roles(self) -> list[str]:
        return list(self.app_metadata.get("roles") or [])


class Session(BaseModel):
    access_token: str
    refresh_token: str | None = None
    token_type: str = "bearer"
    expires_at: int | None = None
    user: User


class BabyProfile(BaseModel):
    id: str | None = None
    name: str
    dob: date
    tenant_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Invitation(BaseModel):
    id: str | None = None
    email: str
    role: str
    code: str
    tenant_id: str
    expires_at: datetime | None = None
    created_at: datetime | None = None
