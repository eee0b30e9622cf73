"""
Body metric domain models.

This module defines the daily metric entry, training phases, the replicated
snapshot document and the sync state carried by the coordinator.
"""

import math
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from body_tracker.utils.dates import is_date_key

METRIC_FIELDS: tuple[str, ...] = (
    "weight",
    "waist",
    "body_fat",
    "calories",
    "protein",
    "steps",
    "sleep",
)

FLAG_FIELDS: tuple[str, ...] = ("workout", "cardio", "on_plan")


def parse_number(value: Any) -> float | None:
    """
    Interpret a stored metric value as a finite number.

    Args:
        value: Stored value (decimal string, number or None).

    Returns:
        The number, or None when the value is absent or not numeric.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _coerce_decimal_string(value: Any) -> Any:
    # JSON written by other clients may carry bare numbers.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class SyncStatus(str, Enum):
    """States of the sync coordinator."""

    IDLE = "idle"
    DIRTY = "dirty"
    SYNCING = "syncing"
    FAILED = "failed"


class MetricEntry(BaseModel):
    """
    Immutable snapshot of one calendar day.

    Numeric metrics are kept as the decimal strings the user typed; they are
    only interpreted as numbers by the analytics functions. Unknown keys are
    preserved so documents written by newer clients survive a round trip.
    """

    weight: str | None = Field(None, description="Body weight")
    waist: str | None = Field(None, description="Waist circumference")
    body_fat: str | None = Field(None, description="Body fat percentage")
    calories: str | None = Field(None, description="Calories eaten")
    protein: str | None = Field(None, description="Protein eaten in grams")
    steps: str | None = Field(None, description="Step count")
    sleep: str | None = Field(None, description="Hours slept")

    workout: bool = Field(False, description="Strength session done")
    cardio: bool = Field(False, description="Cardio session done")
    on_plan: bool = Field(False, description="Stayed on the nutrition plan")

    model_config = ConfigDict(frozen=True, extra="allow")

    @field_validator(*METRIC_FIELDS, mode="before")
    @classmethod
    def _coerce_metric(cls, value: Any) -> Any:
        return _coerce_decimal_string(value)

    def value(self, field: str) -> Any:
        """Get a field value, including extra (unknown) fields."""
        if field in type(self).model_fields:
            return getattr(self, field)
        return (self.model_extra or {}).get(field)

    def number(self, field: str) -> float | None:
        """Get a field as a finite number, or None."""
        return parse_number(self.value(field))

    def is_empty(self) -> bool:
        """True if no metric, flag or extra field carries a value."""
        for field in METRIC_FIELDS:
            if getattr(self, field) not in (None, ""):
                return False
        for field in FLAG_FIELDS:
            if getattr(self, field):
                return False
        return not any(v not in (None, "", False) for v in (self.model_extra or {}).values())

    def with_field(self, field: str, value: Any) -> "MetricEntry":
        """
        Return a new entry with one field replaced.

        Args:
            field: Metric, flag or extra key.
            value: New value. None, "" or False clears the field.

        Returns:
            New entry; the current one is left untouched.
        """
        data = self.to_dict()
        if value in (None, "") or value is False:
            data.pop(field, None)
        else:
            data[field] = value
        return MetricEntry(**data)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the entry to its stored form.

        Only explicitly set fields are emitted, so decoding and re-encoding a
        stored entry reproduces it exactly.
        """
        return self.model_dump(exclude_unset=True)


class Phase(BaseModel):
    """
    Named time range with optional numeric goals.

    An empty ``end`` marks the phase as open (ongoing).
    """

    id: int = Field(description="Creation-time identifier (epoch millis)")
    name: str = Field(min_length=1, description="Display name")
    start: str = Field(description="First day of the phase (YYYY-MM-DD)")
    end: str = Field("", description="Last day of the phase, empty while open")
    goals: dict[str, str] = Field(default_factory=dict, description="Metric key to goal value")

    model_config = ConfigDict(frozen=True, extra="allow")

    @field_validator("start")
    @classmethod
    def _check_start(cls, value: str) -> str:
        if not is_date_key(value):
            raise ValueError(f"start must be YYYY-MM-DD, got {value!r}")
        return value

    @field_validator("end", mode="before")
    @classmethod
    def _check_end(cls, value: Any) -> Any:
        if value is None:
            return ""
        if value != "" and not is_date_key(value):
            raise ValueError(f"end must be YYYY-MM-DD or empty, got {value!r}")
        return value

    @field_validator("goals", mode="before")
    @classmethod
    def _coerce_goals(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: _coerce_decimal_string(v) for k, v in value.items()}
        return value

    @property
    def is_open(self) -> bool:
        return self.end == ""

    def contains(self, date_key: str) -> bool:
        """True if the date falls inside the phase (open phases have no upper bound)."""
        return self.start <= date_key and (self.is_open or date_key <= self.end)

    def goal(self, field: str) -> float | None:
        return parse_number(self.goals.get(field))

    def to_dict(self) -> dict[str, Any]:
        """Convert the phase to its stored form."""
        return self.model_dump(exclude_unset=True)


class RemoteSnapshot(BaseModel):
    """
    Replicated document: all entries and phases.

    ``version`` is the opaque token handed out by the remote store on read;
    it is not part of the document itself.
    """

    entries: dict[str, MetricEntry] = Field(default_factory=dict)
    phases: list[Phase] = Field(default_factory=list)
    version: str | None = Field(None, exclude=True)

    @field_validator("entries")
    @classmethod
    def _check_keys(cls, value: dict[str, MetricEntry]) -> dict[str, MetricEntry]:
        bad = [key for key in value if not is_date_key(key)]
        if bad:
            raise ValueError(f"Invalid date keys: {bad}")
        return value


class SyncState:
    """Process-wide replication state owned by the sync coordinator."""

    def __init__(self, last_sync: int | None = None) -> None:
        """
        Initialize sync state.

        Args:
            last_sync: Epoch millis of the last confirmed remote write.
        """
        self.status = SyncStatus.IDLE
        self.dirty = False
        self.last_sync = last_sync
        self.pending_timer: Any = None
        self.generation = 0
        self.message: str | None = None
        self.message_expires_at = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "dirty": self.dirty,
            "last_sync": self.last_sync,
            "pending": self.pending_timer is not None,
        }
