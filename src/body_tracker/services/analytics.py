"""
Analytics over metric entries and phases.

All functions are pure: they read the entries and phases they are given and
never mutate them. Sparse data never raises; missing values come back as
None.
"""

import logging
from collections.abc import Mapping, Sequence
from datetime import date
from typing import Any

import pandas as pd
from pydantic import BaseModel, Field

from body_tracker.domain.metrics import METRIC_FIELDS, MetricEntry, Phase
from body_tracker.utils.dates import parse_date_key, shift_days, to_date_key, week_bucket

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 5
DEFAULT_MAX_MISSES = 2


class RollingPoint(BaseModel):
    """One point of a rolling-average series."""

    date: str
    value: float | None = Field(None, description="Numeric value on this date")
    average: float | None = Field(None, description="Trailing window average")


class MetricStats(BaseModel):
    """Progress of one metric over a phase."""

    start: float
    current: float
    change: float
    weekly_avg: float
    week_change: float
    goal: float | None = None
    remaining: float | None = None


class PhaseStats(BaseModel):
    """Progress of every metric over a phase. A metric without samples maps to None."""

    phase_id: int
    days_elapsed: int
    weeks_elapsed: float
    metrics: dict[str, MetricStats | None] = Field(default_factory=dict)

    @property
    def has_data(self) -> bool:
        return any(stats is not None for stats in self.metrics.values())


def _numeric_series(
    entries: Mapping[str, MetricEntry], dates: Sequence[str], field: str
) -> pd.Series:
    values = [
        entries[d].number(field) if d in entries else None
        for d in dates
    ]
    return pd.Series(values, index=list(dates), dtype="float64")


def _none_if_nan(value: Any) -> float | None:
    return None if pd.isna(value) else float(value)


def rolling_average(
    entries: Mapping[str, MetricEntry],
    field: str,
    window: int = DEFAULT_WINDOW,
    dates: Sequence[str] | None = None,
) -> list[RollingPoint]:
    """
    Trailing average of a metric.

    The window is positional: it spans the last ``window`` dates of the
    sequence, however many calendar days apart they are. Dates whose value
    is missing or not numeric are left out of every window that contains
    them, and a window without any numeric value has no average.

    Args:
        entries: Date key to entry mapping.
        field: Metric key.
        window: Number of positions in each window.
        dates: Dates to include (defaults to every stored date). Sorted ascending.

    Returns:
        One point per date, ascending.
    """
    if window < 1:
        raise ValueError(f"window must be >= 1, got {window}")

    ordered = sorted(entries if dates is None else dates)
    if not ordered:
        return []

    series = _numeric_series(entries, ordered, field)
    averages = series.rolling(window, min_periods=1).mean()

    return [
        RollingPoint(
            date=d,
            value=_none_if_nan(series.iloc[i]),
            average=_none_if_nan(averages.iloc[i]),
        )
        for i, d in enumerate(ordered)
    ]


def _metric_stats(
    entries: Mapping[str, MetricEntry],
    dates: Sequence[str],
    field: str,
    phase: Phase,
    days_elapsed: int,
    week_start: str,
    today_key: str,
) -> MetricStats | None:
    samples = [(d, entries[d].number(field)) for d in dates]
    samples = [(d, v) for d, v in samples if v is not None]
    if not samples:
        return None

    start_value = samples[0][1]
    current_value = samples[-1][1]
    change = current_value - start_value

    weeks_elapsed = days_elapsed / 7
    weekly_avg = change / weeks_elapsed if days_elapsed > 0 else 0.0

    recent = [v for d, v in samples if week_start <= d <= today_key]
    week_change = recent[-1] - recent[0] if len(recent) >= 2 else 0.0

    goal = phase.goal(field)
    return MetricStats(
        start=start_value,
        current=current_value,
        change=change,
        weekly_avg=weekly_avg,
        week_change=week_change,
        goal=goal,
        remaining=None if goal is None else goal - current_value,
    )


def phase_statistics(
    phase: Phase,
    entries: Mapping[str, MetricEntry],
    today: date,
    fields: Sequence[str] = METRIC_FIELDS,
) -> PhaseStats:
    """
    Progress of each metric since the start of a phase.

    Args:
        phase: Phase to evaluate.
        entries: Date key to entry mapping.
        today: Reference day for elapsed time and the trailing week.
        fields: Metric keys to evaluate.

    Returns:
        Statistics per metric; metrics without a numeric sample in range are None.
    """
    dates = [d for d in sorted(entries) if phase.contains(d)]
    days_elapsed = (today - parse_date_key(phase.start)).days
    today_key = to_date_key(today)
    week_start = to_date_key(shift_days(today, -7))

    metrics = {
        field: _metric_stats(entries, dates, field, phase, days_elapsed, week_start, today_key)
        for field in fields
    }

    logger.debug(f"Computed stats for phase {phase.id} over {len(dates)} dates")
    return PhaseStats(
        phase_id=phase.id,
        days_elapsed=days_elapsed,
        weeks_elapsed=days_elapsed / 7,
        metrics=metrics,
    )


def streak(
    entries: Mapping[str, MetricEntry],
    field: str,
    max_misses_per_week: int = DEFAULT_MAX_MISSES,
) -> int:
    """
    Adherence streak of a flag, tolerating a few misses per week.

    Stored dates are walked from newest to oldest and grouped into weeks of
    seven days counted from the epoch. Each day with the flag set counts
    towards the streak; days without it are misses. The streak ends at the
    first miss that takes its week over ``max_misses_per_week``.

    Args:
        entries: Date key to entry mapping.
        field: Flag key.
        max_misses_per_week: Misses allowed per week.

    Returns:
        Number of days with the flag set in the streak.
    """
    count = 0
    misses = 0
    current_week: int | None = None

    for date_key in sorted(entries, reverse=True):
        week = week_bucket(date_key)
        if week != current_week:
            current_week = week
            misses = 0

        if entries[date_key].value(field) is True:
            count += 1
            continue

        misses += 1
        if misses > max_misses_per_week:
            break

    return count


def latest_value(entries: Mapping[str, MetricEntry], field: str) -> tuple[str, float] | None:
    """Most recent numeric value of a metric as (date, value), or None."""
    for date_key in sorted(entries, reverse=True):
        number = entries[date_key].number(field)
        if number is not None:
            return date_key, number
    return None
