"""
Record types shared across the engagement analytics engine.

Feature vectors are fixed-schema records: the field order defined by
FEATURE_COLUMNS is the column order of every model matrix.
"""

import math
from dataclasses import dataclass, field, replace, asdict
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple, Dict, Any

# Interaction kinds as logged by the store, and the count field each one feeds
INTERACTION_KINDS: Tuple[str, ...] = (
    "view", "like", "poll", "rsvp", "register", "feedback", "evaluate"
)
COUNT_COLUMNS: Tuple[str, ...] = (
    "views", "likes", "polls", "rsvps", "registers", "feedbacks", "evaluations"
)
KIND_TO_COLUMN: Dict[str, str] = dict(zip(INTERACTION_KINDS, COUNT_COLUMNS))

# Model dimensions, in matrix column order
FEATURE_COLUMNS: Tuple[str, ...] = COUNT_COLUMNS + (
    "engagement_frequency", "interaction_diversity", "rsvp_rate"
)

TIME_WINDOW_SELECTORS = ("last-30-days", "last-90-days", "all-time", "custom")
_SELECTOR_ALIASES = {"30d": "last-30-days", "90d": "last-90-days", "all": "all-time"}
_WINDOW_DAYS = {"last-30-days": 30, "last-90-days": 90}


@dataclass(frozen=True)
class InteractionEvent:
    """One member action on an organization-scoped content item."""
    kind: str
    user_id: str
    org_id: str
    post_id: str
    timestamp: datetime


@dataclass(frozen=True)
class TimeWindow:
    """
    Half-open interval [start, end). A None bound is unbounded.
    """
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    selector: str = "all-time"

    @property
    def is_unbounded(self) -> bool:
        return self.start is None and self.end is None

    def contains(self, ts: datetime) -> bool:
        ts = _as_utc(ts)
        if self.start is not None and ts < self.start:
            return False
        if self.end is not None and ts >= self.end:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selector": self.selector,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def resolve_time_window(
    selector: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None
) -> TimeWindow:
    """
    Resolve a window selector into concrete bounds.

    Args:
        selector: One of last-30-days, last-90-days, all-time, custom
                  (30d, 90d and all are accepted as aliases)
        start: Inclusive start, required for custom
        end: Exclusive end, required for custom
        now: Reference time for relative windows (default: current UTC time)

    Returns:
        Resolved TimeWindow

    Raises:
        ValueError: If the selector is unknown or custom bounds are invalid
    """
    selector = _SELECTOR_ALIASES.get(selector, selector)
    if selector not in TIME_WINDOW_SELECTORS:
        raise ValueError(
            f"Unknown time window '{selector}'. Allowed values: {', '.join(TIME_WINDOW_SELECTORS)}"
        )

    if selector == "all-time":
        return TimeWindow(selector=selector)

    if selector == "custom":
        if start is None or end is None:
            raise ValueError("Custom time window requires both start and end")
        start, end = _as_utc(start), _as_utc(end)
        if start >= end:
            raise ValueError(f"Custom time window start {start} must be before end {end}")
        return TimeWindow(start=start, end=end, selector=selector)

    now = _as_utc(now) if now is not None else datetime.now(timezone.utc)
    return TimeWindow(start=now - timedelta(days=_WINDOW_DAYS[selector]), selector=selector)


@dataclass(frozen=True)
class UserFeatureVector:
    """
    Per-member engagement summary over one time window.

    cluster and predicted_probability stay None until a training run
    publishes results; use with_results() to obtain a filled copy.
    """
    user_id: str
    user_name: str
    views: int = 0
    likes: int = 0
    polls: int = 0
    rsvps: int = 0
    registers: int = 0
    feedbacks: int = 0
    evaluations: int = 0
    engagement_frequency: int = 0
    interaction_diversity: int = 0
    rsvp_rate: float = 0.0
    engagement_score: float = 0.0
    cluster: Optional[int] = None
    predicted_probability: Optional[float] = field(default=None)

    def __post_init__(self):
        for name in FEATURE_COLUMNS + ("engagement_score",):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"{name} must be finite and non-negative, got {value!r} for {self.user_id}")
        if self.interaction_diversity > len(INTERACTION_KINDS):
            raise ValueError(f"interaction_diversity out of range: {self.interaction_diversity}")
        if self.rsvp_rate > 100:
            raise ValueError(f"rsvp_rate out of range: {self.rsvp_rate}")
        if self.predicted_probability is not None:
            p = self.predicted_probability
            if not math.isfinite(p) or p < 0 or p > 1:
                raise ValueError(f"predicted_probability must be in [0, 1], got {p!r}")

        # Normalize numpy scalars to builtins so records serialize cleanly
        for name in COUNT_COLUMNS + ("engagement_frequency", "interaction_diversity"):
            object.__setattr__(self, name, int(getattr(self, name)))
        for name in ("rsvp_rate", "engagement_score"):
            object.__setattr__(self, name, float(getattr(self, name)))
        object.__setattr__(self, "user_id", str(self.user_id))
        object.__setattr__(self, "user_name", str(self.user_name))
        if self.cluster is not None:
            object.__setattr__(self, "cluster", int(self.cluster))
        if self.predicted_probability is not None:
            object.__setattr__(self, "predicted_probability", float(self.predicted_probability))

    @property
    def has_rsvp(self) -> bool:
        return self.rsvps > 0

    def feature_values(self) -> Tuple[float, ...]:
        return tuple(float(getattr(self, name)) for name in FEATURE_COLUMNS)

    def with_results(self, cluster: int, predicted_probability: float) -> "UserFeatureVector":
        return replace(self, cluster=int(cluster), predicted_probability=float(predicted_probability))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TrainingProgress:
    """One progress report emitted during a training run."""
    percent: float
    stage: str
