"""
Derived reporting for a trained engagement session.

Everything here is a deterministic function of feature vectors, published
predictions and model coefficients; no randomness is involved.
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Sequence
import numpy as np
from engagement_ml.config import Config
from engagement_ml.models import COUNT_COLUMNS, FEATURE_COLUMNS, UserFeatureVector

logger = logging.getLogger(__name__)

QUALITY_TIERS = ("good", "fair", "poor")

# Quality tier criteria
POOR_ACTIVE_SHARE = 0.3
GOOD_MIN_MEMBERS = 30
GOOD_ACTIVE_SHARE = 0.6
GOOD_MIN_EVENTS = 5
GOOD_MEAN_DIVERSITY = 2.0

TOP_FACTORS = 3

FEATURE_LABELS = {
    "views": "post views",
    "likes": "likes",
    "polls": "poll answers",
    "rsvps": "RSVPs",
    "registers": "event registrations",
    "feedbacks": "feedback submissions",
    "evaluations": "event evaluations",
    "engagement_frequency": "total interactions",
    "interaction_diversity": "variety of interaction types",
    "rsvp_rate": "RSVP rate",
}

SEGMENT_DESCRIPTIONS = {
    "low": "Rarely interacts with organization content",
    "medium": "Interacts occasionally",
    "high": "Consistently active across organization content",
}

SEGMENT_ACTIONS = {
    "low": "Re-engage with a welcome-back message and low-effort content such as polls",
    "medium": "Nudge toward events with reminders and highlights of upcoming activities",
    "high": "Recognize these members and invite them to help organize or promote events",
}


# ─────────────────────────────────────────────────────────────
# PROBABILITY THRESHOLDS
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProbabilityThresholds:
    """Cut points splitting predicted probabilities into high/medium/low."""
    high: float
    medium: float
    strategy: str

    def classify(self, probability: float) -> str:
        if probability >= self.high:
            return "high"
        if probability >= self.medium:
            return "medium"
        return "low"

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def fixed_thresholds() -> ProbabilityThresholds:
    return ProbabilityThresholds(
        high=Config.FIXED_HIGH_THRESHOLD,
        medium=Config.FIXED_MEDIUM_THRESHOLD,
        strategy="fixed",
    )


def dynamic_thresholds(
    probabilities: Sequence[float],
    high_percentile: float = Config.HIGH_PERCENTILE,
    medium_percentile: float = Config.MEDIUM_PERCENTILE
) -> ProbabilityThresholds:
    """
    Derive cut points from percentiles of the predicted probabilities.

    Falls back to the fixed cut points when there are no predictions or
    every prediction is (numerically) the same, since percentiles would
    then put every member in the same tier.
    """
    p = np.asarray(probabilities, dtype=float)
    if p.size == 0 or np.ptp(p) < 1e-6:
        logger.warning("Prediction distribution is degenerate; using fixed thresholds")
        return fixed_thresholds()

    high = float(np.percentile(p, high_percentile))
    medium = float(min(np.percentile(p, medium_percentile), high))
    return ProbabilityThresholds(high=high, medium=medium, strategy="dynamic")


def resolve_thresholds(
    probabilities: Sequence[float],
    strategy: str = Config.THRESHOLD_STRATEGY
) -> ProbabilityThresholds:
    if strategy == "fixed":
        return fixed_thresholds()
    if strategy == "dynamic":
        return dynamic_thresholds(probabilities)
    raise ValueError(f"Unknown threshold strategy: {strategy}")


# ─────────────────────────────────────────────────────────────
# DATA QUALITY
# ─────────────────────────────────────────────────────────────

@dataclass
class DataQualityReport:
    """Quality tier of the loaded data with improvement suggestions."""
    tier: str
    member_count: int
    active_member_count: int
    active_share: float
    total_events: int
    total_interactions: int
    mean_interaction_diversity: float
    rsvp_positive_share: float
    suggestions: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    org_id: Optional[str] = None

    def __post_init__(self):
        if self.tier not in QUALITY_TIERS:
            raise ValueError(f"Unknown quality tier: {self.tier}")

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def build_data_quality_report(
    vectors: Sequence[UserFeatureVector],
    total_events: int,
    min_members: int = Config.MIN_MEMBERS,
    org_id: Optional[str] = None
) -> DataQualityReport:
    """
    Grade the loaded data as good, fair or poor.

    poor: below the member floor, no events in the window, or fewer than
    30% of members active. good: at least 30 members, 60% active, 5 events
    and a mean of two interaction kinds per member. fair otherwise.
    """
    n = len(vectors)
    active = sum(1 for v in vectors if v.engagement_frequency > 0)
    active_share = active / n if n else 0.0
    interactions = sum(v.engagement_frequency for v in vectors)
    mean_diversity = float(np.mean([v.interaction_diversity for v in vectors])) if n else 0.0
    positive_share = sum(1 for v in vectors if v.has_rsvp) / n if n else 0.0

    suggestions = []
    warnings = []

    if n < min_members:
        suggestions.append(
            f"Only {n} active members; at least {min_members} are needed. Widen the membership scope or wait for more members."
        )
    if total_events == 0:
        suggestions.append("No events were posted in this window. Choose a longer time window.")
    if n and active_share < GOOD_ACTIVE_SHARE:
        suggestions.append(
            f"Only {active_share:.0%} of members interacted in this window. Try a longer window or encourage participation."
        )
    if n and mean_diversity < GOOD_MEAN_DIVERSITY:
        suggestions.append(
            "Members use few interaction types; polls, feedback forms and evaluations add signal."
        )
    if 0 < total_events < GOOD_MIN_EVENTS:
        suggestions.append(f"Only {total_events} events in this window; RSVP rates will be coarse.")
    if min_members <= n < GOOD_MIN_MEMBERS:
        suggestions.append(f"Segments are more reliable with {GOOD_MIN_MEMBERS} or more members.")

    if n and active == 0:
        warnings.append("No member has any recorded activity; models cannot be trained.")
    if n and positive_share in (0.0, 1.0):
        warnings.append(
            "Every member has the same RSVP outcome; the classifier has nothing to discriminate."
        )

    if n < min_members or total_events == 0 or active_share < POOR_ACTIVE_SHARE:
        tier = "poor"
    elif (
        n >= GOOD_MIN_MEMBERS
        and active_share >= GOOD_ACTIVE_SHARE
        and total_events >= GOOD_MIN_EVENTS
        and mean_diversity >= GOOD_MEAN_DIVERSITY
    ):
        tier = "good"
    else:
        tier = "fair"

    return DataQualityReport(
        tier=tier,
        member_count=n,
        active_member_count=active,
        active_share=active_share,
        total_events=total_events,
        total_interactions=int(interactions),
        mean_interaction_diversity=mean_diversity,
        rsvp_positive_share=positive_share,
        suggestions=suggestions,
        warnings=warnings,
        org_id=org_id,
    )


# ─────────────────────────────────────────────────────────────
# CLUSTER INSIGHTS
# ─────────────────────────────────────────────────────────────

@dataclass
class ClusterInsight:
    """Descriptive summary of one engagement segment."""
    segment: str
    cluster_id: Optional[int]
    size: int
    share: float
    mean_engagement_frequency: float
    mean_rsvp_rate: float
    mean_interaction_diversity: float
    mean_engagement_score: float
    mean_predicted_probability: float
    dominant_interaction: str
    description: str
    recommended_action: str

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def _mean(values: List[float]) -> float:
    return float(np.mean(values)) if values else 0.0


def _dominant_interaction(members: Sequence[UserFeatureVector]) -> str:
    totals = {col: sum(getattr(v, col) for v in members) for col in COUNT_COLUMNS}
    best = max(COUNT_COLUMNS, key=lambda col: totals[col])
    return FEATURE_LABELS[best] if totals[best] > 0 else "none"


def build_cluster_insights(
    buckets: Dict[str, List[UserFeatureVector]],
    segment_clusters: Dict[str, Optional[int]]
) -> List[ClusterInsight]:
    """
    Summarize each segment bucket, ordered from lowest to highest engagement.

    Args:
        buckets: Segment name -> members, in engagement order
        segment_clusters: Segment name -> raw cluster id
    """
    total = sum(len(members) for members in buckets.values())
    insights = []

    for segment, members in buckets.items():
        size = len(members)
        mean_freq = _mean([v.engagement_frequency for v in members])
        mean_rsvp = _mean([v.rsvp_rate for v in members])
        dominant = _dominant_interaction(members)

        base = SEGMENT_DESCRIPTIONS.get(segment, f"Engagement segment {segment}")
        if size:
            description = (
                f"{base}: {size} members averaging {mean_freq:.1f} interactions and a "
                f"{mean_rsvp:.1f}% RSVP rate; most common activity is {dominant}."
            )
        else:
            description = f"{base}: no members fall in this segment."

        insights.append(
            ClusterInsight(
                segment=segment,
                cluster_id=segment_clusters.get(segment),
                size=size,
                share=size / total if total else 0.0,
                mean_engagement_frequency=mean_freq,
                mean_rsvp_rate=mean_rsvp,
                mean_interaction_diversity=_mean([v.interaction_diversity for v in members]),
                mean_engagement_score=_mean([v.engagement_score for v in members]),
                mean_predicted_probability=_mean(
                    [v.predicted_probability for v in members if v.predicted_probability is not None]
                ),
                dominant_interaction=dominant,
                description=description,
                recommended_action=SEGMENT_ACTIONS.get(segment, "Review this segment manually"),
            )
        )

    return insights


# ─────────────────────────────────────────────────────────────
# PREDICTION INSIGHTS
# ─────────────────────────────────────────────────────────────

@dataclass
class PredictiveFactor:
    feature: str
    label: str
    weight: float
    direction: str  # "increases" | "decreases"

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class PredictionInsights:
    """Summary of the RSVP predictions and what drives them."""
    thresholds: ProbabilityThresholds
    tier_counts: Dict[str, int]
    mean_probability: float
    key_factors: List[PredictiveFactor]
    training_metrics: Dict[str, object]
    caveats: List[str] = field(default_factory=list)
    action_items: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def rank_predictive_factors(weights: Sequence[float], top_n: int = TOP_FACTORS) -> List[PredictiveFactor]:
    """Features ordered by absolute coefficient, largest first."""
    order = sorted(range(len(FEATURE_COLUMNS)), key=lambda i: (-abs(weights[i]), i))
    factors = []
    for i in order[:top_n]:
        name = FEATURE_COLUMNS[i]
        factors.append(
            PredictiveFactor(
                feature=name,
                label=FEATURE_LABELS[name],
                weight=float(weights[i]),
                direction="increases" if weights[i] >= 0 else "decreases",
            )
        )
    return factors


def build_prediction_insights(
    predictions: Sequence[UserFeatureVector],
    thresholds: ProbabilityThresholds,
    weights: Sequence[float],
    training_metrics: Dict[str, object]
) -> PredictionInsights:
    """
    Summarize the prediction list (already sorted by probability).
    """
    probabilities = [v.predicted_probability for v in predictions]
    tiers = {"high": 0, "medium": 0, "low": 0}
    for p in probabilities:
        tiers[thresholds.classify(p)] += 1

    factors = rank_predictive_factors(weights)

    caveats = [
        "Accuracy is measured on the same members the model was trained on; it is not a forecast of future performance.",
        "The training target is whether a member has RSVPed at least once in the window, so past RSVPs dominate the prediction.",
    ]
    if training_metrics.get("roc_auc") is None:
        caveats.append("All members share the same RSVP outcome; probabilities carry little information.")

    action_items = []
    if tiers["high"]:
        high_members = [v for v in predictions if thresholds.classify(v.predicted_probability) == "high"]
        names = ", ".join(v.user_name for v in high_members[:3])
        action_items.append(
            f"Send personal invitations for the next event to the {tiers['high']} high-likelihood members (top: {names})."
        )
    if tiers["medium"]:
        action_items.append(f"Send reminders to the {tiers['medium']} medium-likelihood members before RSVP deadlines.")
    if tiers["low"]:
        action_items.append(f"Run a re-engagement campaign for the {tiers['low']} low-likelihood members.")
    if factors:
        top = factors[0]
        action_items.append(f"Strongest signal: {top.label} {top.direction} RSVP likelihood; design outreach around it.")

    return PredictionInsights(
        thresholds=thresholds,
        tier_counts=tiers,
        mean_probability=_mean(probabilities),
        key_factors=factors,
        training_metrics=dict(training_metrics),
        caveats=caveats,
        action_items=action_items,
    )
