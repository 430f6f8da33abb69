"""
Confidence scoring for provider/plan acceptance.

``compute_confidence`` is a pure function of the acceptance's originating
source tier, its live (non-expired) verification signal and the reference
time. The same function backs read-time scoring and the batch sweep.

Score with no live verifications: the tier default of the tier that created
the acceptance.

Score with live verifications, clamped to [0, 100] and rounded:

    source points        0-25  by originating tier
    recency points       0-30  step decay on days since last verification,
                               scaled by a specialty freshness threshold
    verification points  0-25  by live verification count
    agreement points     0-20  by live upvote ratio

Between new verification events the score never rises: it is held at the
lowest value reached since the most recent event, so an event expiring can
not lift it back up to a higher tier default.
"""

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional

from ..merge.tiers import SourceTier

logger = logging.getLogger(__name__)

TIER_DEFAULT_CONFIDENCE = {
    SourceTier.REGISTRY: 30,
    SourceTier.BULK_SCRAPE: 40,
    SourceTier.ENRICHMENT_IMPORT: 50,
    SourceTier.CROWD_VERIFIED: 50,
}

SOURCE_POINTS = {
    SourceTier.REGISTRY: 10,
    SourceTier.BULK_SCRAPE: 10,
    SourceTier.ENRICHMENT_IMPORT: 15,
    SourceTier.CROWD_VERIFIED: 25,
}

MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE = 3
ABSOLUTE_STALE_DAYS = 180

# Stored timestamps have one-second resolution
TIMESTAMP_RESOLUTION = timedelta(seconds=1)


class SpecialtyCategory(str, Enum):
    MENTAL_HEALTH = "mental_health"
    PRIMARY_CARE = "primary_care"
    SPECIALIST = "specialist"
    HOSPITAL_BASED = "hospital_based"
    OTHER = "other"


# Days after which an acceptance fact in this category is considered stale
FRESHNESS_THRESHOLD_DAYS = {
    SpecialtyCategory.MENTAL_HEALTH: 30,
    SpecialtyCategory.PRIMARY_CARE: 60,
    SpecialtyCategory.SPECIALIST: 60,
    SpecialtyCategory.HOSPITAL_BASED: 90,
    SpecialtyCategory.OTHER: 60,
}

SPECIALTY_KEYWORDS = [
    (SpecialtyCategory.MENTAL_HEALTH,
     ["psychiatr", "psycholog", "mental health", "behavioral health", "counselor", "therapist"]),
    (SpecialtyCategory.PRIMARY_CARE,
     ["family medicine", "family practice", "internal medicine", "general practice", "primary care"]),
    (SpecialtyCategory.HOSPITAL_BASED,
     ["hospital", "radiology", "anesthesiology", "pathology", "emergency medicine"]),
]


class ConfidenceLevel(str, Enum):
    VERY_HIGH = "VERY_HIGH"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    VERY_LOW = "VERY_LOW"


@dataclass(frozen=True)
class ConfidenceInputs:
    """Everything the score depends on, aggregated over live events only."""

    source_tier: SourceTier = SourceTier.REGISTRY
    live_verifications: int = 0
    upvotes: int = 0
    downvotes: int = 0
    last_verified: Optional[datetime] = None
    specialty: Optional[str] = None


@dataclass(frozen=True)
class VerificationEvent:
    created_at: datetime
    expires_at: Optional[datetime] = None
    upvotes: int = 0
    downvotes: int = 0

    def is_live(self, at: datetime) -> bool:
        return self.created_at <= at and (self.expires_at is None or self.expires_at > at)


@dataclass
class ConfidenceResult:
    score: int
    level: ConfidenceLevel
    source_points: float
    recency_points: float
    verification_points: float
    agreement_points: float
    used_default: bool
    freshness_threshold_days: int
    days_since_verification: Optional[int]
    is_stale: bool
    days_until_stale: Optional[int]
    recommend_reverification: bool

    def to_dict(self) -> Dict:
        return {
            "score": self.score,
            "level": self.level.value,
            "factors": {
                "source": self.source_points,
                "recency": self.recency_points,
                "verifications": self.verification_points,
                "agreement": self.agreement_points,
            },
            "used_default": self.used_default,
            "is_stale": self.is_stale,
            "days_until_stale": self.days_until_stale,
            "recommend_reverification": self.recommend_reverification,
        }


def classify_specialty(specialty: Optional[str]) -> SpecialtyCategory:
    """Map specialty or taxonomy text to a freshness category by keyword."""
    if not specialty:
        return SpecialtyCategory.OTHER
    text = specialty.lower()
    for category, keywords in SPECIALTY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return SpecialtyCategory.SPECIALIST


def recency_points(days_since: int, threshold_days: int) -> float:
    """
    Step decay from 30 to 0 points.

    Non-increasing in ``days_since`` for any threshold.
    """
    fresh = min(30, threshold_days * 0.5)
    if days_since <= fresh:
        return 30
    if days_since <= threshold_days:
        return 20
    if days_since <= threshold_days * 1.5:
        return 10
    if days_since <= ABSOLUTE_STALE_DAYS:
        return 5
    return 0


def verification_points(count: int) -> float:
    if count <= 0:
        return 0
    if count == 1:
        return 10
    if count == 2:
        return 15
    return 25


def agreement_points(upvotes: int, downvotes: int) -> float:
    total = upvotes + downvotes
    if total <= 0:
        return 0
    ratio = upvotes / total
    if ratio >= 1.0:
        return 20
    if ratio >= 0.8:
        return 15
    if ratio >= 0.6:
        return 10
    if ratio >= 0.4:
        return 5
    return 0


def confidence_level(score: int, live_verifications: int) -> ConfidenceLevel:
    """Band a score; too few verifications cap the level at MEDIUM."""
    if score >= 91:
        level = ConfidenceLevel.VERY_HIGH
    elif score >= 76:
        level = ConfidenceLevel.HIGH
    elif score >= 51:
        level = ConfidenceLevel.MEDIUM
    elif score >= 26:
        level = ConfidenceLevel.LOW
    else:
        level = ConfidenceLevel.VERY_LOW

    if (0 < live_verifications < MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE
            and level in (ConfidenceLevel.VERY_HIGH, ConfidenceLevel.HIGH)):
        return ConfidenceLevel.MEDIUM
    return level


def _clamp_round(value: float) -> int:
    # Half-up rounding so identical inputs never straddle banker's rounding
    return int(min(100, max(0, math.floor(value + 0.5))))


def compute_confidence(inputs: ConfidenceInputs, now: datetime) -> ConfidenceResult:
    """
    Compute the confidence for one acceptance.

    Args:
        inputs: Tier and live verification aggregate
        now: Reference time

    Returns:
        ConfidenceResult with an integer score in [0, 100]
    """
    threshold = FRESHNESS_THRESHOLD_DAYS[classify_specialty(inputs.specialty)]

    days_since = None
    if inputs.last_verified is not None:
        days_since = max(0, (now - inputs.last_verified).days)

    if inputs.live_verifications <= 0:
        score = _clamp_round(TIER_DEFAULT_CONFIDENCE[inputs.source_tier])
        return ConfidenceResult(
            score=score,
            level=confidence_level(score, 0),
            source_points=0, recency_points=0, verification_points=0, agreement_points=0,
            used_default=True,
            freshness_threshold_days=threshold,
            days_since_verification=days_since,
            is_stale=True,
            days_until_stale=None,
            recommend_reverification=True,
        )

    source = SOURCE_POINTS[inputs.source_tier]
    recency = recency_points(days_since, threshold) if days_since is not None else 0
    verifications = verification_points(inputs.live_verifications)
    agreement = agreement_points(max(0, inputs.upvotes), max(0, inputs.downvotes))
    score = _clamp_round(source + recency + verifications + agreement)

    is_stale = days_since is None or days_since > threshold
    days_until_stale = None if days_since is None else max(0, threshold - days_since)
    recommend = is_stale or days_since > threshold * 0.8

    return ConfidenceResult(
        score=score,
        level=confidence_level(score, inputs.live_verifications),
        source_points=source,
        recency_points=recency,
        verification_points=verifications,
        agreement_points=agreement,
        used_default=False,
        freshness_threshold_days=threshold,
        days_since_verification=days_since,
        is_stale=is_stale,
        days_until_stale=days_until_stale,
        recommend_reverification=recommend,
    )


def inputs_at(events: Iterable[VerificationEvent], source_tier: SourceTier, at: datetime,
              specialty: Optional[str] = None) -> ConfidenceInputs:
    """Aggregate the events live at ``at`` into scoring inputs."""
    live = [event for event in events if event.is_live(at)]
    return ConfidenceInputs(
        source_tier=source_tier,
        live_verifications=len(live),
        upvotes=sum(event.upvotes for event in live),
        downvotes=sum(event.downvotes for event in live),
        last_verified=max((event.created_at for event in live), default=None),
        specialty=specialty,
    )


def confidence_from_events(events: Iterable[VerificationEvent], source_tier: SourceTier,
                           now: datetime, specialty: Optional[str] = None) -> ConfidenceResult:
    """
    Compute the confidence at ``now`` from the full verification history.

    Only the most recent event can raise the score. Until the next one
    arrives the score is the lowest of its value now and its value just
    before each expiry since that event, so it is non-increasing in time.

    Args:
        events: Every verification event for the acceptance, expired ones included
        source_tier: Tier that created the acceptance
        now: Reference time
        specialty: Provider specialty or taxonomy text

    Returns:
        ConfidenceResult with an integer score in [0, 100]
    """
    seen: List[VerificationEvent] = [event for event in events if event.created_at <= now]
    inputs = inputs_at(seen, source_tier, now, specialty)
    result = compute_confidence(inputs, now)
    if not seen:
        return result

    latest = max(event.created_at for event in seen)
    score = result.score
    for event in seen:
        if event.expires_at is None or not latest < event.expires_at <= now:
            continue
        before = event.expires_at - TIMESTAMP_RESOLUTION
        score = min(score, compute_confidence(inputs_at(seen, source_tier, before, specialty), before).score)

    if score == result.score:
        return result
    return replace(result, score=score, level=confidence_level(score, inputs.live_verifications))
