import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import numpy as np

# ============================================================
# TOPIC MASTERY (accuracy / recency / consistency / speed)
# ============================================================
WEIGHTS = {
    "accuracy": 0.4,
    "recency": 0.2,
    "consistency": 0.2,
    "speed": 0.2,
}

MASTERY_LEVELS = ("beginner", "developing", "intermediate", "advanced", "mastered")

LEVEL_LABELS = {
    "mastered": "Mastered",
    "advanced": "Advanced",
    "intermediate": "Intermediate",
    "developing": "Developing",
    "beginner": "Beginner",
}

LEVEL_COLORS = {
    "mastered": "#10b981",
    "advanced": "#22c55e",
    "intermediate": "#eab308",
    "developing": "#f97316",
    "beginner": "#ef4444",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


@dataclass
class UserPerformance:
    attempts: int = 0
    correct: int = 0
    last_practiced: Optional[datetime] = None
    recent_scores: List[float] = field(default_factory=list)
    response_times: List[float] = field(default_factory=list)


def accuracy_factor(perf: UserPerformance) -> float:
    if perf.attempts <= 0:
        return 0.0
    return perf.correct / perf.attempts


def recency_factor(perf: UserPerformance, now: Optional[datetime] = None) -> float:
    if perf.last_practiced is None:
        return 0.0
    now = _aware(now or _utcnow())
    days = int(math.floor((now - _aware(perf.last_practiced)).total_seconds() / 86400))
    if days <= 0:
        return 1.0
    if days == 1:
        return 0.9
    if days <= 3:
        return 0.7
    if days <= 7:
        return 0.5
    if days <= 14:
        return 0.3
    if days <= 30:
        return 0.1
    return 0.05


def consistency_factor(perf: UserPerformance) -> float:
    scores = np.asarray(perf.recent_scores, dtype=float)
    if scores.size < 2:
        return 0.5
    mean = float(scores.mean())
    if mean == 0:
        return 0.0
    # population standard deviation (ddof=0)
    cv = float(scores.std()) / mean
    return max(0.0, 1.0 - cv)


def speed_factor(perf: UserPerformance) -> float:
    times = list(perf.response_times)
    if len(times) < 4:
        return 0.5
    mid = len(times) // 2
    earlier = float(np.mean(times[:mid]))
    recent = float(np.mean(times[mid:]))
    if earlier == 0:
        return 0.5
    if recent == 0:
        return 1.0
    return max(0.0, min(1.0, (earlier / recent) / 2))


def mastery_factors(perf: UserPerformance, now: Optional[datetime] = None) -> Dict[str, float]:
    return {
        "accuracy": accuracy_factor(perf),
        "recency": recency_factor(perf, now),
        "consistency": consistency_factor(perf),
        "speed": speed_factor(perf),
    }


def calculate_mastery(perf: UserPerformance, now: Optional[datetime] = None) -> float:
    factors = mastery_factors(perf, now)
    score = sum(factors[k] * WEIGHTS[k] for k in WEIGHTS)
    return max(0.0, min(1.0, score))


def mastery_level(score: float) -> str:
    if score >= 0.8:
        return "mastered"
    if score >= 0.6:
        return "advanced"
    if score >= 0.4:
        return "intermediate"
    if score >= 0.2:
        return "developing"
    return "beginner"


def mastery_result(perf: UserPerformance, now: Optional[datetime] = None) -> Dict[str, Any]:
    score = calculate_mastery(perf, now)
    level = mastery_level(score)
    return {
        "score": score,
        "level": level,
        "label": LEVEL_LABELS[level],
        "color": LEVEL_COLORS[level],
        "factors": mastery_factors(perf, now),
    }


def should_show_extra_help(perf: UserPerformance, now: Optional[datetime] = None) -> bool:
    if perf.attempts <= 2:
        return False
    return calculate_mastery(perf, now) < 0.3


def suggest_difficulty_adjustment(perf: UserPerformance, now: Optional[datetime] = None) -> int:
    """+1 to step up, -1 to step down, 0 to stay put."""
    if perf.attempts < 3:
        return 0
    score = calculate_mastery(perf, now)
    acc = accuracy_factor(perf)
    if score >= 0.8 and acc >= 0.9:
        return 1
    if score < 0.3 or acc < 0.4:
        return -1
    return 0


def calculate_review_interval(mastery: float, previous_days: int = 1) -> int:
    if mastery >= 0.9:
        mult = 2.5
    elif mastery >= 0.7:
        mult = 2.0
    elif mastery >= 0.5:
        mult = 1.5
    elif mastery >= 0.3:
        mult = 1.0
    else:
        mult = 0.5
    days = max(1, int(math.floor(previous_days * mult + 0.5)))
    return min(30, days)


def encouragement_message(perf: UserPerformance, now: Optional[datetime] = None) -> str:
    if perf.attempts <= 2:
        return "Great start! Keep practicing to build mastery."
    level = mastery_level(calculate_mastery(perf, now))
    if level == "mastered":
        return "Excellent! You've mastered this topic!"
    if level == "advanced":
        return "Great progress! You're almost there!"
    if level == "intermediate":
        return "Good job! Keep practicing to improve."
    if level == "developing":
        if accuracy_factor(perf) < 0.5:
            return "Take your time. Review the explanations carefully."
        return "You're making progress! Practice makes perfect."
    if perf.attempts > 5:
        return "Don't give up! Try reviewing the lesson material."
    return "Everyone starts somewhere. Keep at it!"


# ============================================================
# CONCEPT MASTERY (user_concept_mastery rows)
# ============================================================
CORRECT_GAIN = 0.2
WRONG_RETAIN = 0.8
CONFIDENCE_FULL_AT = 10
DECAY_PEAK_MIN = 0.6
DECAY_RATIO = 0.7


@dataclass
class ConceptMastery:
    concept_id: str
    mastery_level: float = 0.0
    confidence_score: float = 0.0
    peak_mastery: float = 0.0
    total_exposures: int = 0
    successful_recalls: int = 0
    failed_recalls: int = 0
    stability: float = 1.0
    next_review_date: Optional[datetime] = None
    last_reviewed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ConceptMastery":
        return cls(
            concept_id=str(row.get("concept_id", "") or ""),
            mastery_level=float(row.get("mastery_level") or 0.0),
            confidence_score=float(row.get("confidence_score") or 0.0),
            peak_mastery=float(row.get("peak_mastery") or 0.0),
            total_exposures=int(row.get("total_exposures") or 0),
            successful_recalls=int(row.get("successful_recalls") or 0),
            failed_recalls=int(row.get("failed_recalls") or 0),
            stability=float(row.get("stability") or 1.0),
            next_review_date=row.get("next_review_date"),
            last_reviewed_at=row.get("last_reviewed_at"),
        )


def update_concept_mastery(record: ConceptMastery, is_correct: bool,
                           now: Optional[datetime] = None) -> ConceptMastery:
    """Fold one answer into a concept's mastery record.

    Correct answers close 20% of the remaining distance to 1; wrong answers
    keep 80% of the current level. Peak mastery only ever goes up, which is
    what decay detection compares against.
    """
    now = _aware(now or _utcnow())
    level = float(record.mastery_level)
    if is_correct:
        level = level + CORRECT_GAIN * (1.0 - level)
        stability = record.stability * 2.0
    else:
        level = level * WRONG_RETAIN
        stability = max(1.0, record.stability * 0.5)
    level = round(max(0.0, min(1.0, level)), 3)

    exposures = record.total_exposures + 1
    return replace(
        record,
        mastery_level=level,
        confidence_score=round(min(1.0, exposures / CONFIDENCE_FULL_AT), 3),
        peak_mastery=max(record.peak_mastery, level),
        total_exposures=exposures,
        successful_recalls=record.successful_recalls + (1 if is_correct else 0),
        failed_recalls=record.failed_recalls + (0 if is_correct else 1),
        stability=round(stability, 2),
        next_review_date=now + timedelta(days=max(1, int(round(stability)))),
        last_reviewed_at=now,
    )


def is_decayed(record: ConceptMastery) -> bool:
    return record.peak_mastery > DECAY_PEAK_MIN and record.mastery_level < record.peak_mastery * DECAY_RATIO


# ============================================================
# LESSON MASTERY
# ============================================================
def lesson_recency_weight(last_answered_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    if last_answered_at is None:
        return 0.5
    now = _aware(now or _utcnow())
    days = (now - _aware(last_answered_at)).total_seconds() / 86400
    if days < 1:
        return 1.0
    if days < 3:
        return 0.9
    if days < 7:
        return 0.8
    if days < 14:
        return 0.7
    return 0.6


def calculate_lesson_mastery(correct: int, total: int, last_answered_at: Optional[datetime],
                             now: Optional[datetime] = None) -> float:
    if total <= 0:
        return 0.0
    acc = max(0, min(correct, total)) / total
    return round(min(1.0, acc * lesson_recency_weight(last_answered_at, now)), 3)
