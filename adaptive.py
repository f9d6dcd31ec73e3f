import logging
import math
import random
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

LOGGER = logging.getLogger("notesnap")

# ============================================================
# CONFIG
# ============================================================
# Per-answer state update
ROLLING_ALPHA = 0.1
ABILITY_LEARNING_RATE = 0.3
TARGET_STEP = 0.3
STREAK_BONUS = 0.2
STREAK_THRESHOLD = 3
ACCURACY_HIGH = 0.85
ACCURACY_LOW = 0.65
MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 5.0
MIN_ABILITY = 1.0
MAX_ABILITY = 5.0

# Difficulty floor ratchet
FLOOR_MIN_ANSWERS = 10
FLOOR_ACCURACY = 0.85
FLOOR_GAP_BELOW_ABILITY = 1.0
FLOOR_CEILING = 3.0

# Question selection
SELECT_STEP = 0.4
SELECT_STREAK_BONUS = 0.25
SELECT_STREAK_THRESHOLD = 2
SELECT_ACCURACY_HIGH = 0.80
SELECT_ACCURACY_LOW = 0.65
TOP_CANDIDATES = 5

BLOOM_BONUS = {
    "remember": 0,
    "understand": 3,
    "apply": 6,
    "analyze": 10,
    "evaluate": 13,
    "create": 15,
}


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


@dataclass
class PerformanceState:
    user_id: str = ""
    course_id: Optional[str] = None
    session_difficulty: float = 2.5
    target_difficulty: float = 3.0
    rolling_accuracy: float = 0.5
    rolling_response_time_ms: int = 0
    estimated_ability: float = 2.5
    correct_streak: int = 0
    wrong_streak: int = 0
    last_cognitive_level: Optional[str] = None
    questions_answered: int = 0
    difficulty_floor: float = 1.0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PerformanceState":
        d = cls()
        return cls(
            user_id=str(row.get("user_id", "") or ""),
            course_id=row.get("course_id") or None,
            session_difficulty=float(row.get("session_difficulty_level") or d.session_difficulty),
            target_difficulty=float(row.get("target_difficulty") or d.target_difficulty),
            rolling_accuracy=float(row.get("rolling_accuracy") if row.get("rolling_accuracy") is not None else d.rolling_accuracy),
            rolling_response_time_ms=int(row.get("rolling_response_time_ms") or 0),
            estimated_ability=float(row.get("estimated_ability") or d.estimated_ability),
            correct_streak=int(row.get("correct_streak") or 0),
            wrong_streak=int(row.get("wrong_streak") or 0),
            last_cognitive_level=row.get("last_cognitive_level") or None,
            questions_answered=int(row.get("questions_answered") or 0),
            difficulty_floor=float(row.get("difficulty_floor") or d.difficulty_floor),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "course_id": self.course_id,
            "session_difficulty_level": round(self.session_difficulty, 3),
            "target_difficulty": round(self.target_difficulty, 3),
            "rolling_accuracy": round(self.rolling_accuracy, 4),
            "rolling_response_time_ms": int(self.rolling_response_time_ms),
            "estimated_ability": round(self.estimated_ability, 4),
            "correct_streak": int(self.correct_streak),
            "wrong_streak": int(self.wrong_streak),
            "last_cognitive_level": self.last_cognitive_level,
            "questions_answered": int(self.questions_answered),
            "difficulty_floor": round(self.difficulty_floor, 3),
        }


# ============================================================
# PER-ANSWER UPDATE
# ============================================================
def expected_probability(ability: float, difficulty: float) -> float:
    """Rasch (1PL IRT) probability of a correct answer."""
    return 1.0 / (1.0 + math.exp(-(ability - difficulty)))


def update_performance_state(
    state: PerformanceState,
    is_correct: bool,
    question_difficulty: float = 3.0,
    response_time_ms: Optional[int] = None,
    cognitive_level: Optional[str] = None,
) -> Tuple[PerformanceState, Dict[str, Any]]:
    """Fold one answer into the learner's state.

    Returns the new state and a feedback dict ({message, type,
    difficulty_changed}) for the answer screen.
    """
    score = 1.0 if is_correct else 0.0
    accuracy = state.rolling_accuracy * (1 - ROLLING_ALPHA) + score * ROLLING_ALPHA
    correct_streak = state.correct_streak + 1 if is_correct else 0
    wrong_streak = 0 if is_correct else state.wrong_streak + 1

    surprise = score - expected_probability(state.estimated_ability, float(question_difficulty))
    ability = _clamp(state.estimated_ability + ABILITY_LEARNING_RATE * surprise, MIN_ABILITY, MAX_ABILITY)

    target = state.target_difficulty
    if accuracy > ACCURACY_HIGH:
        target += TARGET_STEP
    elif accuracy < ACCURACY_LOW:
        target -= TARGET_STEP

    on_hot_streak = is_correct and correct_streak >= STREAK_THRESHOLD
    on_cold_streak = (not is_correct) and wrong_streak >= STREAK_THRESHOLD
    if on_hot_streak:
        target += STREAK_BONUS
    elif on_cold_streak:
        target -= STREAK_BONUS

    session = state.session_difficulty
    if on_hot_streak:
        session = min(MAX_DIFFICULTY, session + 0.1)
    elif on_cold_streak:
        session = max(MIN_DIFFICULTY, session - 0.1)

    rt = state.rolling_response_time_ms
    if response_time_ms is not None:
        rt = int(response_time_ms) if rt == 0 else int(round(rt * 0.9 + int(response_time_ms) * 0.1))

    answered = state.questions_answered + 1

    floor = state.difficulty_floor
    if answered >= FLOOR_MIN_ANSWERS and accuracy >= FLOOR_ACCURACY:
        floor = max(floor, min(FLOOR_CEILING, ability - FLOOR_GAP_BELOW_ABILITY))
    target = _clamp(max(target, floor), MIN_DIFFICULTY, MAX_DIFFICULTY)

    new_state = replace(
        state,
        rolling_accuracy=accuracy,
        estimated_ability=ability,
        correct_streak=correct_streak,
        wrong_streak=wrong_streak,
        target_difficulty=target,
        session_difficulty=session,
        rolling_response_time_ms=rt,
        questions_answered=answered,
        last_cognitive_level=cognitive_level or state.last_cognitive_level,
        difficulty_floor=floor,
    )
    if floor > state.difficulty_floor:
        LOGGER.info(
            "Difficulty floor raised",
            extra={"ctx": {"component": "adaptive", "user": state.user_id, "floor": round(floor, 2)}},
        )
    return new_state, answer_feedback(state, new_state, is_correct)


def answer_feedback(old: PerformanceState, new: PerformanceState, is_correct: bool) -> Dict[str, Any]:
    changed = abs(new.target_difficulty - old.target_difficulty) > 1e-9
    if new.correct_streak >= 5:
        msg, kind = "You're on fire! 5+ correct in a row!", "encouragement"
    elif new.correct_streak == 3:
        msg, kind = "Great streak! Keep it up!", "encouragement"
    elif new.target_difficulty > old.target_difficulty:
        msg, kind = "Increasing challenge - you're ready for harder questions!", "challenge"
    elif new.target_difficulty < old.target_difficulty:
        msg, kind = "Let's practice the fundamentals a bit more.", "neutral"
    elif is_correct:
        msg, kind = "Correct!", "encouragement"
    else:
        msg, kind = "Let's review this concept.", "neutral"
    return {"message": msg, "type": kind, "difficulty_changed": changed, "new_difficulty": new.target_difficulty}


def performance_summary(state: PerformanceState) -> Dict[str, Any]:
    if state.correct_streak > 0:
        streak, streak_type = state.correct_streak, "correct"
    elif state.wrong_streak > 0:
        streak, streak_type = state.wrong_streak, "wrong"
    else:
        streak, streak_type = 0, "none"
    return {
        "accuracy": int(round(state.rolling_accuracy * 100)),
        "ability": round(state.estimated_ability, 1),
        "difficulty": round(state.target_difficulty, 1),
        "streak": streak,
        "streak_type": streak_type,
        "questions_answered": state.questions_answered,
    }


# ============================================================
# TARGET DIFFICULTY FOR SELECTION
# ============================================================
def calculate_target_difficulty(state: PerformanceState) -> Dict[str, Any]:
    target = state.session_difficulty
    reason = "stable"
    if state.rolling_accuracy > SELECT_ACCURACY_HIGH:
        target += SELECT_STEP
        reason = "accuracy_high"
        if state.correct_streak >= SELECT_STREAK_THRESHOLD:
            target += SELECT_STREAK_BONUS
            reason = "streak_up"
    elif state.rolling_accuracy < SELECT_ACCURACY_LOW:
        target -= SELECT_STEP
        reason = "accuracy_low"
        if state.wrong_streak >= SELECT_STREAK_THRESHOLD:
            target -= SELECT_STREAK_BONUS
            reason = "streak_down"

    target = max(target, state.difficulty_floor or MIN_DIFFICULTY)
    target = _clamp(target, MIN_DIFFICULTY, MAX_DIFFICULTY)
    return {
        "target_difficulty": target,
        "adjustment_reason": reason,
        "current_accuracy": state.rolling_accuracy,
        "estimated_ability": state.estimated_ability,
    }


# ============================================================
# QUESTION SCORING + SELECTION
# ============================================================
@dataclass
class CandidateQuestion:
    id: str
    difficulty: float = 3.0
    empirical_difficulty: Optional[float] = None
    cognitive_level: Optional[str] = None
    concept_id: Optional[str] = None
    times_shown: int = 0
    last_seen_at: Optional[datetime] = None

    @property
    def effective_difficulty(self) -> float:
        # empirical difficulty is a 0-1 miss rate; put it on the 1-5 scale
        if self.empirical_difficulty is None:
            return float(self.difficulty)
        return 1.0 + 4.0 * _clamp(float(self.empirical_difficulty), 0.0, 1.0)


def score_question(
    q: CandidateQuestion,
    target: float,
    weak_concepts: Optional[Dict[str, float]] = None,
    last_cognitive_level: Optional[str] = None,
    now: Optional[datetime] = None,
) -> float:
    weak_concepts = weak_concepts or {}
    score = (1 - abs(q.effective_difficulty - target) / 4) * 50

    if q.concept_id and q.concept_id in weak_concepts:
        score += 50 + 20 * (1 - float(weak_concepts[q.concept_id]))

    if q.cognitive_level and q.cognitive_level != last_cognitive_level:
        score += 10

    if q.last_seen_at is None:
        score += 10
    else:
        now = now or datetime.now(timezone.utc)
        seen = q.last_seen_at if q.last_seen_at.tzinfo else q.last_seen_at.replace(tzinfo=timezone.utc)
        hours = max(0.0, (now - seen).total_seconds() / 3600)
        score += min(10.0, hours / 24 * 10)

    score += 5 if q.times_shown <= 0 else max(0, 5 - q.times_shown)

    if q.cognitive_level:
        score += BLOOM_BONUS.get(q.cognitive_level, 0)
    return score


def select_questions(
    questions: List[CandidateQuestion],
    target: float,
    weak_concepts: Optional[Dict[str, float]] = None,
    last_cognitive_level: Optional[str] = None,
    count: int = 1,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> List[Tuple[CandidateQuestion, float]]:
    """Pick the next question(s).

    A single pick is a score-weighted draw among the top five so the same
    question doesn't come up every time; larger batches take the top N.
    """
    scored = [(q, score_question(q, target, weak_concepts, last_cognitive_level, now)) for q in questions]
    scored.sort(key=lambda t: t[1], reverse=True)
    if not scored:
        return []

    if count == 1:
        rng = rng or random.Random()
        top = scored[:TOP_CANDIDATES]
        total = sum(max(0.0, s) for _, s in top)
        if total > 0:
            pick = rng.random() * total
            for cand in top:
                pick -= max(0.0, cand[1])
                if pick <= 0:
                    return [cand]
        return [top[0]]

    return scored[:max(0, int(count))]


def update_question_difficulty(stats: Optional[Dict[str, Any]], is_correct: bool,
                               response_time_ms: Optional[int] = None) -> Dict[str, Any]:
    """Running stats for one question (question_difficulty row)."""
    if not stats:
        return {
            "times_shown": 1,
            "times_correct": 1 if is_correct else 0,
            "empirical_difficulty": 0.0 if is_correct else 1.0,
            "avg_response_time_ms": int(response_time_ms) if response_time_ms else None,
        }
    old_shown = int(stats.get("times_shown") or 0)
    shown = old_shown + 1
    correct = int(stats.get("times_correct") or 0) + (1 if is_correct else 0)
    avg = stats.get("avg_response_time_ms")
    if response_time_ms is not None:
        if not avg:
            avg = int(response_time_ms)
        else:
            avg = int(round((float(avg) * old_shown + int(response_time_ms)) / shown))
    return {
        "times_shown": shown,
        "times_correct": correct,
        "empirical_difficulty": round(1 - correct / shown, 4),
        "avg_response_time_ms": avg,
    }
