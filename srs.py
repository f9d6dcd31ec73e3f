import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from study_plan import lesson_key

LOGGER = logging.getLogger("notesnap")

# ============================================================
# FSRS PARAMETERS
# ============================================================
REQUEST_RETENTION = 0.9
MAXIMUM_INTERVAL = 36500
EASY_BONUS = 1.3
HARD_INTERVAL = 1.2

AGAIN, HARD, GOOD, EASY = 1, 2, 3, 4
RATINGS = (AGAIN, HARD, GOOD, EASY)
RATING_LABELS = {AGAIN: "Again", HARD: "Hard", GOOD: "Good", EASY: "Easy"}

CARD_STATES = ("new", "learning", "review", "relearning")

INITIAL_DIFFICULTY = {AGAIN: 0.7, HARD: 0.6, GOOD: 0.3, EASY: 0.1}
INITIAL_STABILITY = {AGAIN: 0.5, HARD: 1.0, GOOD: 3.0, EASY: 7.0}

# Minutes until a learning card comes back
LEARNING_STEPS = {AGAIN: 1, HARD: 6, GOOD: 10}

_DIFFICULTY_DELTA = {AGAIN: 0.15, HARD: 0.08, GOOD: -0.05, EASY: -0.1}
_STABILITY_GROWTH = {HARD: 1.2, GOOD: 2.5, EASY: 3.5}

# Queue defaults (per learner, per day)
DEFAULT_MAX_NEW_CARDS = 20
DEFAULT_MAX_REVIEWS = 100
MAX_CONSECUTIVE_SAME_LESSON = 3

# Card generation limits
MIN_EXPLANATION_WORDS = 20
MAX_BACK_WORDS = 200


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        value = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _check_rating(rating: int) -> int:
    try:
        r = int(rating)
    except (TypeError, ValueError):
        raise ValueError(f"Rating must be 1-4, got {rating!r}")
    if r not in RATINGS:
        raise ValueError(f"Rating must be 1-4, got {rating!r}")
    return r


@dataclass
class ReviewCard:
    """One flashcard plus its scheduling memory."""

    id: str = ""
    user_id: str = ""
    course_id: str = ""
    lesson_index: int = 0
    step_index: int = 0
    card_type: str = "flashcard"
    front: str = ""
    back: str = ""
    concept_ids: List[str] = field(default_factory=list)
    state: str = "new"
    stability: float = 0.0
    difficulty: float = 0.0
    reps: int = 0
    lapses: int = 0
    scheduled_days: int = 0
    elapsed_days: int = 0
    due_date: Optional[datetime] = None
    last_review: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ReviewCard":
        concept_ids = row.get("concept_ids") or []
        if not isinstance(concept_ids, list):
            concept_ids = []
        return cls(
            id=str(row.get("id", "") or ""),
            user_id=str(row.get("user_id", "") or ""),
            course_id=str(row.get("course_id", "") or ""),
            lesson_index=int(row.get("lesson_index") or 0),
            step_index=int(row.get("step_index") or 0),
            card_type=str(row.get("card_type", "flashcard") or "flashcard"),
            front=str(row.get("front", "") or ""),
            back=str(row.get("back", "") or ""),
            concept_ids=[str(c) for c in concept_ids],
            state=str(row.get("state", "new") or "new"),
            stability=float(row.get("stability") or 0.0),
            difficulty=float(row.get("difficulty") or 0.0),
            reps=int(row.get("reps") or 0),
            lapses=int(row.get("lapses") or 0),
            scheduled_days=int(row.get("scheduled_days") or 0),
            elapsed_days=int(row.get("elapsed_days") or 0),
            due_date=_as_utc(row.get("due_date")),
            last_review=_as_utc(row.get("last_review")),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id or None,
            "user_id": self.user_id,
            "course_id": self.course_id,
            "lesson_index": int(self.lesson_index),
            "step_index": int(self.step_index),
            "card_type": self.card_type,
            "front": self.front,
            "back": self.back,
            "concept_ids": list(self.concept_ids),
            "state": self.state,
            "stability": float(self.stability),
            "difficulty": float(self.difficulty),
            "reps": int(self.reps),
            "lapses": int(self.lapses),
            "scheduled_days": int(self.scheduled_days),
            "elapsed_days": int(self.elapsed_days),
            "due_date": self.due_date,
            "last_review": self.last_review,
        }


@dataclass(frozen=True)
class ScheduleResult:
    stability: float
    difficulty: float
    due_date: datetime
    scheduled_days: int
    state: str


# ============================================================
# CORE FORMULAS
# ============================================================
def next_difficulty(difficulty: float, rating: int) -> float:
    r = _check_rating(rating)
    return max(0.1, min(1.0, float(difficulty) + _DIFFICULTY_DELTA[r]))


def next_stability(stability: float, difficulty: float, rating: int, elapsed_days: float) -> float:
    r = _check_rating(rating)
    s = max(float(stability), 0.1)
    if r == AGAIN:
        return max(0.5, s * 0.2)

    penalty = 1 - float(difficulty) * 0.5
    retrievability = math.exp(-float(elapsed_days) / s)
    bonus = 1 + (1 - retrievability) * 0.5
    out = s * _STABILITY_GROWTH[r] * penalty * bonus
    if r == EASY:
        out *= EASY_BONUS
    return min(out, float(MAXIMUM_INTERVAL))


def next_interval(stability: float, retention: float = REQUEST_RETENTION) -> int:
    if not (0 < retention < 1):
        raise ValueError(f"Retention must be between 0 and 1, got {retention!r}")
    raw = float(stability) * (math.log(retention) / math.log(0.9))
    # Round half up so 2.5 -> 3
    rounded = int(math.floor(raw + 0.5))
    return max(1, min(rounded, MAXIMUM_INTERVAL))


def elapsed_days_since(last_review: Optional[datetime], now: Optional[datetime] = None) -> int:
    last = _as_utc(last_review)
    if last is None:
        return 0
    now = _as_utc(now) or _utcnow()
    return max(0, (now - last).days)


# ============================================================
# SCHEDULING
# ============================================================
def schedule(card: ReviewCard, rating: int, now: Optional[datetime] = None,
             retention: float = REQUEST_RETENTION) -> ScheduleResult:
    """Work out the next memory state for a card without touching it."""
    r = _check_rating(rating)
    now = _as_utc(now) or _utcnow()
    state = card.state if card.state in CARD_STATES else "new"

    if state == "new":
        stability = INITIAL_STABILITY[r]
        difficulty = INITIAL_DIFFICULTY[r]
        if r in (AGAIN, HARD):
            return ScheduleResult(stability, difficulty, now + timedelta(minutes=LEARNING_STEPS[r]), 0, "learning")
        days = next_interval(stability, retention)
        return ScheduleResult(stability, difficulty, now + timedelta(days=days), days, "review")

    difficulty = next_difficulty(card.difficulty, r)

    if state in ("learning", "relearning"):
        if r == AGAIN:
            return ScheduleResult(max(0.5, card.stability * 0.5), difficulty,
                                  now + timedelta(minutes=LEARNING_STEPS[AGAIN]), 0, state)
        if r == HARD:
            return ScheduleResult(card.stability, difficulty,
                                  now + timedelta(minutes=LEARNING_STEPS[HARD]), 0, state)
        stability = card.stability * EASY_BONUS if r == EASY else card.stability
        days = next_interval(stability, retention)
        return ScheduleResult(stability, difficulty, now + timedelta(days=days), days, "review")

    # review
    if r == AGAIN:
        return ScheduleResult(max(0.5, card.stability * 0.2), difficulty,
                              now + timedelta(minutes=LEARNING_STEPS[AGAIN]), 0, "relearning")

    elapsed = elapsed_days_since(card.last_review, now) if card.last_review else card.elapsed_days
    stability = next_stability(card.stability, card.difficulty, r, elapsed)
    days = next_interval(stability, retention)
    if r == HARD:
        days = max(1, int(math.floor(days / HARD_INTERVAL + 0.5)))
    return ScheduleResult(stability, difficulty, now + timedelta(days=days), days, "review")


def process_review(card: ReviewCard, rating: int, now: Optional[datetime] = None,
                   retention: float = REQUEST_RETENTION) -> Tuple[ReviewCard, Dict[str, Any]]:
    """Apply a rating to a card.

    Returns the updated card and the review-log row describing the review.
    The input card is left unchanged.
    """
    r = _check_rating(rating)
    now = _as_utc(now) or _utcnow()
    elapsed = elapsed_days_since(card.last_review, now)
    result = schedule(card, r, now=now, retention=retention)

    lapses = card.lapses
    if card.state == "review" and r == AGAIN:
        lapses += 1

    updated = replace(
        card,
        state=result.state,
        stability=round(result.stability, 4),
        difficulty=round(result.difficulty, 4),
        due_date=result.due_date,
        scheduled_days=result.scheduled_days,
        elapsed_days=elapsed,
        reps=card.reps + 1,
        lapses=lapses,
        last_review=now,
    )
    log_row = {
        "card_id": card.id,
        "user_id": card.user_id,
        "rating": r,
        "state_before": card.state,
        "state_after": result.state,
        "stability": updated.stability,
        "difficulty": updated.difficulty,
        "elapsed_days": elapsed,
        "scheduled_days": result.scheduled_days,
        "reviewed_at": now,
    }
    LOGGER.info(
        "Card reviewed",
        extra={"ctx": {"component": "srs", "card": card.id, "rating": r, "state": result.state, "days": result.scheduled_days}},
    )
    return updated, log_row


def format_interval(scheduled_days: int, rating: int) -> str:
    if scheduled_days <= 0:
        return f"{LEARNING_STEPS.get(rating, LEARNING_STEPS[GOOD])}m"
    if scheduled_days < 30:
        return f"{scheduled_days}d"
    if scheduled_days < 365:
        return f"{int(math.floor(scheduled_days / 30 + 0.5))}mo"
    return f"{scheduled_days / 365:.1f}y"


def get_interval_preview(card: ReviewCard, now: Optional[datetime] = None,
                         retention: float = REQUEST_RETENTION) -> Dict[int, str]:
    """Label shown on each rating button, e.g. {1: "1m", 2: "6m", 3: "3d", 4: "7d"}."""
    out: Dict[int, str] = {}
    for r in RATINGS:
        result = schedule(card, r, now=now, retention=retention)
        out[r] = format_interval(result.scheduled_days, r)
    return out


def calculate_retrievability(card: ReviewCard, now: Optional[datetime] = None) -> int:
    if card.state == "new" or card.stability <= 0:
        return 0
    elapsed = elapsed_days_since(card.last_review, now)
    return int(math.floor(math.exp(-elapsed / card.stability) * 100 + 0.5))


def is_card_due(card: ReviewCard, now: Optional[datetime] = None) -> bool:
    if card.due_date is None:
        return card.state == "new"
    now = _as_utc(now) or _utcnow()
    return card.due_date <= now


# ============================================================
# DUE QUEUE + INTERLEAVING
# ============================================================
def _overdue_key(card: ReviewCard):
    return card.due_date or datetime.min.replace(tzinfo=timezone.utc)


def build_due_queue(
    cards: List[ReviewCard],
    settings: Optional[Dict[str, Any]] = None,
    reviewed_today: int = 0,
    now: Optional[datetime] = None,
) -> List[ReviewCard]:
    settings = settings or {}
    max_new = int(settings.get("max_new_cards_per_day", DEFAULT_MAX_NEW_CARDS))
    max_reviews = int(settings.get("max_reviews_per_day", DEFAULT_MAX_REVIEWS))
    interleave = bool(settings.get("interleave_reviews", True))

    remaining = max(0, max_reviews - int(reviewed_today))
    if remaining == 0:
        return []

    new_cards = [c for c in cards if c.state == "new"][: min(max_new, remaining)]
    due_cards = sorted(
        [c for c in cards if c.state != "new" and is_card_due(c, now)],
        key=_overdue_key,
    )
    queue = new_cards + due_cards[: max(0, remaining - len(new_cards))]

    if interleave:
        queue = interleave_cards(queue, now=now)
    return queue


def interleave_cards(cards: List[ReviewCard], now: Optional[datetime] = None) -> List[ReviewCard]:
    """Mix cards across courses so a session doesn't drill one topic in a block."""
    if len(cards) <= 3:
        return list(cards)

    now = _as_utc(now) or _utcnow()
    groups: Dict[str, List[ReviewCard]] = {}
    for c in cards:
        groups.setdefault(c.course_id or "", []).append(c)

    for group in groups.values():
        # Overdue first, then the rest in due order
        group.sort(key=lambda c: (0 if (c.due_date is not None and c.due_date < now) else 1, _overdue_key(c)))

    per_round = 1 if len(groups) > 2 else 2
    mixed: List[ReviewCard] = []
    queues = [list(g) for g in groups.values()]
    while any(queues):
        for q in queues:
            mixed.extend(q[:per_round])
            del q[:per_round]

    return _limit_lesson_runs(mixed)


def _limit_lesson_runs(cards: List[ReviewCard]) -> List[ReviewCard]:
    out = list(cards)

    def _lesson_key(c: ReviewCard) -> Tuple[str, int]:
        return (c.course_id, int(c.lesson_index))

    for i in range(MAX_CONSECUTIVE_SAME_LESSON, len(out)):
        window = out[i - MAX_CONSECUTIVE_SAME_LESSON:i]
        key = _lesson_key(out[i])
        if all(_lesson_key(c) == key for c in window):
            for j in range(i + 1, len(out)):
                if _lesson_key(out[j]) != key:
                    out[i], out[j] = out[j], out[i]
                    break
    return out


# ============================================================
# CARD GENERATION FROM COURSE CONTENT
# ============================================================
def _truncate_words(txt: str, max_words: int) -> str:
    words = (txt or "").split()
    if len(words) <= max_words:
        return " ".join(words)
    return " ".join(words[:max_words]) + "…"


def _options_back(options: List[str], correct_index: Any, explanation: str) -> str:
    try:
        idx = int(correct_index)
    except (TypeError, ValueError):
        idx = -1
    answer = options[idx] if 0 <= idx < len(options) else ""
    back = f"**Answer:** {answer}" if answer else ""
    if explanation:
        back = f"{back}\n\n{explanation}".strip()
    return back


def generate_cards_from_course(course: Dict[str, Any], course_id: str) -> List[ReviewCard]:
    """Build review cards from the lessons of a generated course.

    Key points, formulas, embedded questions and longer explanations each
    become one card. Diagrams, examples and summaries are skipped.
    """
    cards: List[ReviewCard] = []
    lessons = course.get("lessons") or course.get("sections") or []
    for lesson_index, lesson in enumerate(lessons):
        if not isinstance(lesson, dict):
            continue
        title = str(lesson.get("title", "") or f"Lesson {lesson_index + 1}").strip()
        for step_index, step in enumerate(lesson.get("steps") or []):
            if not isinstance(step, dict):
                continue
            stype = str(step.get("type", "") or "").strip().lower()
            content = str(step.get("content", "") or "").strip()
            step_title = str(step.get("title", "") or "").strip() or title
            if not content:
                continue

            card = None
            if stype == "key_point":
                card = ReviewCard(card_type="flashcard",
                                  front=f"What is the key point about {step_title}?",
                                  back=_truncate_words(content, MAX_BACK_WORDS))
            elif stype == "formula":
                card = ReviewCard(card_type="flashcard",
                                  front=f"What is the formula for {step_title}?",
                                  back=_truncate_words(content, MAX_BACK_WORDS))
            elif stype == "question":
                options = [str(o) for o in (step.get("options") or []) if str(o).strip()]
                explanation = str(step.get("explanation", "") or "").strip()
                if options:
                    card = ReviewCard(card_type="multiple_choice", front=content,
                                      back=_options_back(options, step.get("correct_answer"), explanation))
                elif explanation:
                    card = ReviewCard(card_type="short_answer", front=content, back=explanation)
            elif stype == "explanation":
                if len(content.split()) >= MIN_EXPLANATION_WORDS:
                    card = ReviewCard(card_type="flashcard",
                                      front=f"Explain: {step_title}",
                                      back=_truncate_words(content, MAX_BACK_WORDS))

            if card is None:
                continue
            card.course_id = course_id
            card.lesson_index = lesson_index
            card.step_index = step_index
            card.concept_ids = [lesson_key(course_id, lesson_index)]
            cards.append(card)
    return cards
