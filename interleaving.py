"""Mixed practice: pick cards across lessons and interleave them.

Cards are scored by how urgently they need attention (due, overdue, weak
lesson, struggling), the top of the list is taken with a cap on new cards,
and the result is shuffled so no lesson runs for more than a couple of cards
in a row.
"""

import logging
import math
import random
from collections import Counter, OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from srs import ReviewCard

LOGGER = logging.getLogger("notesnap")

DEFAULT_CARD_COUNT = 20
MAX_CONSECUTIVE_SAME_TOPIC = 2
MAX_NEW_CARDS = 5

PRIORITY_WEIGHTS = {
    "due_today": 100,
    "overdue": 150,
    "low_mastery": 80,
    "new_card": 40,
    "recently_reviewed": 10,
}
LOW_MASTERY_THRESHOLD = 0.4
DEFAULT_LESSON_MASTERY = 0.5
OVERDUE_PER_DAY = 5
OVERDUE_CAP = 50
LAPSE_BONUS = 10
LAPSE_CAP = 30


@dataclass
class MixedCard:
    card: ReviewCard
    topic_key: str
    lesson_mastery: float
    priority: float


def topic_key(card: ReviewCard) -> str:
    return f"{card.course_id}:{card.lesson_index}"


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def calculate_priority_score(card: ReviewCard, lesson_mastery: float, now: Optional[datetime] = None) -> float:
    now = _aware(now or datetime.now(timezone.utc))
    score = 0.0
    days_diff = None
    if card.due_date is not None:
        days_diff = math.floor((_aware(card.due_date) - now).total_seconds() / 86400)
        if days_diff <= 0:
            score += PRIORITY_WEIGHTS["overdue"] if days_diff < 0 else PRIORITY_WEIGHTS["due_today"]
            score += min(abs(days_diff) * OVERDUE_PER_DAY, OVERDUE_CAP)

    if lesson_mastery < LOW_MASTERY_THRESHOLD:
        score += PRIORITY_WEIGHTS["low_mastery"] * (1 - lesson_mastery)
    if card.state == "new":
        score += PRIORITY_WEIGHTS["new_card"]
    if days_diff is not None and days_diff > 0 and card.last_review is not None:
        score += PRIORITY_WEIGHTS["recently_reviewed"]
    if card.lapses > 2:
        score += min(card.lapses * LAPSE_BONUS, LAPSE_CAP)
    return score


def enrich_cards(cards: Sequence[ReviewCard], lesson_mastery: Dict[str, float],
                 now: Optional[datetime] = None) -> List[MixedCard]:
    """``lesson_mastery`` is keyed by ``course_id:lesson_index``."""
    out = []
    for c in cards:
        key = topic_key(c)
        m = float(lesson_mastery.get(key, DEFAULT_LESSON_MASTERY))
        out.append(MixedCard(c, key, m, calculate_priority_score(c, m, now)))
    return out


def select_by_priority(cards: Sequence[MixedCard], card_count: int = DEFAULT_CARD_COUNT,
                       max_new: int = MAX_NEW_CARDS) -> List[MixedCard]:
    """Highest priority first; new cards past the cap only fill leftover room."""
    ranked = sorted(cards, key=lambda m: m.priority, reverse=True)
    selected: List[MixedCard] = []
    skipped_new: List[MixedCard] = []
    new_count = 0
    for m in ranked:
        if len(selected) >= card_count:
            break
        if m.card.state == "new":
            if new_count >= max_new:
                skipped_new.append(m)
                continue
            new_count += 1
        selected.append(m)
    if len(selected) < card_count:
        selected.extend(skipped_new[:card_count - len(selected)])
    return selected


def _first_violation(cards: Sequence[MixedCard], max_run: int) -> int:
    run = 1
    for i in range(1, len(cards)):
        if cards[i].topic_key == cards[i - 1].topic_key:
            run += 1
            if run > max_run:
                return i
        else:
            run = 1
    return -1


def _swap_candidate(cards: List[MixedCard], at: int, max_run: int) -> int:
    topic = cards[at].topic_key
    order = list(range(at + 1, len(cards))) + list(range(at - 1, -1, -1))
    for j in order:
        if cards[j].topic_key == topic:
            continue
        trial = list(cards)
        trial[at], trial[j] = trial[j], trial[at]
        v = _first_violation(trial, max_run)
        # only accept swaps that move the first violation forward
        if v == -1 or v > at:
            return j
    return -1


def shuffle_with_constraints(cards: Sequence[MixedCard], max_consecutive: int = MAX_CONSECUTIVE_SAME_TOPIC,
                             rng: Optional[random.Random] = None) -> List[MixedCard]:
    """Shuffle, then swap cards until no topic runs longer than ``max_consecutive``.

    When the topics are too lopsided for that to be possible the remaining
    runs are left as they are.
    """
    rng = rng or random.Random()
    result = list(cards)
    rng.shuffle(result)
    if len(result) <= max_consecutive:
        return result

    for _ in range(len(result) * 3):
        at = _first_violation(result, max_consecutive)
        if at == -1:
            break
        j = _swap_candidate(result, at, max_consecutive)
        if j == -1:
            LOGGER.info("Mixed practice left a long topic run",
                        extra={"ctx": {"component": "interleaving", "index": at}})
            break
        result[at], result[j] = result[j], result[at]
    return result


def spaced_interleaving(cards: Sequence[MixedCard], card_count: int = DEFAULT_CARD_COUNT) -> List[MixedCard]:
    """Round-robin across topics, taking each topic's most urgent cards first."""
    groups: "OrderedDict[str, List[MixedCard]]" = OrderedDict()
    for m in cards:
        groups.setdefault(m.topic_key, []).append(m)
    if len(groups) <= 1:
        return list(cards)[:card_count]

    per_topic = int(math.ceil(card_count / len(groups)))
    queues = [sorted(g, key=lambda m: m.priority, reverse=True)[:per_topic] for g in groups.values()]
    result: List[MixedCard] = []
    depth = 0
    while len(result) < card_count and any(depth < len(q) for q in queues):
        for q in queues:
            if depth < len(q) and len(result) < card_count:
                result.append(q[depth])
        depth += 1
    return result


def session_stats(cards: Sequence[MixedCard], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = _aware(now or datetime.now(timezone.utc))
    return {
        "total_cards": len(cards),
        "due_today": sum(1 for m in cards if m.card.due_date is not None and _aware(m.card.due_date) <= now),
        "new_cards": sum(1 for m in cards if m.card.state == "new"),
        "from_low_mastery": sum(1 for m in cards if m.lesson_mastery < LOW_MASTERY_THRESHOLD),
        "course_breakdown": dict(Counter(m.card.course_id for m in cards)),
    }


def generate_mixed_practice(
    cards: Sequence[ReviewCard],
    lesson_mastery: Dict[str, float],
    card_count: int = DEFAULT_CARD_COUNT,
    max_consecutive: int = MAX_CONSECUTIVE_SAME_TOPIC,
    max_new: int = MAX_NEW_CARDS,
    now: Optional[datetime] = None,
    seed: Optional[int] = None,
) -> Dict[str, Any]:
    if int(card_count) <= 0:
        raise ValueError("card_count must be positive")
    picked = select_by_priority(enrich_cards(cards, lesson_mastery, now), int(card_count), int(max_new))
    mixed = shuffle_with_constraints(picked, int(max_consecutive), random.Random(seed))
    return {"cards": mixed, "stats": session_stats(mixed, now)}
