import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from srs import ReviewCard

DEFAULT_MAX_CARDS = 50
DEFAULT_NEW_CARD_LIMIT = 10
ESTIMATED_SECONDS_PER_CARD = 30

MAX_GAP_CARDS = 10
MAX_REINFORCEMENT_CARDS = 5
MIN_DUE_SLOTS = 20

SESSION_TYPES = ("daily", "targeted", "gap_fix", "custom", "mixed")
SOURCE_PRIORITY = {"due": 1, "gap": 2, "reinforcement": 3, "new": 4}


@dataclass
class SessionCard:
    card: ReviewCard
    source: str
    priority: int
    target_concept_ids: List[str] = field(default_factory=list)


@dataclass
class DailySession:
    session_type: str
    cards: List[SessionCard]
    due_cards: int = 0
    gap_cards: int = 0
    reinforcement_cards: int = 0
    new_cards: int = 0
    target_concept_ids: List[str] = field(default_factory=list)

    @property
    def estimated_minutes(self) -> int:
        return int(math.ceil(len(self.cards) * ESTIMATED_SECONDS_PER_CARD / 60))


def compose_daily_session(
    due: Iterable[ReviewCard],
    gap_cards: Iterable[ReviewCard] = (),
    reinforcement_cards: Iterable[ReviewCard] = (),
    new_cards: Iterable[ReviewCard] = (),
    session_type: str = "daily",
    max_cards: int = DEFAULT_MAX_CARDS,
    new_card_limit: int = DEFAULT_NEW_CARD_LIMIT,
    target_concept_ids: Optional[List[str]] = None,
) -> DailySession:
    """Assemble one review session from the candidate pools.

    Pools are expected in the order the database returns them (earliest due
    first, oldest new card first). Due cards come first, then cards aimed at
    open knowledge gaps, then reinforcement for decaying concepts, and new
    cards fill whatever room is left. Targeted and gap-fix sessions never
    introduce new cards.
    """
    if session_type not in SESSION_TYPES:
        raise ValueError(f"Unknown session type: {session_type}")
    max_cards = int(max_cards)
    if max_cards <= 0:
        raise ValueError("max_cards must be positive")
    if session_type in ("targeted", "gap_fix"):
        new_card_limit = 0

    targets = list(target_concept_ids or [])
    picked: List[SessionCard] = []
    seen = set()
    counts = {"due": 0, "gap": 0, "reinforcement": 0, "new": 0}

    def _add(card: ReviewCard, source: str, concepts: Optional[List[str]] = None) -> None:
        key = card.id or id(card)
        if key in seen:
            return
        seen.add(key)
        picked.append(SessionCard(card, source, SOURCE_PRIORITY[source], concepts or []))
        counts[source] += 1

    due_limit = min(max_cards, max(max_cards - int(new_card_limit), MIN_DUE_SLOTS))
    for card in list(due)[:due_limit]:
        _add(card, "due")

    if len(picked) < max_cards:
        room = min(MAX_GAP_CARDS, max_cards - len(picked))
        for card in gap_cards:
            if counts["gap"] >= room:
                break
            overlap = [c for c in card.concept_ids if c in targets] if targets else list(card.concept_ids)
            _add(card, "gap", overlap)

    if len(picked) < max_cards:
        room = min(MAX_REINFORCEMENT_CARDS, max_cards - len(picked))
        for card in reinforcement_cards:
            if counts["reinforcement"] >= room:
                break
            _add(card, "reinforcement")

    if len(picked) < max_cards:
        room = min(int(new_card_limit), max_cards - len(picked))
        for card in new_cards:
            if counts["new"] >= room:
                break
            _add(card, "new")

    return DailySession(
        session_type=session_type,
        cards=interleave_session_cards(picked),
        due_cards=counts["due"],
        gap_cards=counts["gap"],
        reinforcement_cards=counts["reinforcement"],
        new_cards=counts["new"],
        target_concept_ids=targets,
    )


def mixed_session(cards: Iterable[ReviewCard]) -> DailySession:
    """Wrap an already ordered mixed-practice selection; the order is kept."""
    picked = []
    for card in cards:
        source = "new" if card.state == "new" else "due"
        picked.append(SessionCard(card, source, SOURCE_PRIORITY[source]))
    new = sum(1 for sc in picked if sc.source == "new")
    return DailySession(session_type="mixed", cards=picked, due_cards=len(picked) - new, new_cards=new)


def interleave_session_cards(cards: List[SessionCard]) -> List[SessionCard]:
    if len(cards) <= 5:
        return list(cards)
    by_source: Dict[str, List[SessionCard]] = {s: [] for s in SOURCE_PRIORITY}
    for sc in cards:
        by_source.setdefault(sc.source, []).append(sc)

    out: List[SessionCard] = []
    while any(by_source.values()):
        for source in SOURCE_PRIORITY:
            if by_source[source]:
                out.append(by_source[source].pop(0))
    return out


def complete_session(
    cards_completed: int,
    cards_correct: int,
    started_at: datetime,
    now: Optional[datetime] = None,
    gaps_addressed: Optional[List[str]] = None,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    completed = max(0, int(cards_completed))
    correct = max(0, min(int(cards_correct), completed))
    return {
        "status": "completed",
        "completed_at": now,
        "total_time_seconds": max(0, int(round((now - started_at).total_seconds()))),
        "average_rating": (correct / completed) * 4 if completed else 0.0,
        "accuracy": int(round(correct / completed * 100)) if completed else 0,
        "gaps_addressed": list(gaps_addressed or []),
    }


def session_stats(sessions: List[Dict[str, Any]]) -> Dict[str, int]:
    """Roll up completed review sessions (rows from review_sessions)."""
    total_cards = sum(int(s.get("cards_completed") or 0) for s in sessions)
    total_correct = sum(int(s.get("cards_correct") or 0) for s in sessions)
    total_seconds = sum(int(s.get("total_time_seconds") or 0) for s in sessions)
    gaps = sum(len(s.get("gaps_addressed") or []) for s in sessions)
    return {
        "total_sessions": len(sessions),
        "total_cards": total_cards,
        "total_correct": total_correct,
        "average_accuracy": int(round(total_correct / total_cards * 100)) if total_cards else 0,
        "total_time_minutes": int(round(total_seconds / 60)),
        "gaps_addressed": gaps,
    }
