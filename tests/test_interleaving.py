import random
import unittest
from datetime import datetime, timedelta, timezone

from interleaving import (
    MixedCard,
    calculate_priority_score,
    enrich_cards,
    generate_mixed_practice,
    select_by_priority,
    session_stats,
    shuffle_with_constraints,
    spaced_interleaving,
)
from srs import ReviewCard

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _card(cid: str, lesson: int = 0, course: str = "c1", state: str = "review", due_days: float = 0,
          lapses: int = 0, reviewed: bool = True) -> ReviewCard:
    return ReviewCard(
        id=cid, course_id=course, lesson_index=lesson, state=state, lapses=lapses,
        due_date=None if state == "new" else NOW + timedelta(days=due_days),
        last_review=NOW - timedelta(days=2) if reviewed and state != "new" else None,
    )


def _mixed(topic: str, i: int, priority: float = 0.0) -> MixedCard:
    return MixedCard(ReviewCard(id=f"{topic}-{i}"), topic, 0.5, priority)


def _longest_run(cards) -> int:
    best = run = 1
    for a, b in zip(cards, cards[1:]):
        run = run + 1 if a.topic_key == b.topic_key else 1
        best = max(best, run)
    return best


class PriorityTests(unittest.TestCase):
    def test_due_today(self) -> None:
        self.assertEqual(calculate_priority_score(_card("a"), 0.5, NOW), 100)

    def test_overdue_weak_struggling(self) -> None:
        card = _card("a", due_days=-3, lapses=5)
        # 150 overdue + 15 for three days + 80 * 0.75 weak lesson + 30 lapse cap
        self.assertEqual(calculate_priority_score(card, 0.25, NOW), 255)

    def test_overdue_bonus_capped(self) -> None:
        self.assertEqual(calculate_priority_score(_card("a", due_days=-40), 0.5, NOW), 200)

    def test_new_and_recently_reviewed(self) -> None:
        self.assertEqual(calculate_priority_score(_card("n", state="new"), 0.5, NOW), 40)
        self.assertEqual(calculate_priority_score(_card("r", due_days=5), 0.5, NOW), 10)
        self.assertEqual(calculate_priority_score(_card("r", due_days=5, reviewed=False), 0.5, NOW), 0)

    def test_unknown_lesson_uses_default_mastery(self) -> None:
        mixed = enrich_cards([_card("a", lesson=3)], {"c1:0": 0.1}, NOW)
        self.assertEqual(mixed[0].topic_key, "c1:3")
        self.assertEqual(mixed[0].lesson_mastery, 0.5)


class SelectionTests(unittest.TestCase):
    def test_new_card_cap_with_backfill(self) -> None:
        cards = [_card(f"n{i}", state="new") for i in range(8)] + [_card("r1"), _card("r2", due_days=-1)]
        picked = select_by_priority(enrich_cards(cards, {}, NOW), card_count=5, max_new=2)
        ids = [m.card.id for m in picked]
        self.assertEqual(ids[:2], ["r2", "r1"])
        self.assertEqual(len(ids), 5)
        self.assertEqual(sum(1 for m in picked if m.card.state == "new"), 3)

    def test_cap_holds_when_room_is_filled(self) -> None:
        cards = [_card(f"n{i}", state="new") for i in range(4)] + [_card(f"r{i}") for i in range(6)]
        picked = select_by_priority(enrich_cards(cards, {}, NOW), card_count=7, max_new=1)
        self.assertEqual(sum(1 for m in picked if m.card.state == "new"), 1)


class ShuffleTests(unittest.TestCase):
    def test_runs_broken_up(self) -> None:
        cards = [_mixed(t, i) for t in ("a", "b", "c", "d") for i in range(3)]
        out = shuffle_with_constraints(cards, 2, random.Random(7))
        self.assertLessEqual(_longest_run(out), 2)
        self.assertEqual(sorted(m.card.id for m in out), sorted(m.card.id for m in cards))

    def test_lopsided_topics_keep_every_card(self) -> None:
        cards = [_mixed("a", i) for i in range(5)] + [_mixed("b", 0)]
        out = shuffle_with_constraints(cards, 2, random.Random(1))
        self.assertEqual(len(out), 6)

    def test_round_robin(self) -> None:
        cards = [_mixed("a", i, priority=i) for i in range(3)] + [_mixed("b", 0, priority=9)]
        out = spaced_interleaving(cards, card_count=4)
        self.assertEqual([m.card.id for m in out], ["a-2", "b-0", "a-1"])


class SessionTests(unittest.TestCase):
    def test_stats(self) -> None:
        cards = [_card("a", due_days=-1), _card("b", course="c2", state="new"), _card("c", due_days=3)]
        mixed = enrich_cards(cards, {"c1:0": 0.2}, NOW)
        s = session_stats(mixed, NOW)
        self.assertEqual(s["total_cards"], 3)
        self.assertEqual(s["due_today"], 1)
        self.assertEqual(s["new_cards"], 1)
        self.assertEqual(s["from_low_mastery"], 2)
        self.assertEqual(s["course_breakdown"], {"c1": 2, "c2": 1})

    def test_same_seed_same_order(self) -> None:
        cards = [_card(f"x{i}", lesson=i % 3) for i in range(9)]
        a = generate_mixed_practice(cards, {}, card_count=6, now=NOW, seed=4)
        b = generate_mixed_practice(cards, {}, card_count=6, now=NOW, seed=4)
        self.assertEqual([m.card.id for m in a["cards"]], [m.card.id for m in b["cards"]])
        self.assertEqual(a["stats"]["total_cards"], 6)

    def test_rejects_empty_session(self) -> None:
        with self.assertRaises(ValueError):
            generate_mixed_practice([], {}, card_count=0)


if __name__ == "__main__":
    unittest.main()
