import unittest
from datetime import datetime, timedelta, timezone

from review_session import complete_session, compose_daily_session, mixed_session, session_stats
from srs import ReviewCard


def _cards(prefix: str, n: int, **kw) -> list:
    return [ReviewCard(id=f"{prefix}{i}", **kw) for i in range(n)]


class ComposeSessionTests(unittest.TestCase):
    def test_pools_fill_in_priority_order(self) -> None:
        session = compose_daily_session(
            due=_cards("d", 3, state="review"),
            gap_cards=_cards("g", 2, concept_ids=["x"]),
            reinforcement_cards=_cards("r", 1),
            new_cards=_cards("n", 5),
            new_card_limit=2,
        )
        self.assertEqual(
            (session.due_cards, session.gap_cards, session.reinforcement_cards, session.new_cards),
            (3, 2, 1, 2),
        )
        self.assertEqual([c.source for c in session.cards[:4]], ["due", "gap", "reinforcement", "new"])
        self.assertEqual(len(session.cards), 8)
        self.assertEqual(session.estimated_minutes, 4)

    def test_gap_fix_never_adds_new_cards(self) -> None:
        session = compose_daily_session(due=[], gap_cards=_cards("g", 2), new_cards=_cards("n", 5),
                                        session_type="gap_fix")
        self.assertEqual(session.new_cards, 0)
        self.assertEqual(session.gap_cards, 2)

    def test_duplicates_are_dropped(self) -> None:
        shared = ReviewCard(id="same", state="review")
        session = compose_daily_session(due=[shared], gap_cards=[shared], reinforcement_cards=[shared])
        self.assertEqual(len(session.cards), 1)
        self.assertEqual(session.cards[0].source, "due")

    def test_due_cards_leave_room_for_gaps(self) -> None:
        session = compose_daily_session(due=_cards("d", 30), gap_cards=_cards("g", 10),
                                        max_cards=25, new_card_limit=10)
        self.assertEqual(session.due_cards, 20)
        self.assertEqual(session.gap_cards, 5)
        self.assertEqual(len(session.cards), 25)

    def test_targeted_concepts_recorded_on_gap_cards(self) -> None:
        session = compose_daily_session(due=[], gap_cards=[ReviewCard(id="g", concept_ids=["x", "y"])],
                                        session_type="targeted", target_concept_ids=["y"])
        self.assertEqual(session.cards[0].target_concept_ids, ["y"])
        self.assertEqual(session.target_concept_ids, ["y"])

    def test_rejects_bad_arguments(self) -> None:
        with self.assertRaises(ValueError):
            compose_daily_session(due=[], session_type="weekly")
        with self.assertRaises(ValueError):
            compose_daily_session(due=[], max_cards=0)


class CompleteSessionTests(unittest.TestCase):
    def test_summary(self) -> None:
        now = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
        out = complete_session(10, 7, now - timedelta(minutes=5), now=now, gaps_addressed=["x"])
        self.assertEqual(out["status"], "completed")
        self.assertEqual(out["total_time_seconds"], 300)
        self.assertEqual(out["accuracy"], 70)
        self.assertAlmostEqual(out["average_rating"], 2.8)
        self.assertEqual(out["gaps_addressed"], ["x"])

    def test_correct_is_capped_and_naive_start_accepted(self) -> None:
        now = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
        out = complete_session(4, 9, datetime(2026, 3, 2, 9, 59), now=now)
        self.assertEqual(out["accuracy"], 100)
        self.assertEqual(out["total_time_seconds"], 60)

    def test_empty_session(self) -> None:
        out = complete_session(0, 0, datetime.now(timezone.utc))
        self.assertEqual(out["accuracy"], 0)
        self.assertEqual(out["average_rating"], 0.0)

    def test_stats(self) -> None:
        rows = [
            {"cards_completed": 10, "cards_correct": 8, "total_time_seconds": 300, "gaps_addressed": ["a"]},
            {"cards_completed": 10, "cards_correct": 6, "total_time_seconds": 420, "gaps_addressed": None},
        ]
        stats = session_stats(rows)
        self.assertEqual(stats["total_sessions"], 2)
        self.assertEqual(stats["average_accuracy"], 70)
        self.assertEqual(stats["total_time_minutes"], 12)
        self.assertEqual(stats["gaps_addressed"], 1)


class MixedSessionTests(unittest.TestCase):
    def test_order_kept_and_counted(self) -> None:
        cards = [ReviewCard(id="a", state="review"), ReviewCard(id="b"), ReviewCard(id="c", state="learning")]
        session = mixed_session(cards)
        self.assertEqual(session.session_type, "mixed")
        self.assertEqual([sc.card.id for sc in session.cards], ["a", "b", "c"])
        self.assertEqual([sc.source for sc in session.cards], ["due", "new", "due"])
        self.assertEqual((session.due_cards, session.new_cards, session.gap_cards), (2, 1, 0))


if __name__ == "__main__":
    unittest.main()
