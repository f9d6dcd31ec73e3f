import unittest
from datetime import datetime, timedelta, timezone

from srs import (
    AGAIN,
    EASY,
    GOOD,
    HARD,
    ReviewCard,
    build_due_queue,
    calculate_retrievability,
    format_interval,
    generate_cards_from_course,
    get_interval_preview,
    interleave_cards,
    next_difficulty,
    next_interval,
    process_review,
    schedule,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _review_card(**kw) -> ReviewCard:
    base = dict(
        id="c1",
        user_id="u1",
        course_id="course-a",
        state="review",
        stability=10.0,
        difficulty=0.3,
        reps=4,
        lapses=0,
        last_review=NOW - timedelta(days=10),
        due_date=NOW - timedelta(days=1),
    )
    base.update(kw)
    return ReviewCard(**base)


class FormulaTests(unittest.TestCase):
    def test_interval_rounds_half_up_and_clamps(self) -> None:
        self.assertEqual(next_interval(2.5), 3)
        self.assertEqual(next_interval(0.2), 1)
        self.assertEqual(next_interval(10**7), 36500)

    def test_interval_rejects_bad_retention(self) -> None:
        with self.assertRaises(ValueError):
            next_interval(3.0, retention=1.0)

    def test_difficulty_is_clamped(self) -> None:
        self.assertEqual(next_difficulty(0.95, AGAIN), 1.0)
        self.assertEqual(next_difficulty(0.12, EASY), 0.1)
        self.assertAlmostEqual(next_difficulty(0.5, GOOD), 0.45)

    def test_invalid_rating(self) -> None:
        with self.assertRaises(ValueError):
            process_review(ReviewCard(), 5, now=NOW)
        with self.assertRaises(ValueError):
            next_difficulty(0.5, "x")


class ProcessReviewTests(unittest.TestCase):
    def test_new_card_good_goes_to_review(self) -> None:
        card = ReviewCard(id="n1", user_id="u1")
        updated, log = process_review(card, GOOD, now=NOW)
        self.assertEqual(updated.state, "review")
        self.assertEqual(updated.stability, 3.0)
        self.assertEqual(updated.difficulty, 0.3)
        self.assertEqual(updated.scheduled_days, 3)
        self.assertEqual(updated.due_date, NOW + timedelta(days=3))
        self.assertEqual(updated.reps, 1)
        self.assertEqual(log["state_before"], "new")
        self.assertEqual(log["state_after"], "review")
        # input untouched
        self.assertEqual(card.state, "new")
        self.assertEqual(card.reps, 0)

    def test_new_card_again_stays_in_learning(self) -> None:
        updated, _ = process_review(ReviewCard(), AGAIN, now=NOW)
        self.assertEqual(updated.state, "learning")
        self.assertEqual(updated.scheduled_days, 0)
        self.assertEqual(updated.due_date, NOW + timedelta(minutes=1))

    def test_review_lapse(self) -> None:
        updated, log = process_review(_review_card(), AGAIN, now=NOW)
        self.assertEqual(updated.state, "relearning")
        self.assertEqual(updated.lapses, 1)
        self.assertEqual(updated.stability, 2.0)
        self.assertEqual(log["elapsed_days"], 10)

    def test_review_good_grows_stability(self) -> None:
        card = _review_card()
        updated, _ = process_review(card, GOOD, now=NOW)
        self.assertEqual(updated.state, "review")
        self.assertGreater(updated.stability, card.stability)
        self.assertGreaterEqual(updated.scheduled_days, 1)
        self.assertEqual(updated.last_review, NOW)

    def test_hard_is_shorter_than_good_is_shorter_than_easy(self) -> None:
        card = _review_card()
        hard, _ = process_review(card, HARD, now=NOW)
        good, _ = process_review(card, GOOD, now=NOW)
        easy, _ = process_review(card, EASY, now=NOW)
        self.assertLess(hard.scheduled_days, good.scheduled_days)
        self.assertLess(good.scheduled_days, easy.scheduled_days)

    def test_review_hard_divides_interval(self) -> None:
        card = _review_card(stability=10.0, difficulty=0.4, last_review=NOW)
        # stability 9.6 -> 10 days, then 10 / 1.2 rounds to 8
        result = schedule(card, HARD, now=NOW)
        self.assertEqual(result.scheduled_days, 8)
        self.assertEqual(result.due_date, NOW + timedelta(days=8))
        self.assertEqual(result.state, "review")

    def test_review_hard_keeps_one_day_minimum(self) -> None:
        card = _review_card(stability=0.5, difficulty=1.0, last_review=NOW)
        result = schedule(card, HARD, now=NOW)
        self.assertEqual(result.scheduled_days, 1)
        self.assertEqual(result.due_date, NOW + timedelta(days=1))

    def test_learning_good_graduates(self) -> None:
        card = ReviewCard(state="learning", stability=3.0, difficulty=0.6)
        updated, _ = process_review(card, GOOD, now=NOW)
        self.assertEqual(updated.state, "review")
        self.assertEqual(updated.scheduled_days, 3)


class PreviewTests(unittest.TestCase):
    def test_new_card_preview(self) -> None:
        preview = get_interval_preview(ReviewCard(), now=NOW)
        self.assertEqual(preview, {AGAIN: "1m", HARD: "6m", GOOD: "3d", EASY: "7d"})

    def test_long_stability_preview_uses_months_and_years(self) -> None:
        card = _review_card(stability=100.0, difficulty=0.0, last_review=NOW)
        preview = get_interval_preview(card, now=NOW)
        self.assertEqual(preview, {AGAIN: "1m", HARD: "3mo", GOOD: "8mo", EASY: "1.2y"})

    def test_format_interval(self) -> None:
        self.assertEqual(format_interval(0, HARD), "6m")
        self.assertEqual(format_interval(12, GOOD), "12d")
        self.assertEqual(format_interval(45, GOOD), "2mo")
        self.assertEqual(format_interval(400, GOOD), "1.1y")

    def test_retrievability(self) -> None:
        self.assertEqual(calculate_retrievability(ReviewCard(), now=NOW), 0)
        self.assertEqual(calculate_retrievability(_review_card(), now=NOW), 37)


class QueueTests(unittest.TestCase):
    def test_daily_cap_reached(self) -> None:
        cards = [ReviewCard(id=str(i)) for i in range(5)]
        queue = build_due_queue(cards, {"max_reviews_per_day": 5}, reviewed_today=5, now=NOW)
        self.assertEqual(queue, [])

    def test_new_cards_capped_and_future_cards_skipped(self) -> None:
        new = [ReviewCard(id=f"n{i}") for i in range(5)]
        due = _review_card(id="due")
        later = _review_card(id="later", due_date=NOW + timedelta(days=4))
        queue = build_due_queue(new + [due, later], {"max_new_cards_per_day": 2, "interleave_reviews": False},
                                now=NOW)
        ids = [c.id for c in queue]
        self.assertEqual(ids, ["n0", "n1", "due"])

    def test_interleave_limits_same_lesson_runs(self) -> None:
        cards = [_review_card(id=f"a{i}", course_id="a", lesson_index=0) for i in range(5)]
        cards.append(_review_card(id="b0", course_id="b", lesson_index=0))
        mixed = interleave_cards(cards, now=NOW)
        self.assertEqual(sorted(c.id for c in mixed), sorted(c.id for c in cards))
        run = best = 1
        for prev, cur in zip(mixed, mixed[1:]):
            run = run + 1 if (prev.course_id, prev.lesson_index) == (cur.course_id, cur.lesson_index) else 1
            best = max(best, run)
        self.assertLessEqual(best, 3)


class CardGenerationTests(unittest.TestCase):
    def test_cards_from_steps(self) -> None:
        course = {
            "lessons": [
                {
                    "title": "Forces",
                    "steps": [
                        {"type": "key_point", "title": "Inertia", "content": "Objects resist changes in motion."},
                        {"type": "formula", "title": "Newton II", "content": "F = m a"},
                        {"type": "question", "content": "Unit of force?", "options": ["N", "J"],
                         "correct_answer": 0, "explanation": "Newton."},
                        {"type": "explanation", "content": "Too short."},
                        {"type": "diagram", "content": "<svg/>"},
                    ],
                },
            ],
        }
        cards = generate_cards_from_course(course, "course-a")
        self.assertEqual([c.card_type for c in cards], ["flashcard", "flashcard", "multiple_choice"])
        self.assertEqual(cards[0].front, "What is the key point about Inertia?")
        self.assertIn("**Answer:** N", cards[2].back)
        self.assertEqual(cards[1].step_index, 1)
        self.assertTrue(all(c.concept_ids == ["course-a:0"] for c in cards))

    def test_row_round_trip_keeps_schedule(self) -> None:
        card = _review_card(concept_ids=["x:1"])
        again = ReviewCard.from_row(card.to_row())
        self.assertEqual(again.due_date, card.due_date)
        self.assertEqual(again.concept_ids, ["x:1"])


if __name__ == "__main__":
    unittest.main()
