import unittest
from datetime import datetime, timedelta, timezone

from mastery import (
    ConceptMastery,
    UserPerformance,
    calculate_lesson_mastery,
    calculate_mastery,
    calculate_review_interval,
    consistency_factor,
    encouragement_message,
    is_decayed,
    mastery_level,
    mastery_result,
    recency_factor,
    speed_factor,
    suggest_difficulty_adjustment,
    update_concept_mastery,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FactorTests(unittest.TestCase):
    def test_recency_buckets(self) -> None:
        self.assertEqual(recency_factor(UserPerformance(), NOW), 0.0)
        self.assertEqual(recency_factor(UserPerformance(last_practiced=NOW), NOW), 1.0)
        self.assertEqual(recency_factor(UserPerformance(last_practiced=NOW - timedelta(days=2)), NOW), 0.7)
        self.assertEqual(recency_factor(UserPerformance(last_practiced=NOW - timedelta(days=60)), NOW), 0.05)

    def test_consistency(self) -> None:
        self.assertEqual(consistency_factor(UserPerformance(recent_scores=[0.8])), 0.5)
        self.assertEqual(consistency_factor(UserPerformance(recent_scores=[0.5, 0.5])), 1.0)
        self.assertEqual(consistency_factor(UserPerformance(recent_scores=[0.0, 0.0])), 0.0)

    def test_speed(self) -> None:
        self.assertEqual(speed_factor(UserPerformance(response_times=[1, 2, 3])), 0.5)
        self.assertEqual(speed_factor(UserPerformance(response_times=[4, 4, 2, 2])), 1.0)
        self.assertEqual(speed_factor(UserPerformance(response_times=[2, 2, 4, 4])), 0.25)


class TopicMasteryTests(unittest.TestCase):
    def test_perfect_learner_is_mastered(self) -> None:
        perf = UserPerformance(attempts=10, correct=10, last_practiced=NOW,
                               recent_scores=[1.0, 1.0], response_times=[4, 4, 2, 2])
        self.assertAlmostEqual(calculate_mastery(perf, NOW), 1.0)
        res = mastery_result(perf, NOW)
        self.assertEqual(res["level"], "mastered")
        self.assertEqual(res["label"], "Mastered")
        self.assertEqual(suggest_difficulty_adjustment(perf, NOW), 1)

    def test_levels(self) -> None:
        self.assertEqual(mastery_level(0.8), "mastered")
        self.assertEqual(mastery_level(0.6), "advanced")
        self.assertEqual(mastery_level(0.4), "intermediate")
        self.assertEqual(mastery_level(0.2), "developing")
        self.assertEqual(mastery_level(0.19), "beginner")

    def test_few_attempts(self) -> None:
        perf = UserPerformance(attempts=2, correct=0)
        self.assertEqual(suggest_difficulty_adjustment(perf, NOW), 0)
        self.assertEqual(encouragement_message(perf, NOW), "Great start! Keep practicing to build mastery.")

    def test_struggling_learner_steps_down(self) -> None:
        perf = UserPerformance(attempts=6, correct=1, last_practiced=NOW - timedelta(days=20))
        self.assertEqual(suggest_difficulty_adjustment(perf, NOW), -1)

    def test_review_interval(self) -> None:
        self.assertEqual(calculate_review_interval(0.95, 4), 10)
        self.assertEqual(calculate_review_interval(0.1, 1), 1)
        self.assertEqual(calculate_review_interval(0.95, 20), 30)


class ConceptMasteryTests(unittest.TestCase):
    def test_updates(self) -> None:
        rec = ConceptMastery("c")
        rec = update_concept_mastery(rec, True, NOW)
        self.assertEqual(rec.mastery_level, 0.2)
        rec = update_concept_mastery(rec, True, NOW)
        self.assertEqual(rec.mastery_level, 0.36)
        rec = update_concept_mastery(rec, False, NOW)
        self.assertEqual(rec.mastery_level, 0.288)
        self.assertEqual(rec.peak_mastery, 0.36)
        self.assertEqual(rec.total_exposures, 3)
        self.assertEqual((rec.successful_recalls, rec.failed_recalls), (2, 1))
        self.assertEqual(rec.confidence_score, 0.3)
        self.assertEqual(rec.stability, 2.0)
        self.assertEqual(rec.next_review_date, NOW + timedelta(days=2))

    def test_decay(self) -> None:
        self.assertTrue(is_decayed(ConceptMastery("c", mastery_level=0.5, peak_mastery=0.8)))
        self.assertFalse(is_decayed(ConceptMastery("c", mastery_level=0.3, peak_mastery=0.6)))
        self.assertFalse(is_decayed(ConceptMastery("c", mastery_level=0.7, peak_mastery=0.8)))

    def test_from_row_defaults(self) -> None:
        rec = ConceptMastery.from_row({"concept_id": "c", "mastery_level": None})
        self.assertEqual(rec.mastery_level, 0.0)
        self.assertEqual(rec.stability, 1.0)


class LessonMasteryTests(unittest.TestCase):
    def test_weighted_by_recency(self) -> None:
        self.assertEqual(calculate_lesson_mastery(3, 4, NOW - timedelta(days=2), NOW), 0.675)
        self.assertEqual(calculate_lesson_mastery(4, 4, NOW, NOW), 1.0)
        self.assertEqual(calculate_lesson_mastery(2, 4, None, NOW), 0.25)
        self.assertEqual(calculate_lesson_mastery(0, 0, NOW, NOW), 0.0)


if __name__ == "__main__":
    unittest.main()
