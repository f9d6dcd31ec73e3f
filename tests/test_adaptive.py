import random
import unittest
from datetime import datetime, timedelta, timezone

from adaptive import (
    CandidateQuestion,
    PerformanceState,
    calculate_target_difficulty,
    expected_probability,
    performance_summary,
    score_question,
    select_questions,
    update_performance_state,
    update_question_difficulty,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class StateUpdateTests(unittest.TestCase):
    def test_rasch_midpoint(self) -> None:
        self.assertAlmostEqual(expected_probability(3.0, 3.0), 0.5)
        self.assertGreater(expected_probability(4.0, 2.0), 0.85)

    def test_single_correct_answer(self) -> None:
        state, feedback = update_performance_state(PerformanceState(user_id="u"), True, question_difficulty=2.5)
        self.assertAlmostEqual(state.rolling_accuracy, 0.55)
        self.assertAlmostEqual(state.estimated_ability, 2.65)
        # rolling accuracy still below the low mark pulls the target down
        self.assertAlmostEqual(state.target_difficulty, 2.7)
        self.assertEqual(state.correct_streak, 1)
        self.assertEqual(state.questions_answered, 1)
        self.assertTrue(feedback["difficulty_changed"])
        self.assertEqual(feedback["type"], "neutral")

    def test_hot_streak_raises_target_and_session(self) -> None:
        start = PerformanceState(rolling_accuracy=0.9, correct_streak=2)
        state, feedback = update_performance_state(start, True)
        self.assertAlmostEqual(state.target_difficulty, 3.5)
        self.assertAlmostEqual(state.session_difficulty, 2.6)
        self.assertEqual(feedback["message"], "Great streak! Keep it up!")

    def test_cold_streak(self) -> None:
        start = PerformanceState(rolling_accuracy=0.5, wrong_streak=2)
        state, _ = update_performance_state(start, False)
        self.assertEqual(state.wrong_streak, 3)
        self.assertEqual(state.correct_streak, 0)
        self.assertAlmostEqual(state.target_difficulty, 2.5)
        self.assertAlmostEqual(state.session_difficulty, 2.4)

    def test_floor_ratchets_up_for_strong_learner(self) -> None:
        start = PerformanceState(rolling_accuracy=0.95, estimated_ability=4.5, target_difficulty=1.5,
                                 questions_answered=9)
        state, _ = update_performance_state(start, True)
        self.assertEqual(state.difficulty_floor, 3.0)
        self.assertEqual(state.target_difficulty, 3.0)

    def test_floor_holds_through_wrong_answers(self) -> None:
        state = PerformanceState(rolling_accuracy=0.95, estimated_ability=4.5, target_difficulty=4.0,
                                 difficulty_floor=3.0, questions_answered=12)
        floors = []
        for _ in range(8):
            state, _ = update_performance_state(state, False, question_difficulty=4.0)
            floors.append(state.difficulty_floor)
            self.assertGreaterEqual(state.target_difficulty, state.difficulty_floor)
        self.assertEqual(floors, sorted(floors))
        self.assertEqual(floors[-1], 3.0)
        self.assertEqual(state.target_difficulty, 3.0)

    def test_target_is_clamped(self) -> None:
        start = PerformanceState(rolling_accuracy=0.99, target_difficulty=5.0, correct_streak=5)
        state, feedback = update_performance_state(start, True)
        self.assertEqual(state.target_difficulty, 5.0)
        self.assertEqual(feedback["message"], "You're on fire! 5+ correct in a row!")

    def test_response_time_rolls(self) -> None:
        state, _ = update_performance_state(PerformanceState(), True, response_time_ms=4000)
        self.assertEqual(state.rolling_response_time_ms, 4000)
        state, _ = update_performance_state(state, True, response_time_ms=2000)
        self.assertEqual(state.rolling_response_time_ms, 3800)

    def test_row_round_trip(self) -> None:
        state = PerformanceState(user_id="u", course_id="c", rolling_accuracy=0.0, wrong_streak=2)
        again = PerformanceState.from_row(state.to_row())
        self.assertEqual(again.rolling_accuracy, 0.0)
        self.assertEqual(again.wrong_streak, 2)

    def test_summary(self) -> None:
        s = performance_summary(PerformanceState(rolling_accuracy=0.72, wrong_streak=2))
        self.assertEqual(s["accuracy"], 72)
        self.assertEqual((s["streak"], s["streak_type"]), (2, "wrong"))


class TargetDifficultyTests(unittest.TestCase):
    def test_streak_up(self) -> None:
        out = calculate_target_difficulty(PerformanceState(rolling_accuracy=0.9, correct_streak=2))
        self.assertAlmostEqual(out["target_difficulty"], 3.15)
        self.assertEqual(out["adjustment_reason"], "streak_up")

    def test_accuracy_low_respects_floor(self) -> None:
        out = calculate_target_difficulty(PerformanceState(rolling_accuracy=0.5))
        self.assertAlmostEqual(out["target_difficulty"], 2.1)
        self.assertEqual(out["adjustment_reason"], "accuracy_low")
        out = calculate_target_difficulty(PerformanceState(rolling_accuracy=0.5, difficulty_floor=3.0))
        self.assertEqual(out["target_difficulty"], 3.0)


class SelectionTests(unittest.TestCase):
    def test_base_score(self) -> None:
        self.assertEqual(score_question(CandidateQuestion("q"), 3.0), 65)

    def test_weak_concept_and_bloom_bonus(self) -> None:
        q = CandidateQuestion("q", concept_id="c", cognitive_level="apply")
        self.assertAlmostEqual(score_question(q, 3.0, weak_concepts={"c": 0.2}), 65 + 66 + 10 + 6)

    def test_recently_seen_scores_lower(self) -> None:
        fresh = CandidateQuestion("a", times_shown=1, last_seen_at=NOW - timedelta(days=3))
        stale = CandidateQuestion("b", times_shown=4, last_seen_at=NOW - timedelta(hours=2))
        self.assertGreater(score_question(fresh, 3.0, now=NOW), score_question(stale, 3.0, now=NOW))

    def test_empirical_difficulty_scale(self) -> None:
        self.assertEqual(CandidateQuestion("q", empirical_difficulty=0.5).effective_difficulty, 3.0)
        self.assertEqual(CandidateQuestion("q", difficulty=2.0).effective_difficulty, 2.0)

    def test_miss_rate_matches_target_on_difficulty_scale(self) -> None:
        hard = CandidateQuestion("hard", empirical_difficulty=1.0)
        easy = CandidateQuestion("easy", empirical_difficulty=0.0)
        self.assertEqual(hard.effective_difficulty, 5.0)
        self.assertGreater(score_question(hard, 5.0), score_question(easy, 5.0))
        self.assertGreater(score_question(easy, 1.0), score_question(hard, 1.0))

    def test_batch_takes_top_scores(self) -> None:
        qs = [CandidateQuestion("far", difficulty=5.0), CandidateQuestion("near", difficulty=3.0),
              CandidateQuestion("mid", difficulty=4.0)]
        picked = select_questions(qs, 3.0, count=2)
        self.assertEqual([q.id for q, _ in picked], ["near", "mid"])

    def test_single_pick_comes_from_pool(self) -> None:
        qs = [CandidateQuestion(str(i), difficulty=1 + i % 5) for i in range(8)]
        picked = select_questions(qs, 3.0, rng=random.Random(3))
        self.assertEqual(len(picked), 1)
        self.assertIn(picked[0][0], qs)
        self.assertEqual(select_questions([], 3.0), [])


class QuestionStatsTests(unittest.TestCase):
    def test_running_stats(self) -> None:
        stats = update_question_difficulty(None, True, 1000)
        self.assertEqual(stats["empirical_difficulty"], 0.0)
        stats = update_question_difficulty(stats, False, 3000)
        self.assertEqual(stats["times_shown"], 2)
        self.assertEqual(stats["empirical_difficulty"], 0.5)
        self.assertEqual(stats["avg_response_time_ms"], 2000)


if __name__ == "__main__":
    unittest.main()
