import unittest
from datetime import datetime, timedelta, timezone

from errors import AppError
from practice import (
    PracticeSession,
    check_answer,
    complete_session,
    default_question_count,
    pause_session,
    practice_stats,
    record_answer,
    resume_session,
    session_progress,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

MC = {"question_type": "multiple_choice", "options": ["London", "Paris"], "correct_answer": "Paris",
      "explanation": "Capital of France."}


def _session(n: int = 3) -> PracticeSession:
    return PracticeSession("quick", [f"q{i}" for i in range(n)], started_at=NOW - timedelta(seconds=90))


class CheckAnswerTests(unittest.TestCase):
    def test_multiple_choice(self) -> None:
        self.assertTrue(check_answer(MC, " paris "))
        self.assertTrue(check_answer(MC, "1"))
        self.assertFalse(check_answer(MC, "0"))
        self.assertFalse(check_answer(MC, "7"))

    def test_free_text_accepts_contained_answer(self) -> None:
        q = {"question_type": "short_answer", "correct_answer": "The mitochondria"}
        self.assertTrue(check_answer(q, "mitochondria"))
        self.assertFalse(check_answer(q, ""))
        self.assertFalse(check_answer(q, "ribosome"))

    def test_true_false(self) -> None:
        q = {"question_type": "true_false", "correct_answer": "True"}
        self.assertTrue(check_answer(q, "true"))
        self.assertFalse(check_answer(q, "false"))


class SessionTests(unittest.TestCase):
    def test_counts(self) -> None:
        self.assertEqual(default_question_count("quick"), 5)
        self.assertEqual(default_question_count("exam_prep"), 30)
        with self.assertRaises(ValueError):
            default_question_count("marathon")

    def test_record_answer_advances(self) -> None:
        s = _session()
        out = record_answer(s, MC, "Paris")
        self.assertTrue(out["is_correct"])
        self.assertEqual(out["explanation"], "Capital of France.")
        self.assertEqual(s.current_question_index, 1)
        self.assertEqual(out["session_progress"]["remaining"], 2)

    def test_marked_elsewhere_overrides_check(self) -> None:
        s = _session()
        out = record_answer(s, {"question_type": "short_answer", "correct_answer": "x"}, "a longer answer",
                            is_correct=True)
        self.assertTrue(out["is_correct"])
        self.assertEqual(s.questions_correct, 1)

    def test_paused_session_rejects_answers_until_resumed(self) -> None:
        s = pause_session(_session())
        self.assertEqual(s.status, "paused")
        self.assertTrue(s.is_open)
        resume_session(s)
        record_answer(s, MC, "London")
        self.assertEqual(s.questions_answered, 1)

    def test_closed_session_is_read_only(self) -> None:
        s = _session()
        complete_session(s, [], now=NOW)
        with self.assertRaises(ValueError):
            record_answer(s, MC, "Paris")
        with self.assertRaises(ValueError):
            pause_session(s)

    def test_answers_stop_at_question_count(self) -> None:
        s = _session(2)
        record_answer(s, MC, "Paris")
        record_answer(s, MC, "Paris")
        with self.assertRaises(AppError) as ctx:
            record_answer(s, MC, "Paris")
        self.assertEqual(ctx.exception.code, "NS-VAL-003")
        self.assertEqual(s.questions_answered, 2)
        self.assertEqual(s.questions_correct, 2)

    def test_progress(self) -> None:
        s = _session(4)
        record_answer(s, MC, "Paris")
        record_answer(s, MC, "London")
        p = session_progress(s, NOW)
        self.assertEqual(p["accuracy"], 50)
        self.assertEqual(p["elapsed_seconds"], 90)
        self.assertEqual(p["remaining"], 2)


class CompleteTests(unittest.TestCase):
    def test_summary_and_gaps(self) -> None:
        s = _session(3)
        for ans in ("London", "London", "Paris"):
            record_answer(s, MC, ans)
        answers = [
            {"concept_id": "a", "is_correct": False, "response_time_ms": 3000},
            {"concept_id": "a", "is_correct": False, "response_time_ms": 5000},
            {"concept_id": "b", "is_correct": True},
        ]
        out = complete_session(s, answers, now=NOW)
        self.assertEqual(s.status, "completed")
        self.assertEqual(out["gaps_identified"], ["a"])
        self.assertEqual(out["concept_accuracy"], {"a": 0.0, "b": 1.0})
        self.assertEqual(out["avg_response_time_ms"], 4000)
        self.assertEqual(out["accuracy"], 33)
        self.assertEqual(out["xp_awarded"], 5)

    def test_perfect_session_bonus(self) -> None:
        s = _session(1)
        record_answer(s, MC, "Paris")
        self.assertEqual(complete_session(s, [], now=NOW)["xp_awarded"], 15)

    def test_stats(self) -> None:
        rows = [
            {"status": "completed", "questions_answered": 10, "questions_correct": 7, "completed_at": NOW},
            {"status": "abandoned", "questions_answered": 4, "questions_correct": 0},
            {"status": "completed", "questions_answered": 10, "questions_correct": 9,
             "completed_at": NOW - timedelta(days=1)},
        ]
        stats = practice_stats(rows)
        self.assertEqual(stats["total_sessions"], 2)
        self.assertEqual(stats["overall_accuracy"], 80)
        self.assertEqual(stats["last_practice_date"], NOW)


if __name__ == "__main__":
    unittest.main()
