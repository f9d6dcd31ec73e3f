import unittest
from datetime import date

from study_plan import (
    PlanLesson,
    PlanTask,
    available_days,
    generate_study_plan,
    plan_summary,
    recalculate_plan,
)

START = date(2026, 3, 1)  # a Sunday
EXAM = date(2026, 3, 12)


def _lessons(n: int = 3, course: str = "a") -> list:
    return [PlanLesson(course, i, f"Lesson {i + 1}", "Mechanics") for i in range(n)]


class AvailableDaysTests(unittest.TestCase):
    def test_excludes_start_exam_and_skipped_weekdays(self) -> None:
        days = available_days(START, date(2026, 3, 9), skip_weekdays=[5, 6])
        self.assertEqual(days, [date(2026, 3, d) for d in (2, 3, 4, 5, 6)])

    def test_skip_dates(self) -> None:
        days = available_days(START, date(2026, 3, 5), skip_dates=[date(2026, 3, 3)])
        self.assertEqual(days, [date(2026, 3, 2), date(2026, 3, 4)])


class GeneratePlanTests(unittest.TestCase):
    def test_phases_for_new_lessons(self) -> None:
        tasks = generate_study_plan(EXAM, 30, _lessons(), start_date=START, seed=1)
        summary = plan_summary(tasks)
        self.assertEqual(summary["by_type"]["learn_lesson"], 3)
        self.assertEqual(summary["by_type"]["review_lesson"], 9)
        self.assertEqual(summary["by_type"]["practice_test"], 1)
        self.assertEqual(summary["by_type"]["mock_exam"], 1)
        self.assertEqual(summary["by_type"]["light_review"], 1)

        first_day = [t for t in tasks if t.scheduled_date == date(2026, 3, 2)]
        self.assertEqual([t.task_type for t in first_day], ["learn_lesson", "learn_lesson"])
        self.assertEqual(tasks[-1].task_type, "light_review")
        self.assertEqual(tasks[-1].scheduled_date, date(2026, 3, 11))
        self.assertTrue(all(START < t.scheduled_date < EXAM for t in tasks))

    def test_sorted_by_date_then_order(self) -> None:
        tasks = generate_study_plan(EXAM, 30, _lessons(), start_date=START, seed=1)
        keys = [(t.scheduled_date, t.sort_order) for t in tasks]
        self.assertEqual(keys, sorted(keys))

    def test_weak_lessons_get_extra_reinforcement(self) -> None:
        lessons = _lessons(2)
        tasks = generate_study_plan(EXAM, 30, lessons, mastery={"a:0": 0.3, "a:1": 0.9},
                                    start_date=START, seed=7)
        weak = [t for t in tasks if t.task_type == "review_weak"]
        self.assertEqual(len(weak), 3)
        self.assertTrue(all(t.lesson_index == 0 for t in weak))
        self.assertFalse([t for t in tasks if t.task_type == "learn_lesson"])

    def test_same_seed_same_plan(self) -> None:
        kwargs = dict(mastery={"a:0": 0.3}, start_date=START, seed=42)
        a = generate_study_plan(EXAM, 45, _lessons(4), **kwargs)
        b = generate_study_plan(EXAM, 45, _lessons(4), **kwargs)
        self.assertEqual([t.to_row() for t in a], [t.to_row() for t in b])

    def test_skipped_lessons_left_out(self) -> None:
        tasks = generate_study_plan(EXAM, 30, _lessons(), skipped_lessons=[("a", 1)], start_date=START)
        self.assertNotIn(1, {t.lesson_index for t in tasks})

    def test_two_courses_interleave(self) -> None:
        lessons = _lessons(2, "a") + _lessons(2, "b")
        tasks = generate_study_plan(EXAM, 60, lessons, start_date=START, seed=3)
        learned = [t.course_id for t in tasks if t.task_type == "learn_lesson"]
        self.assertEqual(learned, ["a", "b", "a", "b"])

    def test_single_day_plan_keeps_reinforcement(self) -> None:
        lessons = _lessons(2)
        tasks = generate_study_plan(date(2026, 3, 3), 30, lessons, mastery={"a:0": 0.3, "a:1": 0.9},
                                    start_date=START, seed=2)
        reviews = [t for t in tasks if t.task_type in ("review_weak", "review_lesson")]
        self.assertEqual(sorted((t.task_type, t.lesson_index) for t in reviews),
                         [("review_lesson", 1), ("review_weak", 0)])
        self.assertTrue(all(t.scheduled_date == date(2026, 3, 2) for t in reviews))

    def test_no_days_left(self) -> None:
        self.assertEqual(generate_study_plan(date(2026, 3, 2), 30, _lessons(), start_date=START), [])

    def test_rejects_non_positive_minutes(self) -> None:
        with self.assertRaises(ValueError):
            generate_study_plan(EXAM, 0, _lessons(), start_date=START)


class RecalculateTests(unittest.TestCase):
    def test_completed_lessons_move_to_reinforcement(self) -> None:
        done = [PlanTask(date(2026, 3, 2), "learn_lesson", "Learn", 15, course_id="a", lesson_index=0,
                         status="completed")]
        tasks = recalculate_plan(done, EXAM, 30, _lessons(), start_date=START, seed=1)
        learned = {t.lesson_index for t in tasks if t.task_type == "learn_lesson"}
        self.assertEqual(learned, {1, 2})
        self.assertTrue(any(t.task_type == "review_weak" and t.lesson_index == 0 for t in tasks))


if __name__ == "__main__":
    unittest.main()
