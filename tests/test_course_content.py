import unittest

from course_content import (
    GenerationStatus,
    begin_add_material,
    can_add_material,
    generation_progress,
    next_status,
    normalize_evaluation,
    normalize_lesson,
    normalize_practice_question,
    status_after_batch,
    validate_initial_course,
    validate_lesson,
    validate_lesson_batch,
    validate_practice_question,
)


def _lesson(title: str = "Forces") -> dict:
    return {
        "title": title,
        "steps": [
            {"type": "explanation", "content": "A force is a push or a pull."},
            {"type": "formula", "title": "Newton II", "content": "F = m a"},
            {"type": "question", "content": "Unit of force?", "options": ["newton", "joule"],
             "correct_answer": "newton", "explanation": "SI unit."},
        ],
    }


class StatusTests(unittest.TestCase):
    def test_transitions(self) -> None:
        self.assertEqual(next_status("generating", "partial"), "partial")
        self.assertEqual(next_status("failed", "generating"), "generating")
        with self.assertRaises(ValueError):
            next_status("complete", "partial")
        with self.assertRaises(ValueError):
            next_status("draft", "complete")

    def test_add_material_only_from_complete(self) -> None:
        self.assertTrue(can_add_material({"generation_status": "complete"}))
        self.assertTrue(can_add_material({}))
        for status in ("partial", "generating", "failed"):
            self.assertFalse(can_add_material({"generation_status": status}))
            with self.assertRaises(ValueError):
                begin_add_material(status)
        self.assertEqual(begin_add_material("complete"), "generating")
        with self.assertRaises(ValueError):
            next_status("partial", "generating")

    def test_after_batch(self) -> None:
        self.assertEqual(status_after_batch(3, 8), GenerationStatus.PARTIAL)
        self.assertEqual(status_after_batch(8, 8), GenerationStatus.COMPLETE)

    def test_progress(self) -> None:
        p = generation_progress({"lessons_ready": 3, "total_lessons": 8, "generation_status": "partial"})
        self.assertEqual(p["percent"], 37)
        self.assertTrue(p["can_continue"])
        done = generation_progress({"lessons_ready": 8, "total_lessons": 8, "generation_status": "complete"})
        self.assertFalse(done["can_continue"])
        self.assertEqual(generation_progress({})["percent"], 100)


class LessonTests(unittest.TestCase):
    def test_valid_lesson(self) -> None:
        self.assertEqual(validate_lesson(_lesson()), [])

    def test_problems_are_listed(self) -> None:
        bad = {"title": "", "steps": [
            {"type": "poem", "content": "x"},
            {"type": "question", "content": "Pick", "options": ["only one"]},
            {"type": "key_point", "content": ""},
        ]}
        reasons = validate_lesson(bad, "Lesson 2")
        self.assertIn("Lesson 2: missing title.", reasons)
        self.assertTrue(any("step 1: type must be one of" in r for r in reasons))
        self.assertIn("Lesson 2 step 2: questions need at least 2 options.", reasons)
        self.assertIn("Lesson 2 step 3: missing content.", reasons)

    def test_too_few_steps(self) -> None:
        reasons = validate_lesson({"title": "Short", "steps": [{"type": "summary", "content": "x"}]})
        self.assertEqual(reasons, ["Lesson: needs at least 3 steps."])

    def test_normalize(self) -> None:
        lesson = _lesson()
        lesson["steps"].append({"type": "Poem", "content": "  roses  "})
        lesson["steps"].append({"type": "summary", "content": ""})
        out = normalize_lesson(lesson)
        self.assertEqual(len(out["steps"]), 4)
        self.assertEqual(out["steps"][2]["correct_answer"], 0)
        self.assertEqual(out["steps"][3], {"type": "explanation", "content": "roses"})
        self.assertEqual(normalize_lesson({"steps": []})["title"], "Untitled lesson")


class CourseTests(unittest.TestCase):
    def test_initial_course(self) -> None:
        course = {
            "title": "Mechanics",
            "overview": "Motion and forces.",
            "document_summary": "Notes on Newton's laws.",
            "lesson_outline": [{"title": f"L{i}"} for i in range(4)],
            "lessons": [_lesson("L0"), _lesson("L1")],
        }
        ok, reasons = validate_initial_course(course, total_lessons=4, batch=2)
        self.assertTrue(ok, reasons)

        course["lesson_outline"] = course["lesson_outline"][:3]
        ok, reasons = validate_initial_course(course, total_lessons=4, batch=2)
        self.assertFalse(ok)
        self.assertIn("lesson_outline must list exactly 4 lessons.", reasons)

    def test_not_an_object(self) -> None:
        self.assertEqual(validate_initial_course([], 4, 2), (False, ["Output is not a JSON object."]))

    def test_batch(self) -> None:
        self.assertTrue(validate_lesson_batch({"lessons": [_lesson(), _lesson()]}, 2)[0])
        self.assertEqual(validate_lesson_batch({"lessons": [_lesson()]}, 2),
                         (False, ["lessons must contain 2 lessons."]))


class PracticeQuestionTests(unittest.TestCase):
    def test_valid_multiple_choice(self) -> None:
        q = {"type": "multiple_choice", "question": "2 + 2?", "options": ["3", "4"], "correct_answer": "4",
             "difficulty": 2, "cognitive_level": "apply"}
        self.assertEqual(validate_practice_question(q, ["multiple_choice"]), [])

    def test_invalid_fields(self) -> None:
        q = {"type": "essay", "question": "", "correct_answer": "", "difficulty": 9, "cognitive_level": "guess"}
        reasons = validate_practice_question(q, ["multiple_choice", "short_answer"])
        self.assertEqual(len(reasons), 5)

    def test_normalize_question(self) -> None:
        out = normalize_practice_question({"question": " Why? ", "difficulty": "7", "cognitive_level": "x"})
        self.assertEqual(out["type"], "short_answer")
        self.assertEqual(out["question"], "Why?")
        self.assertEqual(out["difficulty"], 5)
        self.assertEqual(out["cognitive_level"], "understand")

    def test_normalize_evaluation(self) -> None:
        self.assertEqual(normalize_evaluation({"score": 0.8, "feedback": "Good"}),
                         {"is_correct": True, "score": 0.8, "feedback": "Good"})
        self.assertFalse(normalize_evaluation({"score": "n/a"})["is_correct"])
        self.assertTrue(normalize_evaluation({"is_correct": True})["is_correct"])
        self.assertEqual(normalize_evaluation(None)["score"], 0.0)


if __name__ == "__main__":
    unittest.main()
