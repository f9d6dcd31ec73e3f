import json
import unittest
from unittest import mock

import ai_generation
from errors import AppError


class RepairLoopTests(unittest.TestCase):
    def test_valid_first_reply_skips_repair(self) -> None:
        calls = []

        def call(repair, reasons):
            calls.append(repair)
            return {"ok": True}

        with mock.patch.object(ai_generation, "check_ai_quota") as quota:
            data, ok = ai_generation._with_repair(call, lambda d: (True, []), "u1")
        self.assertTrue(ok)
        self.assertEqual(calls, [False])
        quota.assert_not_called()

    def test_repair_call_is_counted(self) -> None:
        replies = iter([{"lessons": []}, {"lessons": ["fixed"]}])

        def call(repair, reasons):
            return next(replies)

        def validate(d):
            return (bool(d.get("lessons")), [] if d.get("lessons") else ["lessons must contain 2 lessons."])

        with mock.patch.object(ai_generation, "check_ai_quota") as quota:
            data, ok = ai_generation._with_repair(call, validate, "u1")
        self.assertTrue(ok)
        self.assertEqual(data, {"lessons": ["fixed"]})
        quota.assert_called_once_with("u1")

    def test_quota_exhausted_before_repair(self) -> None:
        calls = []

        def call(repair, reasons):
            calls.append(repair)
            return {}

        with mock.patch.object(ai_generation, "check_ai_quota", side_effect=AppError("NS-AI-003")):
            with self.assertRaises(AppError) as ctx:
                ai_generation._with_repair(call, lambda d: (False, ["empty"]), "u1")
        self.assertEqual(ctx.exception.code, "NS-AI-003")
        self.assertEqual(calls, [False])

    def test_failed_repair_keeps_warnings(self) -> None:
        with mock.patch.object(ai_generation, "check_ai_quota"):
            data, ok = ai_generation._with_repair(lambda r, why: {"title": "x"}, lambda d: (False, ["bad"]), None)
        self.assertFalse(ok)
        self.assertEqual(data["warnings"], ["bad"])


class AddMaterialTests(unittest.TestCase):
    def test_rejected_until_course_is_complete(self) -> None:
        for status in ("partial", "generating", "failed"):
            course = {"id": "c1", "generation_status": status, "generated_course": {"lessons": []}}
            with mock.patch.object(ai_generation, "check_ai_quota") as quota:
                with self.assertRaises(AppError) as ctx:
                    ai_generation.add_material_to_course(course, "More notes on friction.", user_id="u1")
            self.assertEqual(ctx.exception.code, "NS-CRS-055")
            quota.assert_not_called()

    def test_empty_notes(self) -> None:
        with self.assertRaises(AppError) as ctx:
            ai_generation.add_material_to_course({"generation_status": "complete"}, "   ")
        self.assertEqual(ctx.exception.code, "NS-CRS-013")


COURSE = {
    "id": "c1",
    "title": "Forces and motion",
    "generated_course": {"lessons": [
        {"title": "Forces and motion", "steps": [{"type": "explanation", "content": "A net force changes velocity."}]},
    ]},
}

GOOD_TF = {"question_type": "true_false", "question_text": "True or false: a net force changes an object's velocity.",
           "correct_answer": "True"}


class HomeworkCheckTests(unittest.TestCase):
    REPLY = json.dumps({
        "subject": "mathematics",
        "feedback": {
            "grade_estimate": "40/100", "grade_level": "incomplete", "summary": "Good setup, one sign slip.",
            "correct_points": [{"title": "Setup", "description": "Equation written correctly."}],
            "improvement_points": [{"title": "Sign", "description": "-3 became +3.", "severity": "moderate"}],
        },
    })

    def test_needs_a_task_and_an_answer(self) -> None:
        with mock.patch.object(ai_generation, "check_ai_quota") as quota:
            with self.assertRaises(AppError) as ctx:
                ai_generation.check_homework("", "x = 2")
            self.assertEqual(ctx.exception.code, "NS-HW-030")
            with self.assertRaises(AppError) as ctx:
                ai_generation.check_homework("Solve 2x = 4", "  ")
            self.assertEqual(ctx.exception.code, "NS-VAL-001")
        quota.assert_not_called()

    def test_photo_answer_is_sent_and_grade_made_consistent(self) -> None:
        with mock.patch.object(ai_generation, "check_ai_quota"), \
                mock.patch.object(ai_generation, "_chat", return_value=self.REPLY) as chat:
            result = ai_generation.check_homework("Solve 2x - 3 = 5", "", answer_image=(b"jpeg", "image/jpeg"))
        content = chat.call_args[0][1]
        self.assertEqual([part["type"] for part in content], ["text", "image_url"])
        self.assertEqual(result["input_mode"], "image")
        # no major errors and one correct point lifts 40 to 80
        self.assertEqual(result["grade"], 80)
        self.assertEqual(result["feedback"]["grade_level"], "good")

    def test_ai_failure_gets_checker_code(self) -> None:
        with mock.patch.object(ai_generation, "check_ai_quota"), \
                mock.patch.object(ai_generation, "_chat", side_effect=AppError("NS-AI-001")):
            with self.assertRaises(AppError) as ctx:
                ai_generation.check_homework("Solve 2x = 4", "x = 2")
        self.assertEqual(ctx.exception.code, "NS-HW-031")


class ConceptExtractionTests(unittest.TestCase):
    def test_course_without_lessons(self) -> None:
        with self.assertRaises(AppError) as ctx:
            ai_generation.extract_concepts({"title": "Empty", "generated_course": {"lessons": []}})
        self.assertEqual(ctx.exception.code, "NS-CRS-043")

    def test_reply_is_normalized(self) -> None:
        reply = json.dumps({
            "concepts": [{"name": "Net force", "difficulty": 2},
                         {"name": "Velocity", "prerequisites": ["Net force"]}],
            "mappings": [{"lessonIndex": 0, "conceptName": "Velocity", "relationship": "teaches"}],
        })
        with mock.patch.object(ai_generation, "check_ai_quota"), \
                mock.patch.object(ai_generation, "_chat", return_value=reply):
            out = ai_generation.extract_concepts(COURSE, user_id="u1")
        self.assertEqual((out.subject, out.topic), ("physics", "mechanics"))
        self.assertEqual(out.edges(), [("physics/mechanics/velocity", "physics/mechanics/net-force")])
        self.assertEqual(len(out.mappings), 1)

    def test_quota_error_passes_through(self) -> None:
        with mock.patch.object(ai_generation, "check_ai_quota", side_effect=AppError("NS-AI-003")):
            with self.assertRaises(AppError) as ctx:
                ai_generation.extract_concepts(COURSE, user_id="u1")
        self.assertEqual(ctx.exception.code, "NS-AI-003")


class ExamGenerationTests(unittest.TestCase):
    def test_questions_capped_at_request(self) -> None:
        reply = json.dumps({"questions": [GOOD_TF] * 7})
        with mock.patch.object(ai_generation, "check_ai_quota"), \
                mock.patch.object(ai_generation, "_chat", return_value=reply):
            questions = ai_generation.generate_exam_questions(COURSE, 5, user_id="u1")
        self.assertEqual(len(questions), 5)
        self.assertEqual(questions[0]["options"], ["True", "False"])

    def test_too_few_usable_questions(self) -> None:
        reply = json.dumps({"questions": [GOOD_TF, {"question_type": "short_answer",
                                                    "question_text": "Explain: forces"}]})
        with mock.patch.object(ai_generation, "check_ai_quota") as quota, \
                mock.patch.object(ai_generation, "_chat", return_value=reply) as chat:
            with self.assertRaises(AppError) as ctx:
                ai_generation.generate_exam_questions(COURSE, 5, user_id="u1")
        self.assertEqual(ctx.exception.code, "NS-EXM-010")
        self.assertEqual(chat.call_count, 2)
        self.assertEqual(quota.call_count, 2)


if __name__ == "__main__":
    unittest.main()
