import unittest

from checker import (
    build_check_result,
    ensure_grade_consistency,
    grade_from_feedback,
    normalize_feedback,
    parse_grade_to_number,
    validate_check_reply,
)


def _pts(n: int, severity: str = "") -> list:
    return [{"title": f"p{i}", "description": "", **({"severity": severity} if severity else {})} for i in range(n)]


class ParseGradeTests(unittest.TestCase):
    def test_formats(self) -> None:
        self.assertEqual(parse_grade_to_number("60/100"), 60)
        self.assertEqual(parse_grade_to_number("17 / 20"), 85)
        self.assertEqual(parse_grade_to_number("85%"), 85)
        self.assertEqual(parse_grade_to_number("B+"), 87)
        self.assertEqual(parse_grade_to_number("Grade: A-"), 90)
        self.assertEqual(parse_grade_to_number("92"), 92)
        self.assertEqual(parse_grade_to_number("150 points"), 100)

    def test_fallbacks(self) -> None:
        self.assertEqual(parse_grade_to_number(""), 0)
        self.assertEqual(parse_grade_to_number(None), 0)
        # words are not letter grades
        self.assertEqual(parse_grade_to_number("a good attempt"), 70)


class GradeFromFeedbackTests(unittest.TestCase):
    def test_ratio_minus_severity(self) -> None:
        self.assertEqual(grade_from_feedback(_pts(3), _pts(1, "major")), (70, "needs_improvement"))
        self.assertEqual(grade_from_feedback(_pts(9), _pts(1, "moderate")), (88, "good"))

    def test_empty_and_floor(self) -> None:
        self.assertEqual(grade_from_feedback([], []), (70, "needs_improvement"))
        self.assertEqual(grade_from_feedback([], _pts(2, "major")), (0, "incomplete"))


class ConsistencyTests(unittest.TestCase):
    def test_large_discrepancy_uses_computed(self) -> None:
        out = ensure_grade_consistency({"grade_estimate": "60/100", "grade_level": "needs_improvement",
                                        "correct_points": _pts(4), "improvement_points": _pts(1, "moderate")})
        self.assertEqual((out["grade_estimate"], out["grade_level"]), ("78/100", "good"))

    def test_small_discrepancy_keeps_declared(self) -> None:
        out = ensure_grade_consistency({"grade_estimate": "B", "grade_level": "good",
                                        "correct_points": _pts(4), "improvement_points": _pts(1, "moderate")})
        self.assertEqual(out["grade_estimate"], "B")

    def test_no_major_errors_never_below_80(self) -> None:
        out = ensure_grade_consistency({"grade_estimate": "70/100",
                                        "correct_points": _pts(2), "improvement_points": _pts(2, "moderate")})
        self.assertEqual((out["grade_estimate"], out["grade_level"]), ("80/100", "good"))

    def test_major_errors_keep_low_grade(self) -> None:
        out = ensure_grade_consistency({"grade_estimate": "40/100",
                                        "correct_points": _pts(1), "improvement_points": _pts(1, "major")})
        self.assertEqual(out["grade_estimate"], "40/100")

    def test_all_correct_is_excellent(self) -> None:
        out = ensure_grade_consistency({"grade_estimate": "88/100", "grade_level": "good",
                                        "correct_points": _pts(3), "improvement_points": []})
        self.assertEqual((out["grade_estimate"], out["grade_level"]), ("95/100", "excellent"))


class ReplyTests(unittest.TestCase):
    def test_normalize(self) -> None:
        fb = normalize_feedback({"feedback": {
            "grade_level": "Superb",
            "summary": " Solid work ",
            "correct_points": ["Units are right", {"title": "", "description": ""}],
            "improvement_points": [{"title": "Sign error", "description": "Check line 2", "severity": "huge"}],
            "suggestions": ["Show each step", " "],
        }})
        self.assertEqual(fb["grade_level"], "needs_improvement")
        self.assertEqual(fb["summary"], "Solid work")
        self.assertEqual(fb["correct_points"], [{"title": "Units are right", "description": ""}])
        self.assertEqual(fb["improvement_points"][0]["severity"], "moderate")
        self.assertEqual(fb["suggestions"], ["Show each step"])

    def test_validate(self) -> None:
        ok, reasons = validate_check_reply({"feedback": {"summary": "", "correct_points": [], "improvement_points": []}})
        self.assertFalse(ok)
        self.assertIn("feedback.summary is missing.", reasons)
        ok, _ = validate_check_reply({"feedback": {"summary": "ok", "correct_points": ["x"], "improvement_points": []}})
        self.assertTrue(ok)
        self.assertFalse(validate_check_reply([])[0])

    def test_result(self) -> None:
        res = build_check_result({"subject": "physics", "topic": "forces", "feedback": {
            "grade_estimate": "20/100", "summary": "ok",
            "correct_points": _pts(3), "improvement_points": [],
        }}, "F = ma, find a", "a = 2")
        self.assertEqual(res["grade"], 100)
        self.assertEqual(res["feedback"]["grade_level"], "excellent")
        self.assertEqual(res["task_text"], "F = ma, find a")
        self.assertEqual(res["subject"], "physics")


if __name__ == "__main__":
    unittest.main()
