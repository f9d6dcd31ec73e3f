import unittest

from export_utils import course_to_markdown, course_to_pdf

COURSE = {
    "title": "Forces",
    "overview": "Intro to dynamics.",
    "lessons": [
        {
            "title": "Newton",
            "steps": [
                {"type": "explanation", "content": "Things keep moving unless pushed."},
                {"type": "formula", "title": "Second law", "content": "F = m a"},
                {"type": "question", "content": "Unit of force?", "options": ["N", "J"],
                 "correct_answer": 0, "explanation": "Named after Newton."},
            ],
        },
        {"title": "Friction", "steps": [{"type": "key_point", "content": "Friction opposes motion & heats <surfaces>."}]},
    ],
}


class MarkdownTests(unittest.TestCase):
    def test_layout(self) -> None:
        md = course_to_markdown(COURSE)
        self.assertTrue(md.startswith("# Forces\n\nIntro to dynamics.\n"))
        self.assertIn("## Lesson 1: Newton", md)
        self.assertIn("1. Things keep moving unless pushed.", md)
        self.assertIn("2. **Second law** - **Formula:** `F = m a`", md)
        self.assertIn("1. **Key point:** Friction opposes motion", md)
        self.assertTrue(md.endswith("\n"))

    def test_questions_collected_into_quiz(self) -> None:
        md = course_to_markdown(COURSE)
        quiz = md.split("## Quiz", 1)[1]
        self.assertIn("**Q1. Unit of force?**", quiz)
        self.assertIn("- A. N", quiz)
        self.assertIn("Answer: A. N", quiz)
        self.assertIn("_Named after Newton._", quiz)
        self.assertNotIn("Unit of force?", md.split("## Quiz", 1)[0])

    def test_empty_course(self) -> None:
        self.assertEqual(course_to_markdown({}), "# Untitled course\n")


class PdfTests(unittest.TestCase):
    def test_pdf_bytes(self) -> None:
        data = course_to_pdf(COURSE)
        self.assertTrue(data.startswith(b"%PDF"))
        self.assertGreater(len(data), 1000)


if __name__ == "__main__":
    unittest.main()
