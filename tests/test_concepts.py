import unittest

from concepts import (
    concept_id,
    detect_subject,
    detect_topic,
    format_lessons_for_prompt,
    lessons_without_concepts,
    normalize_extraction,
    validate_extraction,
)

LESSONS = [
    {"title": "Inside the cell", "steps": [
        {"type": "explanation", "content": "The nucleus holds DNA. " * 30},
        {"type": "question", "content": "What does the membrane do?"},
    ]},
    {"title": "Mitochondria and energy", "steps": []},
]


class DetectionTests(unittest.TestCase):
    def test_subject_and_topic(self) -> None:
        subject = detect_subject("Cell biology", LESSONS)
        self.assertEqual(subject, "biology")
        self.assertEqual(detect_topic("Cell biology", LESSONS, subject), "cell-biology")

    def test_unknown_falls_back_to_general(self) -> None:
        self.assertEqual(detect_subject("Knitting patterns", []), "general")
        self.assertEqual(detect_topic("Wars of the century", [], "history"), "general")


class PromptTests(unittest.TestCase):
    def test_steps_are_truncated(self) -> None:
        text = format_lessons_for_prompt(LESSONS)
        first = text.splitlines()[1]
        self.assertTrue(first.startswith("    Step 1 [explanation]: The nucleus"))
        self.assertTrue(first.endswith("..."))
        self.assertEqual(len(first), len("    Step 1 [explanation]: ") + 303)
        self.assertIn("Lesson 2: Mitochondria and energy\n    (No steps)", text)


class NormalizeTests(unittest.TestCase):
    REPLY = {
        "concepts": [
            {"name": "Cell membrane", "description": "Boundary of the cell.", "difficulty": 9,
             "prerequisites": ["Cell", "Cell membrane", "Osmosis"]},
            {"name": "Cell", "topic": "Cell Biology", "difficulty": None},
            {"name": "cell", "description": "duplicate"},
            {"name": "", "description": "nameless"},
        ],
        "mappings": [
            {"lessonIndex": 0, "stepIndex": 1, "conceptName": "Cell membrane", "relationship": "teaches"},
            {"lessonIndex": 0, "stepIndex": 1, "conceptName": "Cell membrane", "relationship": "teaches"},
            {"lessonIndex": 1, "conceptName": "cell", "relationship": "explains"},
            {"lessonIndex": 5, "conceptName": "Cell", "relationship": "requires"},
            {"lessonIndex": 0, "conceptName": "Osmosis", "relationship": "requires"},
        ],
    }

    def test_concepts_cleaned(self) -> None:
        out = normalize_extraction(self.REPLY, "biology", "cell-biology", lesson_count=2)
        self.assertEqual([c.name for c in out.concepts], ["Cell membrane", "Cell"])
        membrane, cell = out.concepts
        self.assertEqual(membrane.id, "biology/cell-biology/cell-membrane")
        self.assertEqual(membrane.difficulty, 5)
        self.assertEqual(cell.difficulty, 3)
        self.assertEqual(cell.topic, "cell-biology")
        # self-reference and unknown names dropped
        self.assertEqual(membrane.prerequisite_ids, [cell.id])
        self.assertEqual(out.edges(), [(membrane.id, cell.id)])

    def test_mappings_cleaned(self) -> None:
        out = normalize_extraction(self.REPLY, "biology", "cell-biology", lesson_count=2)
        rows = [(m.lesson_index, m.step_index, m.relationship) for m in out.mappings]
        self.assertEqual(rows, [(0, 1, "teaches"), (1, None, "teaches")])
        self.assertEqual(lessons_without_concepts(out, 3), [2])

    def test_ids_are_stable(self) -> None:
        self.assertEqual(concept_id("Physics", "", "Newton's 2nd law"), "physics/general/newton-s-2nd-law")


class ValidateTests(unittest.TestCase):
    def test_reasons(self) -> None:
        self.assertEqual(validate_extraction({"concepts": []}), (False, ["concepts must be a non-empty list."]))
        ok, reasons = validate_extraction({"concepts": [{"name": "A"}, {"description": "x"}], "mappings": {}})
        self.assertFalse(ok)
        self.assertEqual(reasons, ["Every concept needs a name.", "mappings must be a list."])
        self.assertTrue(validate_extraction({"concepts": [{"name": "A"}]})[0])
        self.assertFalse(validate_extraction("nope")[0])


if __name__ == "__main__":
    unittest.main()
