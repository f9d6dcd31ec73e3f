import unittest

from utils.json_utils import as_list, safe_parse_json


class JsonUtilsTests(unittest.TestCase):
    def test_prefers_object_with_lessons_in_fenced_block(self) -> None:
        text = """
        Sure, here you go:
        ```json
        {"note": "draft"}
        ```
        Final:
        ```json
        {"title": "Cells", "lessons": [{"title": "Membranes", "steps": []}]}
        ```
        """
        parsed = safe_parse_json(text)
        self.assertIsInstance(parsed, dict)
        self.assertEqual(parsed.get("title"), "Cells")

    def test_finds_balanced_object_in_prose(self) -> None:
        text = 'prefix {"alpha": 3, "beta": {"gamma": "}"}} suffix'
        parsed = safe_parse_json(text)
        self.assertEqual(parsed, {"alpha": 3, "beta": {"gamma": "}"}})

    def test_prefers_questions_payload_among_spans(self) -> None:
        text = '{"meta": 1} then {"questions": [{"question": "2+2?"}]}'
        parsed = safe_parse_json(text)
        self.assertEqual(parsed["questions"][0]["question"], "2+2?")

    def test_custom_prefer_keys(self) -> None:
        text = '{"questions": [1]} {"content": "hint", "items": [1]}'
        parsed = safe_parse_json(text, prefer_keys=("items",))
        self.assertEqual(parsed.get("content"), "hint")

    def test_empty_and_garbage(self) -> None:
        self.assertIsNone(safe_parse_json(""))
        self.assertIsNone(safe_parse_json("no json here"))

    def test_as_list(self) -> None:
        self.assertEqual(as_list(None), [])
        self.assertEqual(as_list("a"), ["a"])
        self.assertEqual(as_list(("a", "b")), ["a", "b"])


if __name__ == "__main__":
    unittest.main()
