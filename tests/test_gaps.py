import unittest
from datetime import datetime, timedelta, timezone

from gaps import ConceptState, collect_prerequisites, detect_gaps, trailing_failures

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _answers(cid: str, results: list) -> list:
    # handed over newest first to check the detector sorts them
    rows = [{"concept_id": cid, "is_correct": ok, "answered_at": NOW - timedelta(minutes=len(results) - i)}
            for i, ok in enumerate(results)]
    return list(reversed(rows))


class PrerequisiteTests(unittest.TestCase):
    def test_walk_tolerates_cycles(self) -> None:
        found = collect_prerequisites("a", {"a": ["b"], "b": ["a"]})
        self.assertEqual(set(found), {"a", "b"})
        self.assertEqual(found["b"], {"a"})

    def test_depth_limit(self) -> None:
        chain = {f"c{i}": [f"c{i + 1}"] for i in range(20)}
        found = collect_prerequisites("c0", chain, max_depth=3)
        self.assertEqual(set(found), {"c1", "c2", "c3"})

    def test_never_learned_prerequisite_blocks(self) -> None:
        out = detect_gaps(["b"], {"a": ConceptState("a", name="Vectors")}, {"b": ["a"]}, now=NOW)
        self.assertTrue(out["has_blocking_gaps"])
        self.assertEqual(out["recommended_action"], "review")
        gap = out["gaps"][0]
        self.assertEqual((gap.concept_id, gap.gap_type, gap.severity), ("a", "never_learned", "critical"))
        self.assertEqual(gap.concept_name, "Vectors")
        self.assertEqual(gap.blocked_concepts, ["b"])

    def test_partial_prerequisite(self) -> None:
        out = detect_gaps(["b"], {"a": ConceptState("a", mastery_level=0.2)}, {"b": ["a"]}, now=NOW)
        self.assertEqual(out["gaps"][0].gap_type, "missing_prerequisite")

    def test_known_prerequisite_is_fine(self) -> None:
        out = detect_gaps(["b"], {"a": ConceptState("a", mastery_level=0.5)}, {"b": ["a"]}, now=NOW)
        self.assertEqual(out["gaps"], [])
        self.assertEqual(out["recommended_action"], "continue")

    def test_shared_prerequisite_merges_blocked(self) -> None:
        out = detect_gaps(["b", "c"], {}, {"b": ["a"], "c": ["a"]}, now=NOW)
        self.assertEqual(len(out["gaps"]), 1)
        self.assertEqual(out["gaps"][0].blocked_concepts, ["b", "c"])


class FailureTests(unittest.TestCase):
    def test_trailing_failures(self) -> None:
        self.assertEqual(trailing_failures([True, False, False]), 2)
        self.assertEqual(trailing_failures([False, True]), 0)
        self.assertEqual(trailing_failures([]), 0)

    def test_three_misses_in_a_row_is_critical(self) -> None:
        out = detect_gaps(["c"], {}, recent_answers=_answers("c", [True, False, False, False]), now=NOW)
        gap = out["gaps"][0]
        self.assertEqual(gap.gap_type, "weak_foundation")
        self.assertEqual(gap.severity, "critical")
        self.assertEqual(gap.evidence["consecutive_failures"], 3)
        self.assertFalse(out["has_blocking_gaps"])
        self.assertEqual(out["recommended_action"], "practice")

    def test_high_failure_rate_without_run(self) -> None:
        out = detect_gaps(["c"], {}, recent_answers=_answers("c", [False, False, False, True]), now=NOW)
        gap = out["gaps"][0]
        self.assertEqual(gap.severity, "moderate")
        self.assertEqual(gap.evidence["failure_rate"], 0.75)

    def test_mostly_correct_is_fine(self) -> None:
        out = detect_gaps(["c"], {}, recent_answers=_answers("c", [True, False, True, True]), now=NOW)
        self.assertEqual(out["gaps"], [])


class DecayTests(unittest.TestCase):
    def test_stale_drop_from_peak(self) -> None:
        st = ConceptState("c", mastery_level=0.5, peak_mastery=0.9, last_reviewed_at=NOW - timedelta(days=10))
        gap = detect_gaps(["c"], {"c": st}, now=NOW)["gaps"][0]
        self.assertEqual((gap.gap_type, gap.severity), ("decay", "minor"))
        self.assertEqual(gap.evidence["days_since_review"], 10)

    def test_recent_review_is_not_decay(self) -> None:
        st = ConceptState("c", mastery_level=0.5, peak_mastery=0.9, last_reviewed_at=NOW - timedelta(days=3))
        self.assertEqual(detect_gaps(["c"], {"c": st}, now=NOW)["gaps"], [])

    def test_ordering_and_row(self) -> None:
        concepts = {"c": ConceptState("c", mastery_level=0.1, peak_mastery=0.9,
                                      last_reviewed_at=NOW - timedelta(days=30))}
        out = detect_gaps(["c", "d"], concepts, {"d": ["p"]}, now=NOW)
        self.assertEqual([g.severity for g in out["gaps"]], ["critical", "moderate"])
        row = out["gaps"][0].to_row("u1")
        self.assertEqual(row["user_id"], "u1")
        self.assertEqual(row["concept_id"], "p")


if __name__ == "__main__":
    unittest.main()
