import unittest

from achievements import (
    ACHIEVEMENTS,
    achievement_progress,
    achievement_summary,
    all_progress,
    check_achievements,
    get_achievement,
    next_achievements,
    unlock_message,
)

STATS = {
    "current_streak": 2,
    "longest_streak": 8,
    "lessons_completed": 12,
    "courses_completed": 0,
    "cards_reviewed": 90,
    "perfect_lessons": 1,
    "level": 4,
    "courses_mastered": 0,
}


class CatalogueTests(unittest.TestCase):
    def test_codes_unique(self) -> None:
        codes = [a.code for a in ACHIEVEMENTS]
        self.assertEqual(len(codes), len(set(codes)))
        self.assertEqual(len(codes), 31)

    def test_hidden(self) -> None:
        hidden = {a.code for a in ACHIEVEMENTS if a.hidden}
        self.assertEqual(hidden, {"streak_365", "cards_5000", "level_25", "level_30"})


class CheckTests(unittest.TestCase):
    def test_newly_earned(self) -> None:
        got = [a.code for a in check_achievements(STATS, {"streak_3"})]
        self.assertEqual(got, ["streak_7", "first_lesson", "lessons_10", "perfect_1"])

    def test_longest_streak_counts(self) -> None:
        codes = {a.code for a in check_achievements({"current_streak": 0, "longest_streak": 30}, set())}
        self.assertTrue({"streak_3", "streak_7", "streak_14", "streak_30"} <= codes)
        self.assertNotIn("streak_60", codes)

    def test_nothing_twice(self) -> None:
        earned = {a.code for a in check_achievements(STATS, set())}
        self.assertEqual(check_achievements(STATS, earned), [])


class ProgressTests(unittest.TestCase):
    def test_percent_capped(self) -> None:
        p = achievement_progress(get_achievement("lessons_10"), STATS)
        self.assertEqual((p["current"], p["target"], p["percent"]), (12, 10, 100))
        self.assertEqual(achievement_progress(get_achievement("streak_14"), STATS)["percent"], 57)

    def test_hidden_left_out_until_earned(self) -> None:
        codes = {p["achievement"].code for p in all_progress(STATS, set())}
        self.assertNotIn("level_25", codes)
        codes = {p["achievement"].code for p in all_progress(STATS, {"level_25"})}
        self.assertIn("level_25", codes)

    def test_next_closest_first(self) -> None:
        earned = {"streak_3", "streak_7", "first_lesson", "lessons_10", "perfect_1"}
        got = [p["achievement"].code for p in next_achievements(STATS, earned)]
        self.assertEqual(got, ["cards_100", "level_5", "streak_14"])

    def test_ties_prefer_lower_threshold(self) -> None:
        stats = {"longest_streak": 8, "level": 4}
        earned = {a.code for a in ACHIEVEMENTS} - {"streak_30", "level_15"}
        got = [p["achievement"].code for p in next_achievements(stats, earned)]
        self.assertEqual(got, ["level_15", "streak_30"])


class SummaryTests(unittest.TestCase):
    def test_counts_by_category(self) -> None:
        s = achievement_summary({"streak_365", "first_lesson", "not_a_code"})
        self.assertEqual(s["total"], 28)
        self.assertEqual(s["earned"], 2)
        self.assertEqual(s["earned_xp"], 2015)
        self.assertEqual(s["by_category"]["streak"], {"total": 8, "earned": 1})
        self.assertEqual(s["by_category"]["learning"], {"total": 10, "earned": 1})
        self.assertEqual(s["by_category"]["mastery"], {"total": 10, "earned": 0})

    def test_message(self) -> None:
        self.assertEqual(unlock_message(get_achievement("streak_7")),
                         "⚡ Achievement Unlocked: Week Warrior! +50 XP")


if __name__ == "__main__":
    unittest.main()
