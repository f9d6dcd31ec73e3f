import unittest
from datetime import date, timedelta

from gamification import (
    award_xp,
    calculate_level,
    card_review_xp,
    level_title,
    next_milestone,
    streak_status,
    update_streak,
    xp_progress,
)

TODAY = date(2026, 3, 2)


class LevelTests(unittest.TestCase):
    def test_thresholds(self) -> None:
        self.assertEqual(calculate_level(0), 1)
        self.assertEqual(calculate_level(99), 1)
        self.assertEqual(calculate_level(100), 2)
        self.assertEqual(calculate_level(250), 3)
        self.assertEqual(calculate_level(280000), 30)
        self.assertEqual(calculate_level(10**9), 30)
        self.assertEqual(calculate_level(-5), 1)

    def test_titles(self) -> None:
        self.assertEqual(level_title(1), "Novice")
        self.assertEqual(level_title(30), "Ultimate")
        self.assertEqual(level_title(99), "Ultimate")

    def test_progress(self) -> None:
        p = xp_progress(175)
        self.assertEqual((p["level"], p["current"], p["needed"], p["percent"]), (2, 75, 150, 50))
        self.assertEqual(xp_progress(300000)["percent"], 100)

    def test_award(self) -> None:
        out = award_xp(90, 20)
        self.assertEqual(out["total_xp"], 110)
        self.assertTrue(out["leveled_up"])
        self.assertEqual((out["old_level"], out["new_level"]), (1, 2))
        self.assertEqual(award_xp(90, -10)["xp_awarded"], 0)

    def test_card_xp(self) -> None:
        self.assertEqual([card_review_xp(r) for r in (1, 2, 3, 4)], [1, 1, 2, 3])


class StreakTests(unittest.TestCase):
    def test_first_activity(self) -> None:
        out = update_streak(0, 0, None, TODAY)
        self.assertEqual(out["current_streak"], 1)
        self.assertEqual(out["xp_awarded"], 5)

    def test_same_day_is_idempotent(self) -> None:
        out = update_streak(4, 9, TODAY, TODAY)
        self.assertEqual(out["current_streak"], 4)
        self.assertEqual(out["longest_streak"], 9)
        self.assertEqual(out["xp_awarded"], 0)

    def test_consecutive_day_hits_milestone(self) -> None:
        out = update_streak(6, 6, TODAY - timedelta(days=1), TODAY)
        self.assertEqual(out["current_streak"], 7)
        self.assertEqual(out["longest_streak"], 7)
        self.assertEqual(out["milestone"]["label"], "Week Warrior")
        self.assertEqual(out["xp_awarded"], 30)

    def test_missed_day_breaks(self) -> None:
        out = update_streak(12, 20, TODAY - timedelta(days=3), TODAY)
        self.assertEqual(out["current_streak"], 1)
        self.assertEqual(out["longest_streak"], 20)
        self.assertTrue(out["broken"])

    def test_gap_without_running_streak_is_not_a_break(self) -> None:
        out = update_streak(0, 6, TODAY - timedelta(days=10), TODAY)
        self.assertEqual(out["current_streak"], 1)
        self.assertEqual(out["longest_streak"], 6)
        self.assertFalse(out["broken"])

    def test_status(self) -> None:
        self.assertEqual(streak_status(3, None, TODAY)["state"], "none")
        self.assertEqual(streak_status(3, TODAY, TODAY)["state"], "active_today")
        self.assertTrue(streak_status(3, TODAY - timedelta(days=1), TODAY)["at_risk"])
        broken = streak_status(3, TODAY - timedelta(days=2), TODAY)
        self.assertTrue(broken["broken"])
        self.assertEqual(broken["streak"], 0)

    def test_next_milestone(self) -> None:
        nxt = next_milestone(5)
        self.assertEqual((nxt["days"], nxt["days_remaining"]), (7, 2))
        self.assertIsNone(next_milestone(400))


if __name__ == "__main__":
    unittest.main()
