"""Badges for streaks, learning volume and mastery.

Each achievement watches one learner statistic and unlocks once that
statistic reaches its threshold. Hidden achievements are left out of every
listing until they are earned.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set

CATEGORIES = ("streak", "learning", "mastery")
CATEGORY_LABELS = {"streak": "Streak", "learning": "Learning", "mastery": "Mastery"}


@dataclass(frozen=True)
class Achievement:
    code: str
    name: str
    description: str
    category: str
    icon: str
    xp_reward: int
    threshold: int
    metric: str
    hidden: bool = False


# (code, name, description, category, icon, xp, threshold, metric, hidden)
_DEFINITIONS = [
    ("streak_3", "Getting Started", "Maintain a 3-day learning streak", "streak", "🔥", 25, 3, "streak", False),
    ("streak_7", "Week Warrior", "Maintain a 7-day learning streak", "streak", "⚡", 50, 7, "streak", False),
    ("streak_14", "Fortnight Fighter", "Maintain a 14-day learning streak", "streak", "💪", 100, 14, "streak", False),
    ("streak_30", "Monthly Master", "Maintain a 30-day learning streak", "streak", "🏆", 200, 30, "streak", False),
    ("streak_60", "Two Month Titan", "Maintain a 60-day learning streak", "streak", "👑", 400, 60, "streak", False),
    ("streak_90", "Quarter Champion", "Maintain a 90-day learning streak", "streak", "💎", 600, 90, "streak", False),
    ("streak_180", "Half Year Hero", "Maintain a 180-day learning streak", "streak", "🌟", 1000, 180, "streak", False),
    ("streak_365", "Year of Learning", "Maintain a 365-day learning streak", "streak", "🎓", 2000, 365, "streak", True),

    ("first_lesson", "First Steps", "Complete your first lesson", "learning", "📚", 15, 1, "lessons_completed", False),
    ("lessons_10", "Eager Learner", "Complete 10 lessons", "learning", "📖", 50, 10, "lessons_completed", False),
    ("lessons_50", "Dedicated Student", "Complete 50 lessons", "learning", "🎯", 150, 50, "lessons_completed", False),
    ("lessons_100", "Century Scholar", "Complete 100 lessons", "learning", "💯", 300, 100, "lessons_completed", False),
    ("first_course", "Course Conqueror", "Complete your first course", "learning", "🎉", 50, 1, "courses_completed", False),
    ("courses_5", "Knowledge Seeker", "Complete 5 courses", "learning", "🔍", 200, 5, "courses_completed", False),
    ("courses_10", "Course Master", "Complete 10 courses", "learning", "🏅", 500, 10, "courses_completed", False),
    ("cards_100", "Card Collector", "Review 100 flashcards", "learning", "🃏", 50, 100, "cards_reviewed", False),
    ("cards_500", "Card Enthusiast", "Review 500 flashcards", "learning", "🎴", 150, 500, "cards_reviewed", False),
    ("cards_1000", "Card Champion", "Review 1,000 flashcards", "learning", "🀄", 300, 1000, "cards_reviewed", False),
    ("cards_5000", "Card Legend", "Review 5,000 flashcards", "learning", "🌠", 1000, 5000, "cards_reviewed", True),

    ("perfect_1", "Perfect Start", "Complete a lesson with 100% accuracy", "mastery", "✨", 20, 1, "perfect_lessons", False),
    ("perfect_5", "Precision Learner", "Complete 5 lessons with 100% accuracy", "mastery", "🎯", 75, 5, "perfect_lessons", False),
    ("perfect_10", "Flawless Mind", "Complete 10 lessons with 100% accuracy", "mastery", "💫", 150, 10, "perfect_lessons", False),
    ("perfect_25", "Perfectionist", "Complete 25 lessons with 100% accuracy", "mastery", "🌟", 400, 25, "perfect_lessons", False),
    ("level_5", "Rising Star", "Reach level 5", "mastery", "⭐", 100, 5, "level", False),
    ("level_10", "Shining Bright", "Reach level 10", "mastery", "🌟", 250, 10, "level", False),
    ("level_15", "Enlightened", "Reach level 15", "mastery", "💫", 500, 15, "level", False),
    ("level_20", "Legendary", "Reach level 20", "mastery", "👑", 1000, 20, "level", False),
    ("level_25", "Mythical", "Reach level 25", "mastery", "💎", 2000, 25, "level", True),
    ("level_30", "Ultimate", "Reach the maximum level", "mastery", "🎓", 5000, 30, "level", True),
    ("mastery_1", "First Mastery", "Achieve full mastery on a course", "mastery", "🏆", 100, 1, "courses_mastered", False),
    ("mastery_5", "Multi-Master", "Achieve full mastery on 5 courses", "mastery", "🏅", 500, 5, "courses_mastered", False),
]

ACHIEVEMENTS: List[Achievement] = [Achievement(*row) for row in _DEFINITIONS]
ACHIEVEMENTS_BY_CODE: Dict[str, Achievement] = {a.code: a for a in ACHIEVEMENTS}


def get_achievement(code: str) -> Optional[Achievement]:
    return ACHIEVEMENTS_BY_CODE.get(code)


def metric_value(achievement: Achievement, stats: Dict[str, Any]) -> int:
    """Current value of the statistic an achievement watches.

    Streak badges count the best of the current and the longest streak, so
    a streak that has since ended still counts.
    """
    if achievement.metric == "streak":
        return max(int(stats.get("current_streak") or 0), int(stats.get("longest_streak") or 0))
    return int(stats.get(achievement.metric) or 0)


def check_achievements(stats: Dict[str, Any], earned_codes: Iterable[str]) -> List[Achievement]:
    """Achievements the stats qualify for that are not yet earned."""
    earned = set(earned_codes)
    return [a for a in ACHIEVEMENTS
            if a.code not in earned and metric_value(a, stats) >= a.threshold]


def achievement_progress(achievement: Achievement, stats: Dict[str, Any]) -> Dict[str, Any]:
    current = metric_value(achievement, stats)
    return {
        "achievement": achievement,
        "current": current,
        "target": achievement.threshold,
        "percent": min(100, int(round(current / achievement.threshold * 100))),
    }


def visible_achievements(earned_codes: Iterable[str]) -> List[Achievement]:
    earned = set(earned_codes)
    return [a for a in ACHIEVEMENTS if not a.hidden or a.code in earned]


def all_progress(stats: Dict[str, Any], earned_codes: Iterable[str],
                 include_earned: bool = True) -> List[Dict[str, Any]]:
    earned = set(earned_codes)
    return [achievement_progress(a, stats) for a in visible_achievements(earned)
            if include_earned or a.code not in earned]


def next_achievements(stats: Dict[str, Any], earned_codes: Iterable[str], limit: int = 3) -> List[Dict[str, Any]]:
    """Closest unearned achievements, nearest first."""
    pending = [p for p in all_progress(stats, earned_codes, include_earned=False) if p["percent"] < 100]
    pending.sort(key=lambda p: (-p["percent"], p["target"]))
    return pending[:limit]


def achievement_summary(earned_codes: Iterable[str]) -> Dict[str, Any]:
    earned: Set[str] = {c for c in earned_codes if c in ACHIEVEMENTS_BY_CODE}
    visible = visible_achievements(earned)
    by_category = {c: {"total": 0, "earned": 0} for c in CATEGORIES}
    earned_xp = 0
    for a in visible:
        by_category[a.category]["total"] += 1
        if a.code in earned:
            by_category[a.category]["earned"] += 1
            earned_xp += a.xp_reward
    return {
        "total": len(visible),
        "earned": len(earned),
        "total_xp": sum(a.xp_reward for a in ACHIEVEMENTS),
        "earned_xp": earned_xp,
        "by_category": by_category,
    }


def unlock_message(achievement: Achievement) -> str:
    return f"{achievement.icon} Achievement Unlocked: {achievement.name}! +{achievement.xp_reward} XP"
