from datetime import date, timedelta
from typing import Any, Dict, Optional

XP_REWARDS = {
    "lesson_complete": 10,
    "lesson_perfect": 5,
    "card_reviewed": 1,
    "card_easy": 2,
    "card_good": 1,
    "card_hard": 0,
    "streak_maintained": 5,
    "streak_week": 25,
    "streak_month": 100,
    "course_created": 20,
    "practice_complete": 5,
    "practice_perfect": 10,
    "first_lesson": 15,
    "first_course": 25,
    "mastery_achieved": 50,
    "exam_complete": 15,
    "exam_perfect": 25,
}

LEVEL_THRESHOLDS = [
    0, 100, 250, 500, 1000, 1750, 2750, 4000, 5500, 7500,
    10000, 13000, 16500, 20500, 25000, 30000, 36000, 43000, 51000, 60000,
    70000, 82000, 96000, 112000, 130000, 150000, 175000, 205000, 240000, 280000,
]

LEVEL_TITLES = [
    "Novice", "Beginner", "Apprentice", "Student", "Scholar",
    "Learner", "Dedicated", "Committed", "Achiever", "Expert",
    "Virtuoso", "Master", "Grandmaster", "Sage", "Enlightened",
    "Brilliant", "Genius", "Prodigy", "Luminary", "Legend",
    "Champion", "Titan", "Immortal", "Transcendent", "Ascended",
    "Divine", "Celestial", "Eternal", "Supreme", "Ultimate",
]

MAX_LEVEL = len(LEVEL_THRESHOLDS)

STREAK_MILESTONES = [
    (3, 10, "3 Day Streak"),
    (7, 25, "Week Warrior"),
    (14, 50, "Two Weeks Strong"),
    (30, 100, "Monthly Master"),
    (60, 200, "Two Month Titan"),
    (90, 300, "Quarter Champion"),
    (180, 500, "Half Year Hero"),
    (365, 1000, "Year of Learning"),
]


def calculate_level(xp: int) -> int:
    """Levels start at 1."""
    xp = max(0, int(xp))
    level = 1
    for i, threshold in enumerate(LEVEL_THRESHOLDS):
        if xp >= threshold:
            level = i + 1
        else:
            break
    return level


def level_title(level: int) -> str:
    level = max(1, min(MAX_LEVEL, int(level)))
    return LEVEL_TITLES[level - 1]


def xp_progress(xp: int) -> Dict[str, Any]:
    xp = max(0, int(xp))
    level = calculate_level(xp)
    if level >= MAX_LEVEL:
        return {"level": level, "title": level_title(level), "current": 0, "needed": 0, "percent": 100}
    floor_xp = LEVEL_THRESHOLDS[level - 1]
    needed = LEVEL_THRESHOLDS[level] - floor_xp
    current = xp - floor_xp
    return {
        "level": level,
        "title": level_title(level),
        "current": current,
        "needed": needed,
        "percent": int(round(current / needed * 100)),
    }


def card_review_xp(rating: int) -> int:
    bonus = {2: "card_hard", 3: "card_good", 4: "card_easy"}.get(int(rating))
    return XP_REWARDS["card_reviewed"] + (XP_REWARDS[bonus] if bonus else 0)


def award_xp(total_xp: int, amount: int) -> Dict[str, Any]:
    old_total = max(0, int(total_xp))
    new_total = old_total + max(0, int(amount))
    old_level = calculate_level(old_total)
    new_level = calculate_level(new_total)
    return {
        "total_xp": new_total,
        "xp_awarded": new_total - old_total,
        "old_level": old_level,
        "new_level": new_level,
        "leveled_up": new_level > old_level,
    }


def milestone_for(streak: int) -> Optional[Dict[str, Any]]:
    for days, bonus, label in STREAK_MILESTONES:
        if days == streak:
            return {"days": days, "bonus_xp": bonus, "label": label}
    return None


def next_milestone(streak: int) -> Optional[Dict[str, Any]]:
    for days, bonus, label in STREAK_MILESTONES:
        if days > streak:
            return {"days": days, "bonus_xp": bonus, "label": label, "days_remaining": days - streak}
    return None


def update_streak(current_streak: int, longest_streak: int,
                  last_activity_date: Optional[date], today: Optional[date] = None) -> Dict[str, Any]:
    """Advance a learner's daily streak for activity on ``today``.

    ``broken`` is only set when a gap ends a streak that was still counting
    (``current_streak > 0``); a first activity after a long gap with nothing
    to lose restarts at 1 without reporting a break.
    """
    today = today or date.today()
    current_streak = max(0, int(current_streak or 0))
    longest_streak = max(0, int(longest_streak or 0))
    base_xp = XP_REWARDS["streak_maintained"]

    milestone = None
    broken = False
    if last_activity_date is None:
        streak, xp = 1, base_xp
    elif last_activity_date == today:
        streak, xp = current_streak, 0
    elif last_activity_date == today - timedelta(days=1):
        streak = current_streak + 1
        milestone = milestone_for(streak)
        xp = base_xp + (milestone["bonus_xp"] if milestone else 0)
    else:
        streak, xp = 1, base_xp
        broken = current_streak > 0

    return {
        "current_streak": streak,
        "longest_streak": max(longest_streak, streak),
        "last_activity_date": today,
        "xp_awarded": xp,
        "milestone": milestone,
        "broken": broken,
    }


def streak_status(current_streak: int, last_activity_date: Optional[date],
                  today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    if last_activity_date is None:
        return {"state": "none", "streak": 0, "active_today": False, "at_risk": False, "broken": False}
    gap = (today - last_activity_date).days
    active = gap <= 0
    at_risk = gap == 1
    broken = gap > 1
    return {
        "state": "active_today" if active else ("at_risk" if at_risk else "broken"),
        "streak": 0 if broken else int(current_streak or 0),
        "active_today": active,
        "at_risk": at_risk,
        "broken": broken,
    }
