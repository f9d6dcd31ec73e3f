"""Progressive homework hints.

Hints escalate from a conceptual nudge to a full solution. Levels 1-4 make
the learner do the work; level 5 is only given when they ask for it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from utils.json_utils import safe_parse_json

HINT_LEVELS: Dict[int, Dict[str, str]] = {
    1: {
        "name": "Conceptual Nudge",
        "description": "Point to the relevant concept or formula without saying how to use it",
        "prompt": (
            "Write a LEVEL 1 hint (Conceptual Nudge).\n"
            "- Point the student toward the relevant concept, formula or principle\n"
            "- Ask something like \"Which formula applies here?\"\n"
            "- Give no steps or procedures\n"
            "- 1-2 sentences"
        ),
    },
    2: {
        "name": "Strategic Guide",
        "description": "Suggest the first step without doing it",
        "prompt": (
            "Write a LEVEL 2 hint (Strategic Guide).\n"
            "- Suggest what the first step should be\n"
            "- Ask them to identify the variables, set up the equation or spot the pattern\n"
            "- Do not perform the step for them\n"
            "- 2-3 sentences"
        ),
    },
    3: {
        "name": "Worked Example",
        "description": "Show a similar problem being solved",
        "prompt": (
            "Write a LEVEL 3 hint (Worked Example).\n"
            "- Invent a SIMILAR but DIFFERENT, simpler problem\n"
            "- Solve that problem step by step\n"
            "- Finish with: \"Now try applying the same approach to your problem\"\n"
            "- 4-6 sentences with clear steps"
        ),
    },
    4: {
        "name": "Step-by-Step Guide",
        "description": "Guide through their specific problem step by step",
        "prompt": (
            "Write a LEVEL 4 hint (Step-by-Step Guide).\n"
            "- Walk through the FIRST 1-2 steps of their actual problem\n"
            "- Ask them to finish each step before moving on\n"
            "- They still do the arithmetic themselves\n"
            "- 3-4 sentences"
        ),
    },
    5: {
        "name": "Show Answer",
        "description": "Reveal the complete solution (student chose this)",
        "prompt": (
            "The student chose to see the answer.\n"
            "- Give the complete solution with every step\n"
            "- Explain why each step works\n"
            "- Add a gentle note that solving it themselves next time helps more\n"
            "- Keep it clear and educational"
        ),
    },
}

HINT_ICONS = {1: "💡", 2: "🧭", 3: "📝", 4: "🤝", 5: "✅"}

DEFAULT_HINTS = {
    1: "Think about what concept or formula might apply here. What does this problem remind you of?",
    2: "Let's start with the basics. What's the first thing you need to identify or set up?",
    3: "Let me show you a similar problem to help illustrate the approach.",
    4: "Let's work through this together, step by step.",
    5: "Here's the complete solution with explanations.",
}

QUICK_REQUEST_SECONDS = 30
MANY_HINTS = 3
PREVIOUS_HINT_PREVIEW = 100


def _check_level(level: int) -> int:
    level = int(level)
    if level not in HINT_LEVELS:
        raise ValueError(f"Hint level must be 1-5, got {level}")
    return level


def hint_level_info(level: int) -> Dict[str, str]:
    level = _check_level(level)
    return {
        "name": HINT_LEVELS[level]["name"],
        "description": HINT_LEVELS[level]["description"],
        "icon": HINT_ICONS[level],
    }


def recommended_hint_level(hints_used: int, progress_percent: float,
                           recent_understanding: bool = False) -> int:
    if progress_percent >= 70:
        return 1
    if recent_understanding:
        return min(2, int(hints_used) + 1)
    return min(4, int(hints_used) + 1)


def should_encourage_attempt(hints_used: int, seconds_since_last_hint: float) -> Tuple[bool, str]:
    if seconds_since_last_hint < QUICK_REQUEST_SECONDS and hints_used > 0:
        return True, ("Take a moment to think about the last hint. Sometimes the answer comes "
                      "when we give our brain a little time to process!")
    if hints_used >= MANY_HINTS:
        return True, ("You've got a lot of guidance now. Before asking for more, try working "
                      "through what you know. You might surprise yourself!")
    return False, ""


def default_hint(level: int) -> Dict[str, Any]:
    level = _check_level(level)
    return {
        "hint_level": level,
        "content": DEFAULT_HINTS[level],
        "is_show_answer": level == 5,
        "related_concept": None,
        "worked_example": None,
    }


def build_hint_prompt(problem: str, level: int, previous_hints: Optional[List[Dict[str, Any]]] = None,
                      topic: str = "", formulas: Optional[List[str]] = None) -> str:
    level = _check_level(level)
    parts = [f"HOMEWORK QUESTION:\n{problem.strip()}"]
    if topic:
        parts.append(f"TOPIC: {topic}")
    if formulas:
        parts.append("RELEVANT FORMULAS: " + ", ".join(formulas))
    if previous_hints:
        lines = ["PREVIOUS HINTS GIVEN:"]
        for h in previous_hints:
            text = str(h.get("content", ""))[:PREVIOUS_HINT_PREVIEW]
            lines.append(f"- Level {h.get('hint_level')}: {text}...")
        parts.append("\n".join(lines))
    parts.append(HINT_LEVELS[level]["prompt"])
    parts.append(
        'Return JSON: {"content": "the hint", "related_concept": "main concept", '
        '"worked_example": null or "the worked example (level 3 only)"}'
    )
    return "\n\n".join(parts)


def parse_hint_reply(raw: str, level: int) -> Dict[str, Any]:
    """Turn a model reply into a hint; falls back to the raw text, then the default."""
    level = _check_level(level)
    text = (raw or "").strip()
    if not text:
        return default_hint(level)
    data = safe_parse_json(text)
    if isinstance(data, dict) and data.get("content"):
        return {
            "hint_level": level,
            "content": str(data["content"]),
            "is_show_answer": level == 5,
            "related_concept": data.get("related_concept") or data.get("relatedConcept"),
            "worked_example": (data.get("worked_example") or data.get("workedExample")) if level == 3 else None,
        }
    return {
        "hint_level": level,
        "content": text,
        "is_show_answer": level == 5,
        "related_concept": None,
        "worked_example": None,
    }


@dataclass
class HomeworkSession:
    problem: str
    user_id: Optional[str] = None
    id: Optional[str] = None
    topic: str = ""
    status: str = "active"
    hints_given: List[Dict[str, Any]] = field(default_factory=list)
    hint_level_history: List[int] = field(default_factory=list)
    last_hint_at: Optional[datetime] = None

    @property
    def hints_used(self) -> int:
        return len(self.hints_given)

    @property
    def used_show_answer(self) -> bool:
        return 5 in self.hint_level_history

    def record_hint(self, hint: Dict[str, Any], now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        self.hints_given.append({**hint, "given_at": now.isoformat()})
        self.hint_level_history.append(int(hint["hint_level"]))
        self.last_hint_at = now

    def seconds_since_last_hint(self, now: Optional[datetime] = None) -> float:
        if self.last_hint_at is None:
            return float("inf")
        now = now or datetime.now(timezone.utc)
        return (now - self.last_hint_at).total_seconds()

    def to_row(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "problem": self.problem,
            "topic": self.topic,
            "status": self.status,
            "hints_given": list(self.hints_given),
            "hint_level_history": list(self.hint_level_history),
            "used_show_answer": self.used_show_answer,
        }
