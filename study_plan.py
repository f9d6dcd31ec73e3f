"""Day-by-day study plan leading up to an exam.

The plan splits the available days into four phases:

    learning       first 40%   new lessons, each followed by spaced reviews
    reinforcement  up to 80%   extra reviews for earlier lessons + practice tests
    exam practice  up to 95%   mock exams every third day, weak-area drills between
    final          last 5%     light review only

Everything here is pure: give it the same inputs (including ``seed``) and
you get the same plan back.
"""

import logging
import random
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

LOGGER = logging.getLogger("notesnap")

LESSON_MINUTES = 15
NEW_THRESHOLD = 0.1
WEAK_THRESHOLD = 0.6
COMPLETED_LESSON_MASTERY = 0.3
REVIEW_INTERVALS = (1, 3, 7, 14)

PHASE_LEARNING_END = 0.4
PHASE_REINFORCE_END = 0.8
PHASE_EXAM_END = 0.95

TASK_TYPES = ("learn_lesson", "review_lesson", "review_weak", "practice_test", "mock_exam", "light_review")
TASK_STATUSES = ("pending", "completed", "skipped")


@dataclass(frozen=True)
class PlanLesson:
    course_id: str
    lesson_index: int
    lesson_title: str
    course_title: str = ""

    @property
    def key(self) -> str:
        return lesson_key(self.course_id, self.lesson_index)


@dataclass
class PlanTask:
    scheduled_date: date
    task_type: str
    description: str
    estimated_minutes: int
    sort_order: int = 0
    course_id: Optional[str] = None
    lesson_index: Optional[int] = None
    lesson_title: Optional[str] = None
    status: str = "pending"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_row(self) -> Dict[str, Any]:
        return {
            "scheduled_date": self.scheduled_date,
            "task_type": self.task_type,
            "course_id": self.course_id,
            "lesson_index": self.lesson_index,
            "lesson_title": self.lesson_title,
            "description": self.description,
            "estimated_minutes": int(self.estimated_minutes),
            "status": self.status,
            "sort_order": int(self.sort_order),
            "metadata": dict(self.metadata),
        }


def lesson_key(course_id: str, lesson_index: int) -> str:
    return f"{course_id}:{int(lesson_index)}"


def available_days(start_date: date, exam_date: date,
                   skip_dates: Iterable[date] = (), skip_weekdays: Iterable[int] = ()) -> List[date]:
    skip_d = set(skip_dates or ())
    skip_w = set(int(w) for w in (skip_weekdays or ()))
    out: List[date] = []
    cur = start_date + timedelta(days=1)
    while cur < exam_date:
        if cur not in skip_d and cur.weekday() not in skip_w:
            out.append(cur)
        cur += timedelta(days=1)
    return out


def _interleave_by_course(lessons: List[PlanLesson]) -> List[PlanLesson]:
    by_course: "OrderedDict[str, List[PlanLesson]]" = OrderedDict()
    for l in lessons:
        by_course.setdefault(l.course_id, []).append(l)
    if len(by_course) <= 1:
        return list(lessons)
    out: List[PlanLesson] = []
    longest = max(len(v) for v in by_course.values())
    for i in range(longest):
        for group in by_course.values():
            if i < len(group):
                out.append(group[i])
    return out


def generate_study_plan(
    exam_date: date,
    daily_minutes: int,
    lessons: List[PlanLesson],
    mastery: Optional[Dict[str, float]] = None,
    skipped_lessons: Iterable[Tuple[str, int]] = (),
    skip_dates: Iterable[date] = (),
    skip_weekdays: Iterable[int] = (),
    start_date: Optional[date] = None,
    seed: Optional[int] = None,
) -> List[PlanTask]:
    daily_minutes = int(daily_minutes)
    if daily_minutes <= 0:
        raise ValueError("daily_minutes must be positive")

    mastery = dict(mastery or {})
    start_date = start_date or date.today()
    skipped: Set[str] = {lesson_key(c, i) for c, i in skipped_lessons}
    active = [l for l in lessons if l.key not in skipped]

    new_lessons: List[PlanLesson] = []
    learned: List[PlanLesson] = []
    weak: List[PlanLesson] = []
    for l in active:
        m = mastery.get(l.key)
        if m is None or m < NEW_THRESHOLD:
            new_lessons.append(l)
        else:
            learned.append(l)
            if m < WEAK_THRESHOLD:
                weak.append(l)
    weak_keys = {l.key for l in weak}

    days = available_days(start_date, exam_date, skip_dates, skip_weekdays)
    if not days:
        return []

    total = len(days)
    max_new_per_day = max(1, daily_minutes // LESSON_MINUTES)
    p1 = int(total * PHASE_LEARNING_END)
    p2 = int(total * PHASE_REINFORCE_END)
    p3 = int(total * PHASE_EXAM_END)
    rng = random.Random(seed)

    tasks: List[PlanTask] = []
    learn_day: "OrderedDict[str, Tuple[PlanLesson, int]]" = OrderedDict()

    def _learn(lesson: PlanLesson, day_idx: int, order: int) -> None:
        learn_day[lesson.key] = (lesson, day_idx)
        tasks.append(PlanTask(
            scheduled_date=days[day_idx],
            task_type="learn_lesson",
            course_id=lesson.course_id,
            lesson_index=lesson.lesson_index,
            lesson_title=lesson.lesson_title,
            description=f"Learn: {lesson.lesson_title} ({lesson.course_title})",
            estimated_minutes=LESSON_MINUTES,
            sort_order=order,
            metadata={"courseTitle": lesson.course_title},
        ))

    # Phase 1: new lessons, as many per day as time allows
    queue = _interleave_by_course(new_lessons)
    qi = 0
    for day_idx in range(p1):
        if qi >= len(queue):
            break
        minutes = 0
        order = 0
        while qi < len(queue) and minutes + LESSON_MINUTES <= daily_minutes and order < max_new_per_day:
            _learn(queue[qi], day_idx, order)
            minutes += LESSON_MINUTES
            order += 1
            qi += 1

    # Overflow: one lesson per day into phase 2
    for day_idx in range(p1, p2):
        if qi >= len(queue):
            break
        _learn(queue[qi], day_idx, 0)
        qi += 1

    if qi < len(queue):
        LOGGER.warning(
            "Study plan could not fit every new lesson",
            extra={"ctx": {"component": "study_plan", "unscheduled": len(queue) - qi, "days": total}},
        )

    # Spaced reviews after each learn day
    for key, (lesson, day_idx) in learn_day.items():
        is_weak = key in weak_keys
        for interval in REVIEW_INTERVALS:
            review_idx = day_idx + interval
            if review_idx >= total:
                continue
            tasks.append(PlanTask(
                scheduled_date=days[review_idx],
                task_type="review_lesson",
                course_id=lesson.course_id,
                lesson_index=lesson.lesson_index,
                lesson_title=lesson.lesson_title,
                description=f"Review: {lesson.lesson_title}",
                estimated_minutes=15 if is_weak else 10,
                sort_order=10,
                metadata={"reviewInterval": interval, "isWeak": is_weak},
            ))

    # Phase 2: reinforce lessons learned before the plan started
    span = p2 - p1
    for lesson in learned:
        m = mastery.get(lesson.key, 0.0)
        is_weak = m < WEAK_THRESHOLD
        # no reinforcement window: one review on the phase 1 boundary
        repeats = (3 if is_weak else 1) if span > 0 else 1
        for _ in range(repeats):
            day_idx = p1 + rng.randrange(span) if span > 0 else p1
            if day_idx >= total:
                continue
            tasks.append(PlanTask(
                scheduled_date=days[day_idx],
                task_type="review_weak" if is_weak else "review_lesson",
                course_id=lesson.course_id,
                lesson_index=lesson.lesson_index,
                lesson_title=lesson.lesson_title,
                description=(f"Strengthen weak area: {lesson.lesson_title}" if is_weak
                             else f"Review: {lesson.lesson_title}"),
                estimated_minutes=20 if is_weak else 10,
                sort_order=5 if is_weak else 10,
                metadata={"mastery": m, "isWeak": is_weak},
            ))

    practice_tests = max(1, span // 4)
    for i in range(practice_tests):
        day_idx = p1 + ((i + 1) * span) // (practice_tests + 1)
        if day_idx < total:
            tasks.append(PlanTask(
                scheduled_date=days[day_idx],
                task_type="practice_test",
                description="Practice test - mixed questions",
                estimated_minutes=min(30, daily_minutes),
                sort_order=20,
            ))

    # Phase 3: mock exams with weak-area drills in between
    for day_idx in range(p2, min(p3, total)):
        if (day_idx - p2) % 3 == 0:
            tasks.append(PlanTask(
                scheduled_date=days[day_idx],
                task_type="mock_exam",
                description="Mock exam - full simulation",
                estimated_minutes=min(45, daily_minutes),
                sort_order=0,
            ))
            continue
        for wl in weak[:2]:
            tasks.append(PlanTask(
                scheduled_date=days[day_idx],
                task_type="review_weak",
                course_id=wl.course_id,
                lesson_index=wl.lesson_index,
                lesson_title=wl.lesson_title,
                description=f"Drill weak area: {wl.lesson_title}",
                estimated_minutes=LESSON_MINUTES,
                sort_order=5,
            ))

    # Phase 4: taper
    for day_idx in range(p3, total):
        tasks.append(PlanTask(
            scheduled_date=days[day_idx],
            task_type="light_review",
            description="Light review - skim key concepts and formulas",
            estimated_minutes=min(20, daily_minutes),
            sort_order=0,
            metadata={"phase": "final"},
        ))

    tasks.sort(key=lambda t: (t.scheduled_date, t.sort_order))
    LOGGER.info(
        "Study plan generated",
        extra={"ctx": {"component": "study_plan", "days": total, "tasks": len(tasks), "new": len(new_lessons)}},
    )
    return tasks


def recalculate_plan(
    completed_tasks: List[PlanTask],
    exam_date: date,
    daily_minutes: int,
    lessons: List[PlanLesson],
    mastery: Optional[Dict[str, float]] = None,
    **kwargs: Any,
) -> List[PlanTask]:
    """Rebuild the remaining plan after some tasks were done.

    Lessons whose learn task was completed count as at least partly known,
    so they move out of the new-lesson queue and into reinforcement.
    """
    updated = dict(mastery or {})
    for t in completed_tasks:
        if t.task_type != "learn_lesson" or t.status != "completed" or t.course_id is None:
            continue
        key = lesson_key(t.course_id, t.lesson_index or 0)
        updated[key] = max(updated.get(key, 0.0), COMPLETED_LESSON_MASTERY)
    return generate_study_plan(exam_date, daily_minutes, lessons, mastery=updated, **kwargs)


def plan_summary(tasks: List[PlanTask]) -> Dict[str, Any]:
    by_type = Counter(t.task_type for t in tasks)
    minutes_by_day: Dict[date, int] = {}
    for t in tasks:
        minutes_by_day[t.scheduled_date] = minutes_by_day.get(t.scheduled_date, 0) + int(t.estimated_minutes)
    return {
        "total_tasks": len(tasks),
        "by_type": dict(by_type),
        "total_minutes": sum(minutes_by_day.values()),
        "minutes_by_day": minutes_by_day,
        "days": len(minutes_by_day),
    }
