"""Concept extraction: turn a generated course into a small knowledge graph.

The model proposes atomic concepts, their prerequisites and where each lesson
step teaches, requires or reinforces them. This module builds the prompt
context and cleans the reply into rows the database can store as is.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

RELATIONSHIPS = ("teaches", "requires", "reinforces")
MIN_CONCEPTS = 5
MAX_CONCEPTS = 15
STEP_PREVIEW_CHARS = 300
DEFAULT_DIFFICULTY = 3

SUBJECT_KEYWORDS: Dict[str, List[str]] = {
    "biology": ["cell", "dna", "protein", "organism", "evolution", "genetics", "photosynthesis", "mitosis"],
    "chemistry": ["atom", "molecule", "reaction", "element", "compound", "bond", "acid", "base"],
    "physics": ["force", "energy", "motion", "wave", "electricity", "momentum", "newton", "gravity"],
    "mathematics": ["equation", "function", "derivative", "integral", "algebra", "calculus", "geometry"],
    "computer-science": ["algorithm", "program", "code", "data", "function", "variable", "loop"],
    "economics": ["market", "supply", "demand", "price", "economy", "gdp", "inflation"],
    "history": ["war", "century", "empire", "revolution", "civilization", "treaty"],
    "psychology": ["behavior", "cognitive", "mental", "brain", "perception", "memory"],
}

TOPIC_KEYWORDS: Dict[str, Dict[str, List[str]]] = {
    "biology": {
        "cell-biology": ["cell", "membrane", "organelle", "mitochondria", "nucleus"],
        "genetics": ["dna", "gene", "chromosome", "heredity", "mutation"],
        "ecology": ["ecosystem", "food chain", "habitat", "biodiversity"],
        "human-physiology": ["heart", "blood", "nervous", "digestive", "respiratory"],
    },
    "mathematics": {
        "calculus": ["derivative", "integral", "limit", "differentiation"],
        "algebra": ["equation", "polynomial", "factor", "quadratic"],
        "geometry": ["triangle", "circle", "angle", "area", "volume"],
        "statistics": ["probability", "mean", "deviation", "distribution"],
    },
    "physics": {
        "mechanics": ["force", "motion", "velocity", "acceleration", "momentum"],
        "thermodynamics": ["heat", "temperature", "entropy", "energy transfer"],
        "electricity-magnetism": ["current", "voltage", "resistance", "magnetic"],
        "waves": ["wave", "frequency", "amplitude", "sound", "light"],
    },
}


@dataclass
class ExtractedConcept:
    id: str
    name: str
    description: str
    subject: str
    topic: str
    difficulty: int
    prerequisite_ids: List[str] = field(default_factory=list)


@dataclass
class ConceptMapping:
    concept_id: str
    lesson_index: int
    step_index: Optional[int]
    relationship: str


@dataclass
class ConceptExtraction:
    subject: str
    topic: str
    concepts: List[ExtractedConcept] = field(default_factory=list)
    mappings: List[ConceptMapping] = field(default_factory=list)

    def edges(self) -> List[Tuple[str, str]]:
        return [(c.id, p) for c in self.concepts for p in c.prerequisite_ids]


def _course_text(title: str, lessons: Sequence[Dict[str, Any]]) -> str:
    return f"{title} " + " ".join(str(l.get("title", "") or "") for l in lessons)


def _best_match(text: str, table: Dict[str, List[str]]) -> str:
    text = text.lower()
    best, best_score = "general", 0
    for name, keywords in table.items():
        score = sum(1 for kw in keywords if kw in text)
        # ties keep the earlier entry
        if score > best_score:
            best, best_score = name, score
    return best


def detect_subject(title: str, lessons: Sequence[Dict[str, Any]]) -> str:
    return _best_match(_course_text(title, lessons), SUBJECT_KEYWORDS)


def detect_topic(title: str, lessons: Sequence[Dict[str, Any]], subject: str) -> str:
    return _best_match(_course_text(title, lessons), TOPIC_KEYWORDS.get(subject, {}))


def format_lessons_for_prompt(lessons: Sequence[Dict[str, Any]]) -> str:
    blocks = []
    for i, lesson in enumerate(lessons):
        rows = []
        for j, step in enumerate(lesson.get("steps") or []):
            content = str(step.get("content", "") or "")
            if len(content) > STEP_PREVIEW_CHARS:
                content = content[:STEP_PREVIEW_CHARS] + "..."
            rows.append(f"    Step {j + 1} [{step.get('type', 'explanation')}]: {content}")
        blocks.append(f"Lesson {i + 1}: {lesson.get('title', '')}\n" + ("\n".join(rows) or "    (No steps)"))
    return "\n\n".join(blocks)


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", str(value or "").lower()).strip("-")


def concept_id(subject: str, topic: str, name: str) -> str:
    """Stable id: the same concept named in two courses is stored once."""
    return f"{slugify(subject) or 'general'}/{slugify(topic) or 'general'}/{slugify(name)}"


def _difficulty(v: Any) -> int:
    try:
        d = int(round(float(v)))
    except (TypeError, ValueError):
        return DEFAULT_DIFFICULTY
    # 0 reads as "not given"
    if d == 0:
        return DEFAULT_DIFFICULTY
    return max(1, min(5, d))


def validate_extraction(data: Any) -> Tuple[bool, List[str]]:
    reasons: List[str] = []
    if not isinstance(data, dict):
        return False, ["The reply must be a JSON object."]
    concepts = data.get("concepts")
    if not isinstance(concepts, list) or not concepts:
        reasons.append("concepts must be a non-empty list.")
    else:
        named = [c for c in concepts if isinstance(c, dict) and str(c.get("name", "") or "").strip()]
        if len(named) < len(concepts):
            reasons.append("Every concept needs a name.")
        if len(named) > MAX_CONCEPTS:
            reasons.append(f"Return at most {MAX_CONCEPTS} concepts.")
    if not isinstance(data.get("mappings", []), list):
        reasons.append("mappings must be a list.")
    return not reasons, reasons


def normalize_extraction(data: Dict[str, Any], subject: str, topic: str, lesson_count: int) -> ConceptExtraction:
    """Clean a model reply.

    Concepts are deduplicated by id, missing subject/topic fall back to the
    detected ones and difficulty is clamped to 1-5. Prerequisites must name a
    concept in the same reply and never the concept itself. Mappings that
    point at an unknown concept or a lesson outside the course are dropped.
    """
    result = ConceptExtraction(subject=subject, topic=topic)
    by_name: Dict[str, ExtractedConcept] = {}
    raw_prereqs: Dict[str, List[str]] = {}

    for c in data.get("concepts") or []:
        if not isinstance(c, dict):
            continue
        name = str(c.get("name", "") or "").strip()
        if not name or name.lower() in by_name:
            continue
        c_subject = slugify(c.get("subject")) or subject
        c_topic = slugify(c.get("topic")) or topic
        item = ExtractedConcept(
            id=concept_id(c_subject, c_topic, name),
            name=name[:200],
            description=str(c.get("description", "") or "").strip(),
            subject=c_subject,
            topic=c_topic,
            difficulty=_difficulty(c.get("difficulty")),
        )
        if any(x.id == item.id for x in result.concepts):
            continue
        by_name[name.lower()] = item
        raw_prereqs[item.id] = [str(p or "").strip().lower() for p in (c.get("prerequisites") or [])]
        result.concepts.append(item)
        if len(result.concepts) >= MAX_CONCEPTS:
            break

    for item in result.concepts:
        for pname in raw_prereqs.get(item.id, []):
            prereq = by_name.get(pname)
            if prereq is None or prereq.id == item.id or prereq.id in item.prerequisite_ids:
                continue
            item.prerequisite_ids.append(prereq.id)

    seen = set()
    for m in data.get("mappings") or []:
        if not isinstance(m, dict):
            continue
        target = by_name.get(str(m.get("conceptName", m.get("concept_name", "")) or "").strip().lower())
        try:
            lesson_index = int(m.get("lessonIndex", m.get("lesson_index")))
        except (TypeError, ValueError):
            continue
        if target is None or not 0 <= lesson_index < lesson_count:
            continue
        step = m.get("stepIndex", m.get("step_index"))
        step_index = int(step) if isinstance(step, (int, float)) and step >= 0 else None
        rel = str(m.get("relationship", "") or "").strip().lower()
        rel = rel if rel in RELATIONSHIPS else "teaches"
        key = (target.id, lesson_index, step_index, rel)
        if key in seen:
            continue
        seen.add(key)
        result.mappings.append(ConceptMapping(target.id, lesson_index, step_index, rel))
    return result


def lessons_without_concepts(extraction: ConceptExtraction, lesson_count: int) -> List[int]:
    mapped = {m.lesson_index for m in extraction.mappings}
    return [i for i in range(lesson_count) if i not in mapped]
