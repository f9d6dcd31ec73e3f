"""Knowledge gap detection.

Looks at three signals for a set of concepts:
  * prerequisites the learner never got to (or barely got to)
  * a run of recent wrong answers on the concept itself
  * mastery that has slipped well below its peak
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

LOGGER = logging.getLogger("notesnap")

MASTERY_THRESHOLD = 0.3
DECAY_THRESHOLD = 0.3
CONSECUTIVE_FAILURES = 2
DECAY_DAYS = 7
MAX_PREREQ_DEPTH = 10

GAP_TYPES = ("never_learned", "missing_prerequisite", "weak_foundation", "decay")
SEVERITY_ORDER = {"critical": 0, "moderate": 1, "minor": 2}


@dataclass
class ConceptState:
    concept_id: str
    name: str = ""
    mastery_level: float = 0.0
    peak_mastery: float = 0.0
    last_reviewed_at: Optional[datetime] = None


@dataclass
class Gap:
    concept_id: str
    concept_name: str
    gap_type: str
    severity: str
    confidence: float
    current_mastery: float = 0.0
    blocked_concepts: List[str] = field(default_factory=list)
    evidence: Dict[str, Any] = field(default_factory=dict)

    def to_row(self, user_id: str) -> Dict[str, Any]:
        return {
            "user_id": user_id,
            "concept_id": self.concept_id,
            "gap_type": self.gap_type,
            "severity": self.severity,
            "confidence": self.confidence,
            "blocked_concepts": list(self.blocked_concepts),
            "evidence": dict(self.evidence),
        }


def _aware(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def collect_prerequisites(concept_id: str, prerequisites: Dict[str, List[str]],
                          max_depth: int = MAX_PREREQ_DEPTH) -> Dict[str, Set[str]]:
    """Breadth-first walk of the prerequisite graph.

    Returns each reachable prerequisite mapped to the concepts that
    directly depend on it. Cycles are tolerated.
    """
    found: Dict[str, Set[str]] = {}
    q = deque([(concept_id, 0)])
    visited = {concept_id}
    while q:
        cur, depth = q.popleft()
        if depth >= max_depth:
            continue
        for pre in prerequisites.get(cur, []) or []:
            found.setdefault(pre, set()).add(cur)
            if pre not in visited:
                visited.add(pre)
                q.append((pre, depth + 1))
    return found


def trailing_failures(results: List[bool]) -> int:
    """Count wrong answers at the end of a chronological result list."""
    n = 0
    for ok in reversed(results):
        if ok:
            break
        n += 1
    return n


def detect_gaps(
    concept_ids: Iterable[str],
    concepts: Dict[str, ConceptState],
    prerequisites: Optional[Dict[str, List[str]]] = None,
    recent_answers: Optional[List[Dict[str, Any]]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Find gaps for the given concepts.

    ``recent_answers`` rows carry ``concept_id``, ``is_correct`` and
    ``answered_at`` and may come in any order.
    """
    now = _aware(now or datetime.now(timezone.utc))
    prerequisites = prerequisites or {}
    targets = list(dict.fromkeys(concept_ids))
    gaps: Dict[str, Gap] = {}

    def _state(cid: str) -> ConceptState:
        return concepts.get(cid) or ConceptState(concept_id=cid)

    # 1. Prerequisites
    for cid in targets:
        for pre, blocked in collect_prerequisites(cid, prerequisites).items():
            st = _state(pre)
            if st.mastery_level >= MASTERY_THRESHOLD:
                continue
            if pre in gaps:
                merged = set(gaps[pre].blocked_concepts) | blocked
                gaps[pre].blocked_concepts = sorted(merged)
                continue
            gaps[pre] = Gap(
                concept_id=pre,
                concept_name=st.name or pre,
                gap_type="never_learned" if st.mastery_level <= 0 else "missing_prerequisite",
                severity="critical",
                confidence=0.9,
                current_mastery=st.mastery_level,
                blocked_concepts=sorted(blocked),
            )

    # 2. Recent failures
    by_concept: Dict[str, List[Dict[str, Any]]] = {}
    for row in recent_answers or []:
        cid = row.get("concept_id")
        if cid in targets:
            by_concept.setdefault(cid, []).append(row)

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    for cid, rows in by_concept.items():
        if cid in gaps:
            continue
        rows = sorted(rows, key=lambda r: _aware(r["answered_at"]) if r.get("answered_at") else epoch)
        results = [bool(r.get("is_correct")) for r in rows]
        consecutive = trailing_failures(results)
        failure_rate = results.count(False) / len(results)
        if consecutive < CONSECUTIVE_FAILURES and failure_rate <= 0.5:
            continue
        st = _state(cid)
        gaps[cid] = Gap(
            concept_id=cid,
            concept_name=st.name or cid,
            gap_type="weak_foundation",
            severity="critical" if consecutive >= 3 else "moderate",
            confidence=0.85,
            current_mastery=st.mastery_level,
            evidence={
                "consecutive_failures": consecutive,
                "failure_rate": round(failure_rate, 2),
                "answers": len(results),
            },
        )

    # 3. Decay
    for cid in targets:
        if cid in gaps:
            continue
        st = concepts.get(cid)
        if st is None or st.last_reviewed_at is None:
            continue
        if st.peak_mastery < 0.6 or st.mastery_level >= st.peak_mastery * (1 - DECAY_THRESHOLD):
            continue
        days = (now - _aware(st.last_reviewed_at)).total_seconds() / 86400
        if days < DECAY_DAYS:
            continue
        gaps[cid] = Gap(
            concept_id=cid,
            concept_name=st.name or cid,
            gap_type="decay",
            severity="moderate" if st.mastery_level < MASTERY_THRESHOLD else "minor",
            confidence=0.8,
            current_mastery=st.mastery_level,
            evidence={"peak_mastery": st.peak_mastery, "days_since_review": int(days)},
        )

    ordered = sorted(gaps.values(), key=lambda g: (SEVERITY_ORDER[g.severity], -g.confidence))
    blocking = any(
        g.severity == "critical" and g.gap_type in ("never_learned", "missing_prerequisite")
        for g in ordered
    )
    if blocking:
        action = "review"
    elif any(g.gap_type in ("weak_foundation", "decay") for g in ordered):
        action = "practice"
    else:
        action = "continue"

    if ordered:
        LOGGER.info(
            "Knowledge gaps detected",
            extra={"ctx": {"component": "gaps", "count": len(ordered), "action": action}},
        )
    return {"gaps": ordered, "has_blocking_gaps": blocking, "recommended_action": action}
