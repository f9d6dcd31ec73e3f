"""Course export to Markdown and PDF."""

import html
import io
import logging
from typing import Any, Dict, List, Tuple

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import ListFlowable, ListItem, Paragraph, SimpleDocTemplate, Spacer

LOGGER = logging.getLogger("notesnap")

STEP_LABELS = {
    "explanation": "",
    "key_point": "Key point",
    "formula": "Formula",
    "example": "Example",
    "diagram": "Diagram",
    "summary": "Summary",
}


def _lessons(course: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [l for l in (course.get("lessons") or []) if isinstance(l, dict)]


def _correct_option(step: Dict[str, Any]) -> Tuple[List[str], int]:
    options = [str(o) for o in (step.get("options") or [])]
    try:
        idx = int(step.get("correct_answer"))
    except (TypeError, ValueError):
        idx = -1
    return options, idx if 0 <= idx < len(options) else -1


def course_to_markdown(course: Dict[str, Any]) -> str:
    title = str(course.get("title") or "Untitled course").strip()
    out = [f"# {title}", ""]
    overview = str(course.get("overview") or "").strip()
    if overview:
        out += [overview, ""]

    quiz: List[Dict[str, Any]] = []
    for li, lesson in enumerate(_lessons(course), start=1):
        out += [f"## Lesson {li}: {str(lesson.get('title') or '').strip()}", ""]
        n = 0
        for step in lesson.get("steps") or []:
            if not isinstance(step, dict):
                continue
            stype = str(step.get("type") or "explanation")
            content = str(step.get("content") or "").strip()
            if stype == "question":
                quiz.append(step)
                continue
            if not content:
                continue
            n += 1
            if stype == "formula":
                content = f"`{content}`"
            label = STEP_LABELS.get(stype, "")
            prefix = f"**{label}:** " if label else ""
            step_title = str(step.get("title") or "").strip()
            if step_title:
                prefix = f"**{step_title}** - {prefix}" if prefix else f"**{step_title}** - "
            out.append(f"{n}. {prefix}{content}")
        out.append("")

    if quiz:
        out += ["## Quiz", ""]
        for qi, q in enumerate(quiz, start=1):
            out.append(f"**Q{qi}. {str(q.get('content') or '').strip()}**")
            options, idx = _correct_option(q)
            for oi, opt in enumerate(options):
                out.append(f"- {chr(65 + oi)}. {opt}")
            if idx >= 0:
                out.append(f"\nAnswer: {chr(65 + idx)}. {options[idx]}")
            explanation = str(q.get("explanation") or "").strip()
            if explanation:
                out.append(f"\n_{explanation}_")
            out.append("")
    return "\n".join(out).rstrip() + "\n"


def _pdf_styles() -> Dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    ink = colors.HexColor("#111827")
    return {
        "title": ParagraphStyle("NsTitle", parent=base["Heading1"], fontSize=18, leading=22,
                                spaceAfter=8, textColor=ink),
        "lesson": ParagraphStyle("NsLesson", parent=base["Heading2"], fontSize=13, leading=17,
                                 spaceBefore=8, spaceAfter=4, textColor=ink),
        "body": ParagraphStyle("NsBody", parent=base["BodyText"], fontSize=10, leading=14, textColor=ink),
        "formula": ParagraphStyle("NsFormula", parent=base["Code"], fontSize=9.5, leading=13),
        "question": ParagraphStyle("NsQuestion", parent=base["BodyText"], fontName="Helvetica-Bold",
                                   fontSize=10, leading=14, spaceBefore=4, textColor=ink),
        "answer": ParagraphStyle("NsAnswer", parent=base["BodyText"], fontSize=9.5, leading=13,
                                 leftIndent=10, textColor=colors.HexColor("#065F46")),
    }


def course_to_pdf(course: Dict[str, Any]) -> bytes:
    styles = _pdf_styles()
    buf = io.BytesIO()
    title = str(course.get("title") or "Untitled course").strip()
    doc = SimpleDocTemplate(buf, pagesize=A4, leftMargin=16 * mm, rightMargin=16 * mm,
                            topMargin=14 * mm, bottomMargin=14 * mm, title=title)

    story: List[Any] = [Paragraph(html.escape(title), styles["title"])]
    overview = str(course.get("overview") or "").strip()
    if overview:
        story += [Paragraph(html.escape(overview), styles["body"]), Spacer(1, 8)]

    quiz: List[Dict[str, Any]] = []
    for li, lesson in enumerate(_lessons(course), start=1):
        story.append(Paragraph(html.escape(f"Lesson {li}: {lesson.get('title') or ''}"), styles["lesson"]))
        items = []
        for step in lesson.get("steps") or []:
            if not isinstance(step, dict):
                continue
            stype = str(step.get("type") or "explanation")
            content = str(step.get("content") or "").strip()
            if stype == "question":
                quiz.append(step)
                continue
            if not content:
                continue
            style = styles["formula"] if stype == "formula" else styles["body"]
            label = STEP_LABELS.get(stype, "")
            text = html.escape(content)
            if label:
                text = f"<b>{label}:</b> {text}"
            items.append(ListItem(Paragraph(text, style)))
        if items:
            story.append(ListFlowable(items, bulletType="1"))
        story.append(Spacer(1, 6))

    if quiz:
        story.append(Paragraph("Quiz", styles["lesson"]))
        for qi, q in enumerate(quiz, start=1):
            story.append(Paragraph(html.escape(f"Q{qi}. {q.get('content') or ''}"), styles["question"]))
            options, idx = _correct_option(q)
            if options:
                story.append(ListFlowable(
                    [ListItem(Paragraph(html.escape(o), styles["body"])) for o in options],
                    bulletType="A",
                ))
            if idx >= 0:
                story.append(Paragraph(html.escape(f"Answer: {options[idx]}"), styles["answer"]))
            explanation = str(q.get("explanation") or "").strip()
            if explanation:
                story.append(Paragraph(f"<i>{html.escape(explanation)}</i>", styles["body"]))

    doc.build(story)
    data = buf.getvalue()
    LOGGER.info("Course exported", extra={"ctx": {"component": "export", "format": "pdf", "bytes": len(data)}})
    return data
