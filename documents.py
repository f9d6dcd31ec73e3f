"""Text extraction from Word (.docx) and PowerPoint (.pptx) uploads.

Both formats come out as titled sections so the course prompt sees the
document's own structure: Word headings and PowerPoint slides each start a
section, and speaker notes ride along with their slide.
"""

import io
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import docx
from pptx import Presentation

from errors import AppError

LOGGER = logging.getLogger("notesnap")

DOCUMENT_EXTENSIONS = (".docx", ".pptx")
DOCUMENT_MIME = {
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}
MIN_TEXT_CHARS = 10
SECTION_SEPARATOR = "\n\n---\n\n"
ZIP_MAGIC = b"PK\x03\x04"


@dataclass
class DocumentSection:
    title: str
    content: str


@dataclass
class ExtractedDocument:
    kind: str
    title: str
    sections: List[DocumentSection] = field(default_factory=list)

    @property
    def text(self) -> str:
        return SECTION_SEPARATOR.join(
            f"## {s.title}\n\n{s.content}".rstrip() for s in self.sections
        )


def document_kind(filename: str) -> Optional[str]:
    ext = os.path.splitext(filename or "")[1].lower()
    return ext[1:] if ext in DOCUMENT_EXTENSIONS else None


def _first_line_title(text: str) -> str:
    for line in (text or "").splitlines():
        line = line.strip()
        if 3 <= len(line) <= 150:
            return line
    return ""


def _is_heading(paragraph) -> bool:
    name = str(getattr(paragraph.style, "name", "") or "")
    return name == "Title" or name.startswith("Heading")


def extract_docx(data: bytes) -> ExtractedDocument:
    d = docx.Document(io.BytesIO(data))
    sections: List[DocumentSection] = []
    title: Optional[str] = None
    body: List[str] = []

    def _flush() -> None:
        content = "\n".join(body).strip()
        if title is not None or content:
            sections.append(DocumentSection(title or "Introduction", content))

    for p in d.paragraphs:
        text = (p.text or "").strip()
        if not text:
            continue
        if _is_heading(p):
            _flush()
            title, body = text, []
        else:
            body.append(text)
    _flush()

    if len(sections) == 1 and sections[0].title == "Introduction":
        sections[0].title = "Document Content"
    headings = [s.title for s in sections if s.title not in ("Introduction", "Document Content")]
    doc_title = (headings[0] if headings else "") or _first_line_title("\n".join(s.content for s in sections))
    return ExtractedDocument("docx", doc_title, sections)


def extract_pptx(data: bytes) -> ExtractedDocument:
    prs = Presentation(io.BytesIO(data))
    sections: List[DocumentSection] = []
    for number, slide in enumerate(prs.slides, start=1):
        title_shape = slide.shapes.title
        title = (title_shape.text or "").strip() if title_shape is not None else ""
        parts = []
        for shape in slide.shapes:
            if title_shape is not None and shape.shape_id == title_shape.shape_id:
                continue
            if hasattr(shape, "text") and shape.text.strip():
                parts.append(shape.text.strip())
        if not title and parts:
            title = _first_line_title(parts[0])
        if slide.has_notes_slide:
            notes = (slide.notes_slide.notes_text_frame.text or "").strip()
            if notes:
                parts.append(f"Speaker notes: {notes}")
        if title or parts:
            sections.append(DocumentSection(title or f"Slide {number}", "\n".join(parts)))

    doc_title = sections[0].title if sections else ""
    return ExtractedDocument("pptx", doc_title, sections)


def extract_document(filename: str, data: bytes) -> ExtractedDocument:
    """Read a .docx or .pptx upload.

    Raises NS-UPL-002 for other file types, NS-UPL-021 when the file can't be
    opened and NS-UPL-020 when it holds no usable text.
    """
    kind = document_kind(filename)
    if kind is None:
        raise AppError("NS-UPL-002", details={"file": filename})
    if not data or not data.startswith(ZIP_MAGIC):
        raise AppError("NS-UPL-021", details={"file": filename})
    try:
        doc = extract_docx(data) if kind == "docx" else extract_pptx(data)
    except Exception as e:
        LOGGER.warning("Document could not be read",
                       extra={"ctx": {"component": "documents", "kind": kind, "error": type(e).__name__}})
        raise AppError("NS-UPL-021", details={"file": filename, "error": type(e).__name__}) from e

    if len(doc.text.replace("#", "").replace("-", "").strip()) < MIN_TEXT_CHARS:
        raise AppError("NS-UPL-020", details={"file": filename})
    LOGGER.info("Document extracted",
                extra={"ctx": {"component": "documents", "kind": kind, "sections": len(doc.sections)}})
    return doc
