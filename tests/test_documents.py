import io
import unittest

import docx
from pptx import Presentation
from pptx.util import Inches

from documents import document_kind, extract_document
from errors import AppError


def _docx_bytes(build) -> bytes:
    d = docx.Document()
    build(d)
    buf = io.BytesIO()
    d.save(buf)
    return buf.getvalue()


def _pptx_bytes(build) -> bytes:
    prs = Presentation()
    build(prs)
    buf = io.BytesIO()
    prs.save(buf)
    return buf.getvalue()


class KindTests(unittest.TestCase):
    def test_extensions(self) -> None:
        self.assertEqual(document_kind("Notes.DOCX"), "docx")
        self.assertEqual(document_kind("deck.pptx"), "pptx")
        self.assertIsNone(document_kind("scan.pdf"))
        self.assertIsNone(document_kind(""))

    def test_unsupported_type(self) -> None:
        with self.assertRaises(AppError) as cm:
            extract_document("notes.txt", b"plain text notes")
        self.assertEqual(cm.exception.code, "NS-UPL-002")


class DocxTests(unittest.TestCase):
    def test_sections_follow_headings(self) -> None:
        def build(d):
            d.add_paragraph("Read this before the lab.")
            d.add_heading("Forces", level=1)
            d.add_paragraph("A force is a push or a pull.")
            d.add_paragraph("Measured in newtons.")
            d.add_heading("Energy", level=2)
            d.add_paragraph("Energy is conserved.")

        doc = extract_document("physics.docx", _docx_bytes(build))
        self.assertEqual(doc.kind, "docx")
        self.assertEqual(doc.title, "Forces")
        self.assertEqual([s.title for s in doc.sections], ["Introduction", "Forces", "Energy"])
        self.assertEqual(doc.sections[1].content, "A force is a push or a pull.\nMeasured in newtons.")
        self.assertIn("## Energy\n\nEnergy is conserved.", doc.text)
        self.assertEqual(doc.text.count("\n\n---\n\n"), 2)

    def test_no_headings_is_one_section(self) -> None:
        def build(d):
            d.add_paragraph("Cell biology")
            d.add_paragraph("Mitochondria make ATP for the cell.")

        doc = extract_document("bio.docx", _docx_bytes(build))
        self.assertEqual([s.title for s in doc.sections], ["Document Content"])
        self.assertEqual(doc.title, "Cell biology")

    def test_too_little_text(self) -> None:
        data = _docx_bytes(lambda d: d.add_paragraph("Hi"))
        with self.assertRaises(AppError) as cm:
            extract_document("short.docx", data)
        self.assertEqual(cm.exception.code, "NS-UPL-020")

    def test_not_a_document(self) -> None:
        with self.assertRaises(AppError) as cm:
            extract_document("broken.docx", b"not a zip at all")
        self.assertEqual(cm.exception.code, "NS-UPL-021")

    def test_zip_that_is_not_word(self) -> None:
        data = _pptx_bytes(lambda p: p.slides.add_slide(p.slide_layouts[1]))
        with self.assertRaises(AppError) as cm:
            extract_document("renamed.docx", data)
        self.assertEqual(cm.exception.code, "NS-UPL-021")


class PptxTests(unittest.TestCase):
    def test_slides_with_notes(self) -> None:
        def build(prs):
            slide = prs.slides.add_slide(prs.slide_layouts[1])
            slide.shapes.title.text = "Newton's second law"
            slide.placeholders[1].text = "F = m a"
            slide.notes_slide.notes_text_frame.text = "Mention units"
            blank = prs.slides.add_slide(prs.slide_layouts[6])
            box = blank.shapes.add_textbox(Inches(1), Inches(1), Inches(4), Inches(1))
            box.text_frame.text = "ok"

        doc = extract_document("deck.pptx", _pptx_bytes(build))
        self.assertEqual(doc.kind, "pptx")
        self.assertEqual(doc.title, "Newton's second law")
        self.assertEqual([s.title for s in doc.sections], ["Newton's second law", "Slide 2"])
        self.assertEqual(doc.sections[0].content, "F = m a\nSpeaker notes: Mention units")
        self.assertEqual(doc.sections[1].content, "ok")

    def test_empty_deck(self) -> None:
        with self.assertRaises(AppError) as cm:
            extract_document("empty.pptx", _pptx_bytes(lambda prs: None))
        self.assertEqual(cm.exception.code, "NS-UPL-020")


if __name__ == "__main__":
    unittest.main()
