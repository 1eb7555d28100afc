"""Reading uploaded PDFs and rendering mock tests to PDF."""

import io
import logging
import warnings
from pathlib import Path
from typing import Dict, List
from xml.sax.saxutils import escape

from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError, PdfReadWarning
from pdfminer.high_level import extract_text as pdfminer_extract_text
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import PageBreak, Paragraph, SimpleDocTemplate, Spacer

logger = logging.getLogger(__name__)


def open_pdf(data: bytes) -> PdfReader:
    try:
        return PdfReader(io.BytesIO(data))
    except (PdfReadError, ValueError) as exc:
        raise ValueError("Uploaded file is not a readable PDF.") from exc


def count_pages(data: bytes) -> int:
    return len(open_pdf(data).pages)


def extract_text_from_pdf_bytes(data: bytes, start_page: int = 1, end_page: int = 0) -> str:
    """Extract text from the 1-based inclusive page range ``start_page``..``end_page``.

    ``end_page`` of 0 means the last page.
    """
    pages: List[str] = []
    saw_advanced_encoding_warning = False

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", PdfReadWarning)
        reader = open_pdf(data)
        last = end_page or len(reader.pages)
        try:
            for page in reader.pages[start_page - 1:last]:
                page_text = page.extract_text() or ""
                if page_text.strip():
                    pages.append(page_text.strip())
        except PdfReadError as exc:
            raise ValueError("Uploaded file is not a readable PDF.") from exc

        for w in caught:
            if "Advanced encoding" in str(w.message):
                saw_advanced_encoding_warning = True
                break

    extracted = "\n".join(pages).strip()
    if extracted and not saw_advanced_encoding_warning:
        return extracted

    # Fallback extractor for CJK/complex encodings where PyPDF2 can be incomplete.
    logger.debug("Falling back to pdfminer for pages %s-%s", start_page, last)
    fallback = pdfminer_extract_text(io.BytesIO(data), page_numbers=set(range(start_page - 1, last))) or ""
    return fallback.strip() if fallback.strip() else extracted


def _styles() -> Dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    return {
        "title": ParagraphStyle("MockTitle", parent=base["Title"], fontSize=20, alignment=TA_CENTER),
        "heading": ParagraphStyle("MockHeading", parent=base["Heading2"], fontSize=14),
        "body": ParagraphStyle("MockBody", parent=base["BodyText"], fontSize=12, leading=15),
        "option": ParagraphStyle("MockOption", parent=base["BodyText"], fontSize=12, leading=15, leftIndent=12),
    }


def render_mock_test_pdf(test_data: Dict, path: Path) -> Path:
    """Write the mock test to ``path``: questions first, answer key on a new page."""
    styles = _styles()
    time_allowed = escape(str(test_data.get("time_allowed", "")))
    questions = test_data.get("questions", [])

    story = [
        Paragraph("Mock Test", styles["title"]),
        Spacer(1, 6 * mm),
        Paragraph(f"Topic: {escape(str(test_data.get('topic', '')))}", styles["body"]),
        Paragraph(f"Difficulty: {escape(str(test_data.get('difficulty', '')))}", styles["body"]),
        Paragraph(f"Total Questions: {escape(str(test_data.get('total_questions', len(questions))))}", styles["body"]),
        Paragraph(f"Time Allowed: {time_allowed}", styles["body"]),
        Spacer(1, 6 * mm),
        Paragraph("<u>Instructions:</u>", styles["heading"]),
        Paragraph("1. Attempt all questions", styles["body"]),
        Paragraph("2. Each question carries equal marks", styles["body"]),
        Paragraph(f"3. Time allowed: {time_allowed}", styles["body"]),
        Spacer(1, 6 * mm),
    ]

    for index, question in enumerate(questions, start=1):
        story.append(Paragraph(f"{index}. {escape(str(question.get('question', '')))}", styles["body"]))
        story.append(Spacer(1, 2 * mm))
        for option in question.get("options", []):
            story.append(Paragraph(escape(str(option)), styles["option"]))
        story.append(Spacer(1, 5 * mm))

    story.append(PageBreak())
    story.append(Paragraph("Answer Key", styles["title"]))
    story.append(Spacer(1, 6 * mm))
    for index, question in enumerate(questions, start=1):
        answer = escape(str(question.get("correct_answer", "")))
        explanation = escape(str(question.get("explanation", "")))
        story.append(Paragraph(f"{index}. Correct Answer: {answer}", styles["body"]))
        story.append(Paragraph(f"Explanation: {explanation}", styles["body"]))
        story.append(Spacer(1, 4 * mm))

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    doc = SimpleDocTemplate(
        str(path),
        pagesize=A4,
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=16 * mm,
        bottomMargin=16 * mm,
        title="Mock Test",
    )
    doc.build(story)
    return path
