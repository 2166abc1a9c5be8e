import io

import pytest
from docx import Document as DocxDocument
from reportlab.pdfgen import canvas


def make_pdf(
    page_size: tuple[float, float] = (800.0, 600.0),
    pages: int = 1,
    label: str | None = "LETTERHEAD ART",
) -> bytes:
    packet = io.BytesIO()
    c = canvas.Canvas(packet, pagesize=page_size, invariant=1)
    for _ in range(pages):
        if label:
            c.setFont("Times-Roman", 14)
            c.drawString(40, page_size[1] - 50, label)
        c.showPage()
    c.save()
    return packet.getvalue()


def make_docx(paragraphs: list[str], bold: set[str] | None = None) -> bytes:
    bold = bold or set()
    d = DocxDocument()
    for text in paragraphs:
        p = d.add_paragraph()
        run = p.add_run(text)
        if text in bold:
            run.bold = True
    out = io.BytesIO()
    d.save(out)
    return out.getvalue()


@pytest.fixture
def certificate_template() -> bytes:
    return make_pdf((800.0, 600.0), label="Certificate of Completion")


@pytest.fixture
def letter_pdf_template() -> bytes:
    return make_pdf((612.0, 792.0), label="ABC Corp Letterhead")


@pytest.fixture
def letter_docx_template() -> bytes:
    return make_docx(["ABC Corp"])
