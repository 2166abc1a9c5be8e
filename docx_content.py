from __future__ import annotations

import io
from typing import Iterator

from docx import Document as DocxDocument
from docx.shared import Inches, Pt
from docx.table import Table
from docx.text.paragraph import Paragraph

from document_models import ParagraphRecord
from errors import ContentExtractionError, TemplateParseError

PARAGRAPH_SPACE_AFTER = Pt(10)
SPACER_SPACE_AFTER = Pt(20)


def _open_docx(data: bytes):
    return DocxDocument(io.BytesIO(data))


def _paragraph_record(para: Paragraph) -> ParagraphRecord:
    runs = [run for run in para.runs if run.text]
    return ParagraphRecord(
        text=para.text.strip(),
        bold=any(run.bold for run in runs),
        italic=any(run.italic for run in runs),
        underline=any(run.underline for run in runs),
    )


def _table_paragraphs(table: Table) -> Iterator[Paragraph]:
    seen = set()
    for row in table.rows:
        for cell in row.cells:
            # merged cells are reported once per grid column
            if cell._tc in seen:
                continue
            seen.add(cell._tc)
            yield from cell.paragraphs


def _body_paragraphs(docx) -> Iterator[Paragraph]:
    """Body paragraphs and table cell paragraphs in document order."""
    for block in docx.iter_inner_content():
        if isinstance(block, Table):
            yield from _table_paragraphs(block)
        else:
            yield block


def read_docx_paragraphs(data: bytes) -> list[ParagraphRecord]:
    """Flatten a DOCX body (paragraphs and table cells, in order) into records.

    Empty paragraphs are dropped; only coarse run formatting survives.
    """
    try:
        docx = _open_docx(data)
    except Exception as exc:
        raise TemplateParseError(f"Could not read DOCX template: {exc}") from exc

    records: list[ParagraphRecord] = []
    for para in _body_paragraphs(docx):
        record = _paragraph_record(para)
        if record.text:
            records.append(record)
    return records


def extract_docx_text(data: bytes) -> str:
    try:
        docx = _open_docx(data)
    except Exception as exc:
        raise ContentExtractionError(f"Failed to extract content from DOCX file: {exc}") from exc
    return "\n".join(para.text for para in _body_paragraphs(docx))


def build_docx(leading: list[ParagraphRecord], body: list[ParagraphRecord]) -> bytes:
    """Write ``leading + [spacer] + body`` as a new single-section DOCX."""
    d = DocxDocument()
    section = d.sections[0]
    section.top_margin = Inches(0.5)
    section.right_margin = Inches(1)
    section.bottom_margin = Inches(1)
    section.left_margin = Inches(1)

    for record in leading:
        _add_record(d, record)
    spacer = d.add_paragraph("")
    spacer.paragraph_format.space_after = SPACER_SPACE_AFTER
    for record in body:
        _add_record(d, record)

    out = io.BytesIO()
    d.save(out)
    return out.getvalue()


def _add_record(d, record: ParagraphRecord) -> None:
    p = d.add_paragraph()
    run = p.add_run(record.text)
    run.bold = True if record.bold else None
    run.italic = True if record.italic else None
    run.underline = True if record.underline else None
    p.paragraph_format.space_after = PARAGRAPH_SPACE_AFTER
