import html
import io
import logging
import math
import re
from html.parser import HTMLParser
from typing import Callable

from pypdf import PdfReader, PdfWriter
from reportlab.lib.colors import Color
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen import canvas

import format_bridge
from certificate_overlay import load_template, resolve_font_name
from docx_content import build_docx, extract_docx_text, read_docx_paragraphs
from document_models import (
    ContentUnit,
    LetterheadTemplate,
    MergeResult,
    ParagraphRecord,
    TemplateKind,
)
from errors import ConversionUnavailable

logger = logging.getLogger(__name__)

FONT_SIZE = 12.0
MARGIN = 72.0
LINE_HEIGHT = FONT_SIZE * 1.5
# First baseline sits one third of the way down the page, below the letterhead art.
START_FRACTION = 2.0 / 3.0

_BLOCK_TAGS = {"p", "div", "li", "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "tr"}
_STYLE_TAGS = {
    "b": "bold",
    "strong": "bold",
    "i": "italic",
    "em": "italic",
    "u": "underline",
}


class ParagraphHtmlParser(HTMLParser):
    """Split editor HTML into plain lines with coarse bold/italic/underline flags."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.records: list[ParagraphRecord] = []
        self.style_stack: list[dict] = [{"bold": False, "italic": False, "underline": False}]
        self.tag_stack: list[tuple[str, bool]] = []
        self._parts: list[str] = []
        self._flags = {"bold": False, "italic": False, "underline": False}

    def _flush_line(self) -> None:
        text = "".join(self._parts).strip()
        if text:
            self.records.append(ParagraphRecord(text=text, **self._flags))
        self._parts = []
        self._flags = {"bold": False, "italic": False, "underline": False}

    def _push_style(self, tag: str, flag: str) -> None:
        style = dict(self.style_stack[-1])
        style[flag] = True
        self.style_stack.append(style)
        self.tag_stack.append((tag, True))

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        name = tag.lower()
        if name == "br":
            self._flush_line()
            return
        if name in _BLOCK_TAGS:
            self._flush_line()
        if name in _STYLE_TAGS:
            self._push_style(name, _STYLE_TAGS[name])
            return
        self.tag_stack.append((name, False))

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag.lower() in _BLOCK_TAGS or tag.lower() == "br":
            self._flush_line()

    def handle_endtag(self, tag: str) -> None:
        name = tag.lower()
        # Pop back to the matching open tag; stray end tags are ignored.
        for idx in range(len(self.tag_stack) - 1, -1, -1):
            if self.tag_stack[idx][0] == name:
                for _, had_style in self.tag_stack[idx:]:
                    if had_style and len(self.style_stack) > 1:
                        self.style_stack.pop()
                del self.tag_stack[idx:]
                break
        if name in _BLOCK_TAGS:
            self._flush_line()

    def handle_data(self, data: str) -> None:
        if not data:
            return
        # Ignore editor-introduced indentation/newline text nodes between tags.
        if data.strip() == "" and ("\n" in data or "\r" in data or "\t" in data):
            return
        parts = data.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        style = self.style_stack[-1]
        for idx, part in enumerate(parts):
            if part:
                self._parts.append(part)
                if part.strip():
                    for flag, active in style.items():
                        if active:
                            self._flags[flag] = True
            if idx < len(parts) - 1:
                self._flush_line()

    def close(self) -> None:
        super().close()
        self._flush_line()


def markup_to_paragraphs(markup: str) -> list[ParagraphRecord]:
    parser = ParagraphHtmlParser()
    parser.feed(str(markup))
    parser.close()
    return parser.records


def text_to_paragraphs(text: str) -> list[ParagraphRecord]:
    return markup_to_paragraphs(f"<p>{html.escape(text)}</p>")


def content_paragraphs(content: ContentUnit) -> list[ParagraphRecord]:
    if content.markup is not None:
        return markup_to_paragraphs(content.markup)
    return text_to_paragraphs(extract_docx_text(content.document))


def normalize_markup_text(markup: str) -> str:
    """Reduce editor HTML to plain text with one line per block."""
    text = re.sub(r"</p>", "\n", markup, flags=re.IGNORECASE)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</li>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    text = (
        text.replace("&nbsp;", " ")
        .replace("&lt;", "<")
        .replace("&gt;", ">")
        .replace("&amp;", "&")
    )
    return _collapse_blank_lines(text)


def _collapse_blank_lines(text: str) -> str:
    return re.sub(r"\n\s*\n", "\n", text.replace("\r\n", "\n")).strip()


def content_text(content: ContentUnit) -> str:
    if content.markup is not None:
        return normalize_markup_text(content.markup)
    return _collapse_blank_lines(extract_docx_text(content.document))


def wrap_text_to_lines(text: str, font_name: str, size: float, max_width: float) -> list[str]:
    """Greedy word-wrap each line of *text* to *max_width* at *size* pt.

    Line breaks in *text* are kept: every paragraph starts on a new line
    instead of running on from the previous one. A single word wider than
    max_width is kept as its own line.
    """
    result: list[str] = []
    for paragraph in text.split("\n"):
        current = ""
        for word in paragraph.split():
            candidate = f"{current} {word}" if current else word
            if current and pdfmetrics.stringWidth(candidate, font_name, size) > max_width:
                result.append(current)
                current = word
            else:
                current = candidate
        if current:
            result.append(current)
    return result


def _start_y(page_height: float) -> float:
    return page_height * START_FRACTION


def lines_per_page(page_height: float) -> int:
    usable = _start_y(page_height) - (MARGIN + LINE_HEIGHT)
    if usable < 0:
        return 1
    return int(math.floor(usable / LINE_HEIGHT)) + 1


def layout_pages(lines: list[str], page_height: float) -> list[list[tuple[str, float]]]:
    """Assign each line a page and a baseline y (bottom-left page space)."""
    start_y = _start_y(page_height)
    pages: list[list[tuple[str, float]]] = [[]]
    y = start_y
    for line in lines:
        if y < MARGIN + LINE_HEIGHT and pages[-1]:
            pages.append([])
            y = start_y
        pages[-1].append((line, y))
        y -= LINE_HEIGHT
    return pages


def draw_lines_overlay(
    page_w: float,
    page_h: float,
    placed_lines: list[tuple[str, float]],
    font_name: str,
) -> bytes:
    packet = io.BytesIO()
    c = canvas.Canvas(packet, pagesize=(page_w, page_h), invariant=1)
    c.setFillColor(Color(0, 0, 0))
    c.setFont(font_name, FONT_SIZE)
    for line, y in placed_lines:
        c.drawString(MARGIN, y, line)
    c.showPage()
    c.save()
    return packet.getvalue()


def merge_fixed(
    template: bytes,
    content: ContentUnit,
    desired_kind: TemplateKind = TemplateKind.FIXED_LAYOUT,
    font_family: str = "Helvetica",
) -> MergeResult:
    """Draw the letter body over repeated copies of a PDF letterhead's first page."""
    reader = load_template(template)
    first_page = reader.pages[0]
    page_w = float(first_page.mediabox.width)
    page_h = float(first_page.mediabox.height)
    warnings: list[str] = []

    font_name = resolve_font_name(font_family)
    text = content_text(content)
    logger.info("Extracted content text length: %d", len(text))
    if not text:
        warnings.append("No content text extracted.")
        logger.warning("No content text extracted for PDF letterhead merge.")

    lines = wrap_text_to_lines(text, font_name, FONT_SIZE, page_w - 2 * MARGIN)
    writer = PdfWriter()
    for placed_lines in layout_pages(lines, page_h):
        # fresh parse so each page gets its own untouched copy of the letterhead
        background = writer.add_page(PdfReader(io.BytesIO(template)).pages[0])
        if placed_lines:
            overlay = draw_lines_overlay(page_w, page_h, placed_lines, font_name)
            background.merge_page(PdfReader(io.BytesIO(overlay)).pages[0])

    out = io.BytesIO()
    writer.write(out)

    degraded = False
    if desired_kind == TemplateKind.FLOWABLE:
        degraded = True
        warnings.append("DOCX output requested but the letterhead is a PDF; returning PDF.")
        logger.warning("DOCX output requested but letterhead is PDF. Returning PDF.")
    return MergeResult(
        content=out.getvalue(),
        achieved_kind=TemplateKind.FIXED_LAYOUT,
        degraded=degraded,
        warnings=warnings,
    )


def merge_flowable(
    template: bytes,
    content: ContentUnit,
    desired_kind: TemplateKind = TemplateKind.FLOWABLE,
    converter: Callable[[bytes], bytes] | None = None,
) -> MergeResult:
    """Prepend a DOCX letterhead's paragraphs to the letter body.

    The letterhead's own layout is not kept: its text becomes the leading
    paragraphs of the merged document.
    """
    warnings: list[str] = []
    leading = read_docx_paragraphs(template)
    body = content_paragraphs(content)
    logger.info("Merging %d letterhead paragraphs with %d content paragraphs", len(leading), len(body))
    if not body:
        warnings.append("No content text extracted.")
        logger.warning("No content paragraphs for DOCX letterhead merge.")

    docx_bytes = build_docx(leading, body)
    if desired_kind != TemplateKind.FIXED_LAYOUT:
        return MergeResult(content=docx_bytes, achieved_kind=TemplateKind.FLOWABLE, warnings=warnings)

    convert = converter or format_bridge.convert
    try:
        pdf_bytes = convert(docx_bytes)
    except ConversionUnavailable as exc:
        logger.warning("PDF conversion failed, returning DOCX: %s", exc)
        warnings.append(f"PDF conversion unavailable, returning DOCX: {exc}")
        return MergeResult(
            content=docx_bytes,
            achieved_kind=TemplateKind.FLOWABLE,
            degraded=True,
            warnings=warnings,
        )
    return MergeResult(content=pdf_bytes, achieved_kind=TemplateKind.FIXED_LAYOUT, warnings=warnings)


_MERGERS = {
    TemplateKind.FIXED_LAYOUT: merge_fixed,
    TemplateKind.FLOWABLE: merge_flowable,
}


def merge_letterhead(
    template: LetterheadTemplate,
    content: ContentUnit,
    desired_kind: TemplateKind | None = None,
) -> MergeResult:
    desired = template.kind if desired_kind is None else TemplateKind(desired_kind)
    logger.info("Merging %s letterhead, requested output %s", template.kind.value, desired.value)
    return _MERGERS[template.kind](template.data, content, desired)
