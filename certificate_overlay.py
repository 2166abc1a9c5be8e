import argparse
import csv
import io
import logging
from pathlib import Path

from pypdf import PdfReader, PdfWriter
from reportlab.lib.colors import Color
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen import canvas

import settings
from document_models import FontSpec, Position
from errors import TemplateParseError, UnsupportedFontFamily

logger = logging.getLogger(__name__)


_BASE14_FONTS = {
    "Courier",
    "Courier-Bold",
    "Courier-Oblique",
    "Courier-BoldOblique",
    "Helvetica",
    "Helvetica-Bold",
    "Helvetica-Oblique",
    "Helvetica-BoldOblique",
    "Times-Roman",
    "Times-Bold",
    "Times-Italic",
    "Times-BoldItalic",
    "Symbol",
    "ZapfDingbats",
}

# Names the editor offers that are not base-14 names themselves.
_FONT_ALIASES = {
    "times": "Times-Roman",
    "timesnewroman": "Times-Roman",
    "timesitalic": "Times-Italic",
    "timesbolditalic": "Times-BoldItalic",
}


def _normalize_font_name(name: str) -> str:
    return "".join(ch for ch in name.lower() if ch.isalnum())


def lookup_builtin_font(family: str) -> str:
    """Return the base-14 face for *family* or raise UnsupportedFontFamily."""
    if family in _BASE14_FONTS:
        return family
    normalized = _normalize_font_name(family)
    for candidate in sorted(_BASE14_FONTS):
        if _normalize_font_name(candidate) == normalized:
            return candidate
    if normalized in _FONT_ALIASES:
        return _FONT_ALIASES[normalized]
    raise UnsupportedFontFamily(family)


def resolve_font_name(
    family: str,
    fallback_font: str | None = None,
    strict: bool | None = None,
) -> str:
    strict = settings.STRICT_FONT_FAMILIES if strict is None else strict
    try:
        return lookup_builtin_font(family)
    except UnsupportedFontFamily:
        if strict:
            raise
    fallback = fallback_font or settings.DEFAULT_FONT_FAMILY
    try:
        fallback = lookup_builtin_font(fallback)
    except UnsupportedFontFamily:
        fallback = "Helvetica"
    logger.warning("Font '%s' is unavailable. Falling back to '%s'.", family, fallback)
    return fallback


def parse_hex_color(value: str) -> tuple[float, float, float]:
    hexv = value.strip().lstrip("#").lower()
    if len(hexv) != 6 or any(ch not in "0123456789abcdef" for ch in hexv):
        return (0.0, 0.0, 0.0)
    return (
        int(hexv[0:2], 16) / 255.0,
        int(hexv[2:4], 16) / 255.0,
        int(hexv[4:6], 16) / 255.0,
    )


def measure_text(text: str, font_name: str, size: float) -> float:
    return pdfmetrics.stringWidth(text, font_name, size)


def compute_text_origin(
    text_width: float,
    page_height: float,
    position: Position,
    size: float,
    alignment: str,
) -> tuple[float, float]:
    """Baseline origin (bottom-left page space) for one line inside *position*.

    Overflowing text keeps its left edge on the box; it is never shrunk or wrapped.
    """
    if alignment == "center":
        x = position.x + (position.width - text_width) / 2.0
    elif alignment == "right":
        x = position.x + position.width - text_width
    else:
        x = position.x
    x = max(position.x, x)
    y = page_height - position.y - (position.height + size) / 2.0
    return x, y


def load_template(data: bytes) -> PdfReader:
    try:
        reader = PdfReader(io.BytesIO(data))
        page_count = len(reader.pages)
    except Exception as exc:
        raise TemplateParseError(f"Could not read PDF template: {exc}") from exc
    if page_count == 0:
        raise TemplateParseError("PDF template has no pages.")
    return reader


def draw_text_overlay(
    page_w: float,
    page_h: float,
    text: str,
    x: float,
    y: float,
    font_name: str,
    size: float,
    color: tuple[float, float, float],
) -> bytes:
    packet = io.BytesIO()
    # invariant=1 keeps creation dates and document ids out of the output.
    c = canvas.Canvas(packet, pagesize=(page_w, page_h), invariant=1)
    c.setFillColor(Color(*color))
    c.setFont(font_name, size)
    c.drawString(x, y, text)
    c.showPage()
    c.save()
    return packet.getvalue()


def render_field(
    template: bytes,
    text: str,
    position: Position,
    font_spec: FontSpec,
    strict: bool | None = None,
) -> bytes:
    """Draw *text* as one line inside *position* on page 0 of a PDF template."""
    line = " ".join(str(text).splitlines())
    if not line.strip():
        raise ValueError("Text to place must be a non-empty string.")
    if position.page != 0:
        raise ValueError(f"Only page 0 is supported for PDF templates (got page={position.page}).")

    reader = load_template(template)
    page = reader.pages[0]
    page_w = float(page.mediabox.width)
    page_h = float(page.mediabox.height)

    font_name = resolve_font_name(font_spec.family, strict=strict)
    text_width = measure_text(line, font_name, font_spec.size)
    x, y = compute_text_origin(text_width, page_h, position, font_spec.size, font_spec.alignment)

    overlay_bytes = draw_text_overlay(
        page_w=page_w,
        page_h=page_h,
        text=line,
        x=x,
        y=y,
        font_name=font_name,
        size=font_spec.size,
        color=parse_hex_color(font_spec.color),
    )

    writer = PdfWriter()
    for template_page in reader.pages:
        writer.add_page(template_page)
    # merge on the writer's copy of page 0
    writer.pages[0].merge_page(PdfReader(io.BytesIO(overlay_bytes)).pages[0])
    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()


def load_names_csv(path: Path, column: str = "name") -> list[str]:
    return parse_names_csv(path.read_text(encoding="utf-8-sig"), column)


def parse_names_csv(text: str, column: str = "name") -> list[str]:
    rows = list(csv.DictReader(io.StringIO(text, newline="")))
    if not rows:
        raise ValueError("CSV has no data rows.")
    lookup = {key.strip().lower(): key for key in rows[0].keys() if key}
    key = lookup.get(column.lower())
    if key is None:
        raise ValueError(f"CSV has no '{column}' column.")
    return [row[key].strip() for row in rows if (row.get(key) or "").strip()]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Place a recipient name inside a marked box on a single-page certificate PDF."
    )
    parser.add_argument("--template", required=True, help="Path to the template PDF.")
    parser.add_argument("--name", help="Name to place (single certificate).")
    parser.add_argument("--names-csv", help="CSV file with a 'name' column (batch mode).")
    parser.add_argument("--name-column", default="name", help="CSV column holding the names.")
    parser.add_argument("--x", type=float, required=True, help="Box left edge in points.")
    parser.add_argument("--y", type=float, required=True, help="Box top edge in points, from the page top.")
    parser.add_argument("--width", type=float, required=True, help="Box width in points.")
    parser.add_argument("--height", type=float, required=True, help="Box height in points.")
    parser.add_argument("--font", default="Helvetica", help="Built-in font family.")
    parser.add_argument("--size", type=float, default=24.0, help="Font size in points (8-144).")
    parser.add_argument("--color", default="#000000", help="Text color as #RRGGBB.")
    parser.add_argument("--align", default="center", choices=["left", "center", "right"])
    parser.add_argument(
        "--strict-fonts",
        action="store_true",
        help="Fail on unknown font families instead of falling back.",
    )
    parser.add_argument(
        "--output",
        required=True,
        help="Output PDF path, or output directory with --names-csv.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    if bool(args.name) == bool(args.names_csv):
        raise ValueError("Provide exactly one of --name or --names-csv.")

    template_bytes = Path(args.template).read_bytes()
    position = Position(x=args.x, y=args.y, width=args.width, height=args.height)
    font_spec = FontSpec(family=args.font, size=args.size, color=args.color, alignment=args.align)
    strict = True if args.strict_fonts else None

    if args.names_csv:
        from batch import run_certificate_batch

        names = load_names_csv(Path(args.names_csv), args.name_column)
        print(f"Generating {len(names)} certificates...")

        def report(session) -> None:
            item = session.items[session.processed_count - 1]
            print(f"  [{session.processed_count}/{len(session.items)}] {item.name}: {item.status}")

        session = run_certificate_batch(
            template=template_bytes,
            names=names,
            position=position,
            font_spec=font_spec,
            output_dir=Path(args.output),
            on_progress=report,
            strict=strict,
        )
        print(f"Done! {session.completed_count} generated, {session.error_count} failed.")
        if session.zip_path:
            print(f"Created ZIP archive: {session.zip_path}")
        return

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(render_field(template_bytes, args.name, position, font_spec, strict=strict))
    print(f"Wrote: {output_path}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    main()
