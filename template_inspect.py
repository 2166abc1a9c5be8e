import argparse
import json
from pathlib import Path

import fitz

from errors import TemplateParseError


def open_pdf(data: bytes) -> fitz.Document:
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise TemplateParseError(f"Could not read PDF template: {exc}") from exc
    if doc.page_count == 0:
        doc.close()
        raise TemplateParseError("PDF template has no pages.")
    return doc


def to_bottom_left_bbox(bbox: list[float], page_h: float) -> list[float]:
    x0, y0, x1, y1 = bbox
    return [x0, page_h - y1, x1, page_h - y0]


def iter_spans(page: fitz.Page):
    data = page.get_text("dict")
    for block in data.get("blocks", []):
        if block.get("type") != 0:
            continue
        for line in block.get("lines", []):
            for span in line.get("spans", []):
                yield span


def find_text_spans(data: bytes, page_index: int = 0, contains: str | None = None) -> list[dict]:
    """Text spans on one page with top-left and bottom-left coordinates."""
    doc = open_pdf(data)
    try:
        if page_index < 0 or page_index >= doc.page_count:
            raise IndexError(f"Page {page_index} out of range. PDF has {doc.page_count} page(s).")
        page = doc[page_index]
        page_h = float(page.rect.height)
        needle = contains.lower() if contains else None

        items: list[dict] = []
        for span in iter_spans(page):
            text = (span.get("text") or "").strip()
            if not text:
                continue
            if needle and needle not in text.lower():
                continue
            bbox = list(span.get("bbox", [0, 0, 0, 0]))
            origin = span.get("origin")
            items.append(
                {
                    "text": text,
                    "font": span.get("font"),
                    "size": span.get("size"),
                    "color": "#{:06x}".format(span.get("color", 0)),
                    "bbox_top_left": bbox,
                    "bbox_bottom_left": to_bottom_left_bbox(bbox, page_h),
                    "origin_top_left": list(origin) if origin else None,
                    "origin_bottom_left": [origin[0], page_h - origin[1]] if origin else None,
                }
            )
        return items
    finally:
        doc.close()


def extract_fonts_from_pdf(data: bytes) -> list[str]:
    """Unique font names used by text on any page."""
    doc = open_pdf(data)
    try:
        fonts = set()
        for page in doc:
            for span in iter_spans(page):
                if span.get("font"):
                    fonts.add(span["font"])
        return sorted(fonts)
    finally:
        doc.close()


def describe_template(data: bytes) -> dict:
    doc = open_pdf(data)
    try:
        first = doc[0]
        page_count = doc.page_count
        page_w = float(first.rect.width)
        page_h = float(first.rect.height)
    finally:
        doc.close()
    return {
        "page_count": page_count,
        "page_width": page_w,
        "page_height": page_h,
        "single_page": page_count == 1,
        "fonts": extract_fonts_from_pdf(data),
    }


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Show page size, fonts and text spans of a PDF template.")
    parser.add_argument("template", help="Path to the template PDF.")
    parser.add_argument("--page", type=int, default=0, help="Page index for text spans.")
    parser.add_argument("--contains", help="Only list spans containing this text (case-insensitive).")
    parser.add_argument("--output-json", help="Write the report to a JSON file.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    data = Path(args.template).read_bytes()
    info = describe_template(data)
    spans = find_text_spans(data, args.page, args.contains)

    print(f"Template: {args.template}")
    print(f"Pages: {info['page_count']}  Size: {info['page_width']:.2f} x {info['page_height']:.2f} points")
    print(f"Fonts: {', '.join(info['fonts']) or '-'}")
    for idx, item in enumerate(spans, start=1):
        x0, y0, x1, y1 = item["bbox_top_left"]
        print(f"{idx:03d} | '{item['text']}' | font={item['font']} size={item['size']:.1f} | "
              f"bbox_tl=({x0:.2f},{y0:.2f},{x1:.2f},{y1:.2f})")

    if args.output_json:
        output_json = Path(args.output_json)
        output_json.parent.mkdir(parents=True, exist_ok=True)
        output_json.write_text(json.dumps({**info, "page": args.page, "items": spans}, indent=2), encoding="utf-8")
        print(f"Wrote JSON: {output_json}")


if __name__ == "__main__":
    main()
