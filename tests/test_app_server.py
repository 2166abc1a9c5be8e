import io
import json
import zipfile

import pytest
from docx import Document as DocxDocument
from fastapi.testclient import TestClient

import app_server
import format_bridge
import settings
from errors import ConversionUnavailable
from template_inspect import find_text_spans

FIELD_FORM = {"x": "100", "y": "200", "width": "300", "height": "50", "font_size": "36"}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "OUTPUT_DIR", tmp_path)
    return TestClient(app_server.app)


def pdf_upload(data: bytes, name: str = "template.pdf"):
    return (name, data, "application/pdf")


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_preview_returns_pdf(client, certificate_template):
    response = client.post(
        "/api/certificates/preview",
        data={**FIELD_FORM, "name": "Jane Doe"},
        files={"template": pdf_upload(certificate_template)},
    )
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert find_text_spans(response.content, contains="Jane Doe")


def test_preview_rejects_invalid_font_size(client, certificate_template):
    response = client.post(
        "/api/certificates/preview",
        data={**FIELD_FORM, "font_size": "300", "name": "Jane Doe"},
        files={"template": pdf_upload(certificate_template)},
    )
    assert response.status_code == 422


def test_preview_rejects_malformed_template(client):
    response = client.post(
        "/api/certificates/preview",
        data={**FIELD_FORM, "name": "Jane Doe"},
        files={"template": pdf_upload(b"not a pdf")},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "TemplateParseError"


def test_preview_rejects_other_pages(client, certificate_template):
    response = client.post(
        "/api/certificates/preview",
        data={**FIELD_FORM, "name": "Jane Doe", "page": "1"},
        files={"template": pdf_upload(certificate_template)},
    )
    assert response.status_code == 400


def test_generate_certificates_returns_zip(client, certificate_template):
    response = client.post(
        "/api/certificates/generate",
        data={**FIELD_FORM, "names": "Jane Doe\nR2-D2\nJohn Roe\n"},
        files={"template": pdf_upload(certificate_template)},
    )

    assert response.status_code == 200
    summary = json.loads(response.headers["x-batch-summary"])
    assert summary["completed"] == 2
    assert summary["errors"] == 1
    assert summary["total"] == 3
    with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
        assert len(zf.namelist()) == 2

    session = client.get(f"/api/sessions/{response.headers['x-session-id']}").json()
    assert session["status"] == "completed"
    assert session["items"][1]["status"] == "error"


def test_generate_certificates_from_csv(client, certificate_template):
    csv_bytes = b"Name,Email\nJane Doe,jane@example.com\nJohn Roe,john@example.com\n"
    response = client.post(
        "/api/certificates/generate",
        data=FIELD_FORM,
        files={"template": pdf_upload(certificate_template), "names_csv": ("names.csv", csv_bytes, "text/csv")},
    )
    assert response.status_code == 200
    assert json.loads(response.headers["x-batch-summary"])["completed"] == 2


def test_generate_certificates_requires_names(client, certificate_template):
    response = client.post(
        "/api/certificates/generate",
        data={**FIELD_FORM, "names": "  \n "},
        files={"template": pdf_upload(certificate_template)},
    )
    assert response.status_code == 400


def test_unknown_session(client):
    assert client.get("/api/sessions/missing").status_code == 404


def test_letterhead_docx_generation(client, letter_docx_template):
    response = client.post(
        "/api/letterheads/generate",
        data={"content_html": "<p>Hello</p><p>World</p>", "output_format": "docx"},
        files={"template": ("letterhead.docx", letter_docx_template, "application/octet-stream")},
    )

    assert response.status_code == 200
    assert response.headers["x-achieved-kind"] == "flowable"
    assert response.headers["x-degraded"] == "false"
    assert "letterhead-document.docx" in response.headers["content-disposition"]
    paragraphs = [p.text for p in DocxDocument(io.BytesIO(response.content)).paragraphs]
    assert paragraphs == ["ABC Corp", "", "Hello", "World"]


def test_letterhead_pdf_request_degrades_without_converter(client, letter_docx_template, monkeypatch):
    def unavailable(docx_bytes, timeout=None):
        raise ConversionUnavailable("LibreOffice (soffice) is not installed.")

    monkeypatch.setattr(format_bridge, "convert", unavailable)
    response = client.post(
        "/api/letterheads/generate",
        data={"content_html": "<p>Hello</p>", "output_format": "pdf"},
        files={"template": ("letterhead.docx", letter_docx_template, "application/octet-stream")},
    )

    assert response.status_code == 200
    assert response.headers["x-achieved-kind"] == "flowable"
    assert response.headers["x-degraded"] == "true"


def test_letterhead_pdf_template_with_uploaded_content(client, letter_pdf_template):
    content = io.BytesIO()
    d = DocxDocument()
    d.add_paragraph("Dear team,")
    d.save(content)
    response = client.post(
        "/api/letterheads/generate",
        data={"output_format": "pdf"},
        files={
            "template": pdf_upload(letter_pdf_template, "letterhead.pdf"),
            "content_file": ("letter.docx", content.getvalue(), "application/octet-stream"),
        },
    )

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert find_text_spans(response.content, contains="Dear team")


def test_letterhead_rejects_unsupported_template(client):
    response = client.post(
        "/api/letterheads/generate",
        data={"content_html": "<p>Hello</p>"},
        files={"template": ("letterhead.odt", b"data", "application/octet-stream")},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "UnsupportedTemplateType"


def test_letterhead_requires_content(client, letter_pdf_template):
    response = client.post(
        "/api/letterheads/generate",
        data={"output_format": "pdf"},
        files={"template": pdf_upload(letter_pdf_template, "letterhead.pdf")},
    )
    assert response.status_code == 400


def test_letterhead_rejects_unknown_output_format(client, letter_pdf_template):
    response = client.post(
        "/api/letterheads/generate",
        data={"content_html": "<p>Hello</p>", "output_format": "odt"},
        files={"template": pdf_upload(letter_pdf_template, "letterhead.pdf")},
    )
    assert response.status_code == 400


def test_inspect_template(client, certificate_template):
    response = client.post("/api/templates/inspect", files={"template": pdf_upload(certificate_template)})
    assert response.status_code == 200
    assert response.json()["page_width"] == 800.0


def test_extract_fonts(client, certificate_template):
    response = client.post("/api/extract-fonts", files={"template": pdf_upload(certificate_template)})
    assert response.json() == {"fonts": ["Times-Roman"]}


def upload_template(client, data: bytes, name: str = "award.pdf") -> dict:
    response = client.post("/api/templates/upload", files={"template": pdf_upload(data, name)})
    assert response.status_code == 200
    return response.json()


def test_template_upload_reports_page_info(client, certificate_template):
    uploaded = upload_template(client, certificate_template)
    assert uploaded["name"] == "award"
    assert uploaded["page_count"] == 1
    assert (uploaded["page_width"], uploaded["page_height"]) == (800.0, 600.0)

    stored = client.get(f"/api/templates/{uploaded['template_id']}").json()
    assert stored["position"] is None
    assert stored["font_spec"] is None
    assert uploaded["template_id"] in [t["id"] for t in client.get("/api/templates").json()]


def test_template_upload_rejects_bad_files(client):
    bad_pdf = client.post("/api/templates/upload", files={"template": pdf_upload(b"not a pdf")})
    assert bad_pdf.status_code == 400
    assert bad_pdf.json()["code"] == "TemplateParseError"

    docx = client.post("/api/templates/upload", files={"template": ("award.docx", b"PK", "application/octet-stream")})
    assert docx.status_code == 400
    assert docx.json()["code"] == "UnsupportedTemplateType"


def test_saved_position_gets_default_font(client, certificate_template):
    template_id = upload_template(client, certificate_template)["template_id"]

    response = client.post(
        f"/api/templates/{template_id}/position",
        json={"position": {"x": 100, "y": 200, "width": 300, "height": 50}},
    )

    assert response.status_code == 200
    stored = client.get(f"/api/templates/{template_id}").json()
    assert stored["position"] == {"x": 100.0, "y": 200.0, "width": 300.0, "height": 50.0, "page": 0}
    assert stored["font_spec"] == {"family": "Helvetica", "size": 36.0, "color": "#000000", "alignment": "center"}


def test_saved_position_is_validated(client, certificate_template):
    template_id = upload_template(client, certificate_template)["template_id"]
    response = client.post(
        f"/api/templates/{template_id}/position",
        json={"position": {"x": 100, "y": 200, "width": 0, "height": 50}},
    )
    assert response.status_code == 422


def test_unknown_template_id(client):
    assert client.get("/api/templates/missing").status_code == 404
    response = client.post(
        "/api/templates/missing/position",
        json={"position": {"x": 1, "y": 1, "width": 1, "height": 1}},
    )
    assert response.status_code == 404
    assert client.post("/api/certificates/preview", data={"template_id": "missing", "name": "Jane Doe"}).status_code == 404


def test_preview_from_stored_template(client, certificate_template):
    template_id = upload_template(client, certificate_template)["template_id"]
    client.post(
        f"/api/templates/{template_id}/position",
        json={"position": {"x": 100, "y": 200, "width": 300, "height": 50}},
    )

    response = client.post("/api/certificates/preview", data={"template_id": template_id, "name": "Jane Doe"})

    assert response.status_code == 200
    span = find_text_spans(response.content, contains="Jane Doe")[0]
    assert span["size"] == pytest.approx(36, abs=0.01)
    assert span["origin_bottom_left"][1] == pytest.approx(357, abs=0.05)


def test_form_values_override_stored_settings(client, certificate_template):
    template_id = upload_template(client, certificate_template)["template_id"]
    client.post(
        f"/api/templates/{template_id}/position",
        json={"position": {"x": 100, "y": 200, "width": 300, "height": 50}},
    )

    response = client.post(
        "/api/certificates/preview",
        data={"template_id": template_id, "name": "Jane Doe", "font_size": "20", "alignment": "left"},
    )

    span = find_text_spans(response.content, contains="Jane Doe")[0]
    assert span["size"] == pytest.approx(20, abs=0.01)
    assert span["origin_bottom_left"][0] == pytest.approx(100, abs=0.05)


def test_stored_template_without_position_needs_a_box(client, certificate_template):
    template_id = upload_template(client, certificate_template)["template_id"]
    response = client.post("/api/certificates/preview", data={"template_id": template_id, "name": "Jane Doe"})
    assert response.status_code == 400


def test_preview_needs_a_template(client):
    response = client.post("/api/certificates/preview", data={**FIELD_FORM, "name": "Jane Doe"})
    assert response.status_code == 400


def test_generate_certificates_from_stored_template(client, certificate_template):
    template_id = upload_template(client, certificate_template)["template_id"]
    client.post(
        f"/api/templates/{template_id}/position",
        json={
            "position": {"x": 100, "y": 200, "width": 300, "height": 50},
            "font_spec": {"family": "Times-Roman", "size": 30, "color": "#ff0000", "alignment": "right"},
        },
    )

    response = client.post(
        "/api/certificates/generate",
        data={"template_id": template_id, "names": "Jane Doe\nJohn Roe"},
    )

    assert response.status_code == 200
    assert json.loads(response.headers["x-batch-summary"])["completed"] == 2
    with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
        first = zf.read(sorted(zf.namelist())[0])
    span = find_text_spans(first, contains="Jane Doe")[0]
    assert span["font"] == "Times-Roman"
    assert span["color"] == "#ff0000"
