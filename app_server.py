import json
import logging
import uuid
from typing import Any

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel, ValidationError

import settings
from batch import (
    InMemorySessionStore,
    InMemoryTemplateStore,
    register_template,
    run_certificate_batch,
    run_letterhead_job,
    save_template_position,
)
from certificate_overlay import parse_names_csv, render_field
from document_models import FILE_SUFFIXES, MEDIA_TYPES, ContentUnit, FontSpec, LetterheadTemplate, Position, TemplateKind
from errors import CompositionError
from template_inspect import describe_template, extract_fonts_from_pdf

logger = logging.getLogger(__name__)

app = FastAPI(title="Certificate & Letterhead API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Batch-Summary", "X-Achieved-Kind", "X-Degraded", "X-Session-Id"],
)

# Ledger for batch and letterhead sessions.
session_store = InMemorySessionStore()
# Uploaded certificate templates with their saved field settings.
template_store = InMemoryTemplateStore()

_OUTPUT_FORMATS = {
    "pdf": TemplateKind.FIXED_LAYOUT,
    "fixed-layout": TemplateKind.FIXED_LAYOUT,
    "docx": TemplateKind.FLOWABLE,
    "flowable": TemplateKind.FLOWABLE,
}


class TemplatePositionRequest(BaseModel):
    position: Position
    font_spec: FontSpec | None = None


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "message": "Request validation failed.",
            "detail": exc.errors(),
        },
    )


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "message": "Invalid position or font settings.",
            "detail": json.loads(exc.json()),
        },
    )


@app.exception_handler(CompositionError)
async def composition_error_handler(request: Request, exc: CompositionError) -> JSONResponse:
    logger.error("%s: %s", type(exc).__name__, exc)
    return JSONResponse(
        status_code=400,
        content={"message": str(exc), "code": type(exc).__name__},
    )


def read_upload(upload: UploadFile) -> bytes:
    contents = upload.file.read()
    if not contents:
        raise HTTPException(status_code=400, detail=f"Uploaded file '{upload.filename}' is empty.")
    return contents


def _provided(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def resolve_certificate_inputs(
    template: UploadFile | None,
    template_id: str | None,
    box: dict[str, Any],
    font: dict[str, Any],
) -> tuple[bytes, Position, FontSpec]:
    """Template bytes and field settings from an upload or a stored template.

    Form values override whatever was saved with the stored template.
    """
    stored = None
    if template_id:
        stored = template_store.get(template_id)
        if stored is None:
            raise HTTPException(status_code=404, detail="Template not found")
        data = stored.data
    elif template is not None:
        data = read_upload(template)
    else:
        raise HTTPException(status_code=400, detail="Provide a template upload or a template_id.")

    position_fields = stored.position.model_dump() if stored and stored.position else {}
    position_fields.update(_provided(box))
    missing = [key for key in ("x", "y", "width", "height") if key not in position_fields]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing field box values: {', '.join(missing)}")

    font_fields = stored.font_spec.model_dump() if stored and stored.font_spec else {}
    font_fields.update(_provided(font))
    return data, Position(**position_fields), FontSpec(**font_fields)


@app.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/templates/upload")
def upload_template(template: UploadFile = File(...)) -> dict[str, Any]:
    stored = register_template(template_store, template.filename or "", read_upload(template))
    return {
        "template_id": stored.id,
        "name": stored.name,
        "page_count": stored.page_count,
        "page_width": stored.page_width,
        "page_height": stored.page_height,
    }


@app.get("/api/templates")
def list_templates() -> list[dict[str, Any]]:
    return [stored.to_dict() for stored in template_store.list_all()]


@app.get("/api/templates/{template_id}")
def get_template(template_id: str) -> dict[str, Any]:
    stored = template_store.get(template_id)
    if stored is None:
        raise HTTPException(status_code=404, detail="Template not found")
    return stored.to_dict()


@app.post("/api/templates/{template_id}/position")
def save_position(template_id: str, request: TemplatePositionRequest) -> dict[str, Any]:
    stored = save_template_position(template_store, template_id, request.position, request.font_spec)
    if stored is None:
        raise HTTPException(status_code=404, detail="Template not found")
    return {"success": True, "template": stored.to_dict()}


@app.post("/api/certificates/preview")
def preview_certificate(
    template: UploadFile | None = File(None),
    template_id: str | None = Form(None),
    name: str = Form(...),
    x: float | None = Form(None),
    y: float | None = Form(None),
    width: float | None = Form(None),
    height: float | None = Form(None),
    page: int | None = Form(None),
    font_family: str | None = Form(None),
    font_size: float | None = Form(None),
    color: str | None = Form(None),
    alignment: str | None = Form(None),
) -> Response:
    data, position, font_spec = resolve_certificate_inputs(
        template,
        template_id,
        {"x": x, "y": y, "width": width, "height": height, "page": page},
        {"family": font_family, "size": font_size, "color": color, "alignment": alignment},
    )
    try:
        pdf_bytes = render_field(data, name, position, font_spec)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": 'inline; filename="preview.pdf"'},
    )


@app.post("/api/certificates/generate")
def generate_certificates(
    template: UploadFile | None = File(None),
    template_id: str | None = Form(None),
    names: str | None = Form(None),
    names_csv: UploadFile | None = File(None),
    name_column: str = Form("name"),
    x: float | None = Form(None),
    y: float | None = Form(None),
    width: float | None = Form(None),
    height: float | None = Form(None),
    page: int | None = Form(None),
    font_family: str | None = Form(None),
    font_size: float | None = Form(None),
    color: str | None = Form(None),
    alignment: str | None = Form(None),
) -> FileResponse:
    data, position, font_spec = resolve_certificate_inputs(
        template,
        template_id,
        {"x": x, "y": y, "width": width, "height": height, "page": page},
        {"family": font_family, "size": font_size, "color": color, "alignment": alignment},
    )

    if names_csv is not None:
        try:
            participants = parse_names_csv(read_upload(names_csv).decode("utf-8-sig"), name_column)
        except (UnicodeDecodeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"Could not read names CSV: {exc}") from exc
    elif names:
        participants = [line.strip() for line in names.splitlines() if line.strip()]
    else:
        participants = []
    if not participants:
        raise HTTPException(status_code=400, detail="Participants are required.")

    output_dir = settings.OUTPUT_DIR / f"batch_{uuid.uuid4().hex}"
    session = run_certificate_batch(
        template=data,
        names=participants,
        position=position,
        font_spec=font_spec,
        output_dir=output_dir,
        store=session_store,
    )
    summary = {
        "session_id": session.id,
        "completed": session.completed_count,
        "errors": session.error_count,
        "total": len(session.items),
    }
    if not session.zip_path:
        raise HTTPException(
            status_code=400,
            detail={"message": "No certificates were generated.", "session": session.to_dict()},
        )
    return FileResponse(
        session.zip_path,
        media_type="application/zip",
        filename="certificates.zip",
        headers={"X-Batch-Summary": json.dumps(summary), "X-Session-Id": session.id},
    )


@app.get("/api/sessions/{session_id}")
def get_session(session_id: str) -> dict[str, Any]:
    session = session_store.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.to_dict()


@app.post("/api/letterheads/generate")
def generate_letterhead(
    template: UploadFile = File(...),
    content_html: str | None = Form(None),
    content_file: UploadFile | None = File(None),
    output_format: str = Form("pdf"),
) -> FileResponse:
    desired_kind = _OUTPUT_FORMATS.get(output_format.strip().lower())
    if desired_kind is None:
        raise HTTPException(status_code=400, detail=f"Unsupported output format: {output_format}")

    letterhead = LetterheadTemplate.from_upload(template.filename or "", read_upload(template))
    try:
        if content_file is not None:
            content = ContentUnit.from_document(read_upload(content_file))
        else:
            content = ContentUnit(markup=content_html or None)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Provide either content_html or content_file.") from exc

    session = run_letterhead_job(
        template=letterhead,
        content=content,
        desired_kind=desired_kind,
        output_dir=settings.OUTPUT_DIR / "letterheads",
        store=session_store,
    )
    if session.status != "completed" or not session.output_path:
        raise HTTPException(status_code=400, detail={"message": "Letterhead generation failed.", "error": session.error})

    achieved = TemplateKind(session.achieved_kind)
    return FileResponse(
        session.output_path,
        media_type=MEDIA_TYPES[achieved],
        filename=f"letterhead-document{FILE_SUFFIXES[achieved]}",
        headers={
            "X-Achieved-Kind": achieved.value,
            "X-Degraded": "true" if session.degraded else "false",
            "X-Session-Id": session.id,
        },
    )


@app.post("/api/templates/inspect")
def inspect_template(template: UploadFile = File(...)) -> dict[str, Any]:
    return describe_template(read_upload(template))


@app.post("/api/extract-fonts")
def extract_template_fonts(template: UploadFile = File(...)) -> dict[str, list[str]]:
    """Extract unique font names from a PDF template."""
    return {"fonts": extract_fonts_from_pdf(read_upload(template))}
