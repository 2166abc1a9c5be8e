"""Sequential batch runs over the composition engines.

Items run one after another. A failed item is recorded in the session ledger
and the batch moves on. Cancellation is checked between items only. Sessions
and uploaded certificate templates live in injectable stores.
"""
from __future__ import annotations

import logging
import re
import threading
import uuid
import zipfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol

from certificate_overlay import load_template, render_field
from document_models import (
    ContentUnit,
    FontSpec,
    LetterheadTemplate,
    Position,
    TemplateKind,
    kind_for_filename,
)
from errors import CompositionError, UnsupportedTemplateType
from letterhead_merge import merge_letterhead

logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^(?:[^\W\d_]|[\s\-'.])+$")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class BatchItem:
    index: int
    name: str
    status: str = "pending"  # pending | processed | error | cancelled
    output_path: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BatchSession:
    id: str
    kind: str  # certificate | letterhead
    items: list[BatchItem] = field(default_factory=list)
    status: str = "pending"  # pending | processing | completed | cancelled | failed
    progress: int = 0
    zip_path: Optional[str] = None
    output_path: Optional[str] = None
    achieved_kind: Optional[str] = None
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)
    error: Optional[str] = None
    created_at: str = field(default_factory=_now)
    completed_at: Optional[str] = None

    @property
    def completed_count(self) -> int:
        return sum(1 for item in self.items if item.status == "processed")

    @property
    def error_count(self) -> int:
        return sum(1 for item in self.items if item.status == "error")

    @property
    def processed_count(self) -> int:
        return sum(1 for item in self.items if item.status in {"processed", "error"})

    def to_dict(self) -> dict:
        data = asdict(self)
        data.update(
            completed_count=self.completed_count,
            error_count=self.error_count,
            total_count=len(self.items),
        )
        return data


class SessionStore(Protocol):
    def save(self, session: BatchSession) -> None: ...

    def get(self, session_id: str) -> Optional[BatchSession]: ...


class InMemorySessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, BatchSession] = {}
        self._lock = threading.Lock()

    def save(self, session: BatchSession) -> None:
        with self._lock:
            self._sessions[session.id] = session

    def get(self, session_id: str) -> Optional[BatchSession]:
        with self._lock:
            return self._sessions.get(session_id)


# Field settings given to a template when a box is saved without fonts.
DEFAULT_FIELD_FONT = FontSpec(family="Helvetica", size=36, color="#000000", alignment="center")


@dataclass
class StoredTemplate:
    id: str
    name: str
    filename: str
    data: bytes
    page_count: int
    page_width: float
    page_height: float
    position: Optional[Position] = None
    font_spec: Optional[FontSpec] = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "filename": self.filename,
            "page_count": self.page_count,
            "page_width": self.page_width,
            "page_height": self.page_height,
            "position": self.position.model_dump() if self.position else None,
            "font_spec": self.font_spec.model_dump() if self.font_spec else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class TemplateStore(Protocol):
    def save(self, template: StoredTemplate) -> None: ...

    def get(self, template_id: str) -> Optional[StoredTemplate]: ...

    def list_all(self) -> list[StoredTemplate]: ...


class InMemoryTemplateStore:
    def __init__(self) -> None:
        self._templates: dict[str, StoredTemplate] = {}
        self._lock = threading.Lock()

    def save(self, template: StoredTemplate) -> None:
        with self._lock:
            self._templates[template.id] = template

    def get(self, template_id: str) -> Optional[StoredTemplate]:
        with self._lock:
            return self._templates.get(template_id)

    def list_all(self) -> list[StoredTemplate]:
        with self._lock:
            return list(self._templates.values())


def register_template(store: TemplateStore, filename: str, data: bytes) -> StoredTemplate:
    """Validate a certificate PDF and keep it in *store* under a new id."""
    if kind_for_filename(filename) != TemplateKind.FIXED_LAYOUT:
        raise UnsupportedTemplateType(filename)
    reader = load_template(data)
    first_page = reader.pages[0]
    template = StoredTemplate(
        id=uuid.uuid4().hex,
        name=Path(filename).stem,
        filename=Path(filename).name,
        data=data,
        page_count=len(reader.pages),
        page_width=float(first_page.mediabox.width),
        page_height=float(first_page.mediabox.height),
    )
    store.save(template)
    logger.info("Stored template %s (%s, %d page(s))", template.id, template.filename, template.page_count)
    return template


def save_template_position(
    store: TemplateStore,
    template_id: str,
    position: Position,
    font_spec: FontSpec | None = None,
) -> Optional[StoredTemplate]:
    template = store.get(template_id)
    if template is None:
        return None
    template.position = position
    template.font_spec = font_spec or DEFAULT_FIELD_FONT
    template.updated_at = _now()
    store.save(template)
    return template


def sanitize_name(name: str) -> str:
    cleaned = " ".join(str(name).split())
    return "".join(ch for ch in cleaned if ch.isalpha() or ch in " -'.")


def validate_participant_name(name: str) -> str | None:
    """Return an error message for an unusable participant name, else None."""
    if not isinstance(name, str) or not name.strip():
        return "Name must be a non-empty string"
    trimmed = name.strip()
    if len(trimmed) < 2:
        return "Name must be at least 2 characters"
    if len(trimmed) > 100:
        return "Name must be at most 100 characters"
    if not _NAME_PATTERN.match(trimmed):
        return "Name contains invalid characters"
    return None


def safe_file_stem(name: str) -> str:
    stem = re.sub(r"[^A-Za-z0-9\s-]", "", name)
    stem = re.sub(r"\s+", "_", stem.strip())
    return stem[:50] or "participant"


def _save(store: SessionStore | None, session: BatchSession) -> None:
    if store is not None:
        store.save(session)


def run_certificate_batch(
    template: bytes,
    names: list[str],
    position: Position,
    font_spec: FontSpec,
    output_dir: Path,
    store: SessionStore | None = None,
    should_cancel: Callable[[], bool] | None = None,
    on_progress: Callable[[BatchSession], None] | None = None,
    validate_names: bool = True,
    strict: bool | None = None,
) -> BatchSession:
    session = BatchSession(
        id=uuid.uuid4().hex,
        kind="certificate",
        items=[BatchItem(index=i, name=name) for i, name in enumerate(names)],
        status="processing",
    )
    _save(store, session)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    generated: list[Path] = []
    total = len(session.items)
    for i, item in enumerate(session.items):
        if should_cancel is not None and should_cancel():
            for pending in session.items[i:]:
                pending.status = "cancelled"
            session.status = "cancelled"
            logger.info("Batch %s cancelled after %d of %d items", session.id, i, total)
            break

        try:
            problem = validate_participant_name(item.name) if validate_names else None
            if problem:
                raise ValueError(problem)
            name = sanitize_name(item.name) if validate_names else item.name
            pdf_bytes = render_field(template, name, position, font_spec, strict=strict)
            output_path = output_dir / f"Certificate_{safe_file_stem(name)}_{i + 1:04d}.pdf"
            output_path.write_bytes(pdf_bytes)
        except (CompositionError, ValueError, OSError) as exc:
            logger.error("Error generating certificate for %s: %s", item.name, exc)
            item.status = "error"
            item.error = str(exc)
        else:
            item.status = "processed"
            item.output_path = str(output_path)
            generated.append(output_path)

        session.progress = round((i + 1) / total * 100)
        _save(store, session)
        if on_progress is not None:
            on_progress(session)

    if generated:
        zip_path = output_dir / "certificates.zip"
        with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED) as zipf:
            for pdf_file in generated:
                zipf.write(pdf_file, pdf_file.name)
        session.zip_path = str(zip_path)

    if session.status != "cancelled":
        session.status = "completed"
    session.completed_at = _now()
    _save(store, session)
    return session


def run_letterhead_job(
    template: LetterheadTemplate,
    content: ContentUnit,
    desired_kind: TemplateKind,
    output_dir: Path,
    store: SessionStore | None = None,
) -> BatchSession:
    session = BatchSession(id=uuid.uuid4().hex, kind="letterhead", status="processing")
    _save(store, session)
    logger.info("Processing letterhead for session %s (%s template)", session.id, template.kind.value)

    try:
        result = merge_letterhead(template, content, desired_kind)
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / f"letterhead_{session.id}{result.suffix}"
        output_path.write_bytes(result.content)
    except (CompositionError, ValueError, OSError) as exc:
        logger.error("Error processing letterhead for session %s: %s", session.id, exc)
        session.status = "failed"
        session.error = str(exc)
    else:
        session.status = "completed"
        session.progress = 100
        session.output_path = str(output_path)
        session.achieved_kind = result.achieved_kind.value
        session.degraded = result.degraded
        session.warnings = list(result.warnings)

    session.completed_at = _now()
    _save(store, session)
    return session
