from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from errors import UnsupportedTemplateType


class Position(BaseModel):
    """Field box in template page units, origin at the top-left corner."""

    x: float
    y: float
    width: float = Field(gt=0)
    height: float = Field(gt=0)
    page: int = Field(default=0, ge=0)


class FontSpec(BaseModel):
    family: str = "Helvetica"
    size: float = Field(default=24, ge=8, le=144)
    color: str = Field(default="#000000", pattern=r"^#?[0-9A-Fa-f]{6}$")
    alignment: Literal["left", "center", "right"] = "center"


class TemplateKind(str, Enum):
    FIXED_LAYOUT = "fixed-layout"
    FLOWABLE = "flowable"


_KIND_BY_SUFFIX = {
    ".pdf": TemplateKind.FIXED_LAYOUT,
    ".docx": TemplateKind.FLOWABLE,
}

MEDIA_TYPES = {
    TemplateKind.FIXED_LAYOUT: "application/pdf",
    TemplateKind.FLOWABLE: "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}

FILE_SUFFIXES = {
    TemplateKind.FIXED_LAYOUT: ".pdf",
    TemplateKind.FLOWABLE: ".docx",
}


def kind_for_filename(filename: str) -> TemplateKind:
    kind = _KIND_BY_SUFFIX.get(Path(filename).suffix.lower())
    if kind is None:
        raise UnsupportedTemplateType(filename)
    return kind


@dataclass(frozen=True)
class LetterheadTemplate:
    data: bytes
    kind: TemplateKind

    @classmethod
    def from_upload(cls, filename: str, data: bytes) -> "LetterheadTemplate":
        return cls(data=data, kind=kind_for_filename(filename))


@dataclass(frozen=True)
class ContentUnit:
    """Letter body: authored HTML markup or an uploaded DOCX, never both."""

    markup: str | None = None
    document: bytes | None = None

    def __post_init__(self) -> None:
        if (self.markup is None) == (self.document is None):
            raise ValueError("ContentUnit needs exactly one of 'markup' or 'document'.")

    @classmethod
    def from_markup(cls, markup: str) -> "ContentUnit":
        return cls(markup=markup)

    @classmethod
    def from_document(cls, data: bytes) -> "ContentUnit":
        return cls(document=data)


@dataclass(frozen=True)
class ParagraphRecord:
    text: str
    bold: bool = False
    italic: bool = False
    underline: bool = False


@dataclass
class MergeResult:
    content: bytes
    achieved_kind: TemplateKind
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def media_type(self) -> str:
        return MEDIA_TYPES[self.achieved_kind]

    @property
    def suffix(self) -> str:
        return FILE_SUFFIXES[self.achieved_kind]
