"""
Shared record types for the form synthesis pipeline.

Detection works in text space (top-left origin, y down, as pdfplumber reports
it). Persisted fields live in PDF user space (bottom-left origin, y up).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class FieldKind(str, Enum):
    TEXT = "text"
    DATE = "date"
    EMAIL = "email"
    TEL = "tel"
    NUMBER = "number"
    TEXTAREA = "textarea"
    CHECKBOX = "checkbox"


@dataclass(frozen=True)
class Geometry:
    x: float
    y: float
    width: float
    height: float

    def flipped(self, page_height: float) -> "Geometry":
        """Same box measured from the opposite page edge."""
        return Geometry(self.x, page_height - self.y - self.height, self.width, self.height)


@dataclass(frozen=True)
class TextRun:
    content: str
    x: float
    y: float
    width: float
    height: float
    page: int       # 1-indexed


@dataclass(frozen=True)
class PageText:
    page: int
    width: float
    height: float
    runs: tuple[TextRun, ...] = ()


@dataclass(frozen=True)
class DetectedField:
    kind: FieldKind
    label: str
    geometry: Geometry      # text space
    page: int
    confidence: float
    nearby_context: tuple[str, ...]
    generated_name: str
    required: bool


@dataclass(frozen=True)
class LayoutAnalysis:
    page_count: int
    fields: list[DetectedField]
    text_blocks: list[TextRun]


@dataclass(frozen=True)
class CreatedField:
    name: str
    kind: FieldKind
    label: str
    page: int
    geometry: Geometry      # PDF user space
    max_length: int | None
    required: bool
    nearby_context: tuple[str, ...] = field(default=())


@dataclass(frozen=True)
class FieldMapping:
    field_name: str
    data_key: str
    value: Any
    confidence: float


@dataclass(frozen=True)
class FieldContext:
    """Printed text around an existing field, split by direction.

    Each side holds fragments in reading order, so the fragment nearest the
    field is last in `before` and `above` and first in `after` and `below`.
    """
    name: str
    kind: FieldKind
    page: int
    geometry: Geometry      # text space
    before: tuple[str, ...] = ()
    after: tuple[str, ...] = ()
    above: tuple[str, ...] = ()
    below: tuple[str, ...] = ()
    nearby: tuple[str, ...] = ()


@dataclass(frozen=True)
class FieldAnalysis:
    field_name: str
    kind: FieldKind
    label: str
    data_type: str          # text, email, date, tel, number, fiscalcode, pod, pdr, iban
    category: str           # anagrafica, indirizzo_residenza, dati_luce, ...
    description: str
    required: bool
    mapping_suggestion: str
