"""
AcroForm authoring and read-back with PyMuPDF.

Geometry crossing this module is in PDF user space (bottom-left origin,
y up), which is what a field's /Rect stores. PyMuPDF works in page space
(top-left origin), so rectangles are mapped through the page's
transformation matrix on the way in and its inverse on the way out.
"""

import logging
from dataclasses import dataclass

import fitz  # PyMuPDF

from formsynth.errors import DocumentError, FieldCreationError
from formsynth.state import FieldKind, Geometry

logger = logging.getLogger(__name__)

_TEXT_BORDER = (0.7, 0.7, 0.7)
_TEXT_FILL = (1, 1, 0.9)    # pale yellow, visible on white paper
_CHECKBOX_BORDER = (0, 0, 0)
_BORDER_WIDTH = 1

_CHECKABLE_TYPES = {fitz.PDF_WIDGET_TYPE_CHECKBOX, fitz.PDF_WIDGET_TYPE_RADIOBUTTON}


@dataclass(frozen=True)
class FormWidget:
    """One field read back from a document (first widget per field name)."""
    name: str
    kind: FieldKind
    page: int
    page_height: float
    geometry: Geometry      # PDF user space
    max_length: int | None
    required: bool
    tooltip: str


def open_pdf(document: bytes) -> fitz.Document:
    try:
        return fitz.open(stream=document, filetype="pdf")
    except Exception as exc:
        raise DocumentError(f"Cannot open PDF: {exc}") from exc


def save_pdf(doc: fitz.Document) -> bytes:
    try:
        return doc.tobytes(garbage=3, deflate=True)
    except Exception as exc:
        raise DocumentError(f"Cannot serialize PDF: {exc}") from exc


def get_page(doc: fitz.Document, page_num: int) -> fitz.Page:
    if not 1 <= page_num <= doc.page_count:
        raise FieldCreationError(f"Page {page_num} out of range (document has {doc.page_count})")
    return doc[page_num - 1]


def _page_rect(page: fitz.Page, geometry: Geometry) -> fitz.Rect:
    if geometry.width <= 0 or geometry.height <= 0:
        raise FieldCreationError(f"Field rectangle has no area: {geometry}")
    rect = fitz.Rect(geometry.x, geometry.y, geometry.x + geometry.width, geometry.y + geometry.height)
    rect = rect * page.transformation_matrix
    if rect.is_empty or rect.is_infinite:
        raise FieldCreationError(f"Unusable field rectangle {geometry}")
    return rect


def field_names(doc: fitz.Document) -> set[str]:
    return {w.field_name for page in doc for w in page.widgets() if w.field_name}


def add_text_field(
    page: fitz.Page,
    geometry: Geometry,
    name: str,
    label: str,
    max_length: int,
    required: bool,
) -> None:
    widget = fitz.Widget()
    widget.field_type = fitz.PDF_WIDGET_TYPE_TEXT
    widget.field_name = name
    widget.field_label = label
    widget.rect = _page_rect(page, geometry)
    widget.border_width = _BORDER_WIDTH
    widget.border_color = _TEXT_BORDER
    widget.fill_color = _TEXT_FILL
    widget.text_maxlen = max_length
    if required:
        widget.field_flags |= fitz.PDF_FIELD_IS_REQUIRED
    page.add_widget(widget)


def add_checkbox(page: fitz.Page, geometry: Geometry, name: str, label: str) -> None:
    widget = fitz.Widget()
    widget.field_type = fitz.PDF_WIDGET_TYPE_CHECKBOX
    widget.field_name = name
    widget.field_label = label
    widget.rect = _page_rect(page, geometry)
    widget.border_width = _BORDER_WIDTH
    widget.border_color = _CHECKBOX_BORDER
    page.add_widget(widget)


def read_widgets(document: bytes) -> list[FormWidget]:
    """Every field in the document with its placement, in page order."""
    widgets: list[FormWidget] = []
    seen: set[str] = set()

    with open_pdf(document) as doc:
        for page in doc:
            to_pdf_space = ~page.transformation_matrix
            for w in page.widgets():
                name = w.field_name or ""
                if name in seen:
                    continue
                seen.add(name)

                rect = w.rect * to_pdf_space
                is_checkable = w.field_type in _CHECKABLE_TYPES
                widgets.append(FormWidget(
                    name=name,
                    kind=FieldKind.CHECKBOX if is_checkable else FieldKind.TEXT,
                    page=page.number + 1,
                    page_height=page.rect.height,
                    geometry=Geometry(rect.x0, rect.y0, rect.width, rect.height),
                    max_length=None if is_checkable else (w.text_maxlen or None),
                    required=bool(w.field_flags & fitz.PDF_FIELD_IS_REQUIRED),
                    tooltip=w.field_label or "",
                ))

    logger.debug("Read %d form fields", len(widgets))
    return widgets


def has_interactive_fields(document: bytes) -> bool:
    """True when the document carries at least one form field."""
    try:
        doc = open_pdf(document)
    except DocumentError:
        return False
    with doc:
        return any(True for page in doc for _ in page.widgets())
