"""Shared fixtures: small PDFs built on the fly with PyMuPDF."""

import fitz  # PyMuPDF
import pytest

from formsynth.pipeline.loader import TextExtractor
from formsynth.state import DetectedField, FieldKind, Geometry, TextRun

PAGE_WIDTH = 595
PAGE_HEIGHT = 842


def _build_pdf(texts=(), widgets=(), pages=1) -> bytes:
    """texts: (page, x, baseline_y, text); widgets: (page, name, (x0, y0, x1, y1)) in page space."""
    doc = fitz.open()
    for _ in range(pages):
        doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
    for page_num, x, y, text in texts:
        doc[page_num - 1].insert_text((x, y), text, fontsize=11)
    for page_num, name, rect in widgets:
        widget = fitz.Widget()
        widget.field_type = fitz.PDF_WIDGET_TYPE_TEXT
        widget.field_name = name
        widget.rect = fitz.Rect(*rect)
        doc[page_num - 1].add_widget(widget)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def build_pdf():
    return _build_pdf


@pytest.fixture
def blank_pdf() -> bytes:
    return _build_pdf()


@pytest.fixture
def extractor() -> TextExtractor:
    return TextExtractor()


@pytest.fixture
def make_run():
    def _make(content, x, y, width=30.0, height=12.0, page=1):
        return TextRun(content=content, x=x, y=y, width=width, height=height, page=page)
    return _make


@pytest.fixture
def make_detected():
    def _make(label, x=100.0, y=100.0, kind=FieldKind.TEXT, width=100.0, height=20.0,
              page=1, name=None, required=False):
        return DetectedField(
            kind=kind,
            label=label,
            geometry=Geometry(x, y, width, height),
            page=page,
            confidence=0.9 if kind is FieldKind.CHECKBOX else 0.8,
            nearby_context=(),
            generated_name=label.lower().replace(" ", "_") if name is None else name,
            required=required,
        )
    return _make
