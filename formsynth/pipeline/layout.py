"""
Layout analysis: find where a flat form expects to be filled in.

Per page, three detectors run over the positioned text runs:
  - labels      "Nome:", "Codice fiscale", "Data di nascita ____"
  - blank runs  "________", "..........", placeholder lines
  - checkboxes  a single box glyph, "[ ]" or "[X]"

Each label is paired with the nearest blank run to its right or below it.
Checkboxes become fields on their own. Everything stays in text space
(top-left origin, y down); the synthesizer converts coordinates.
"""

import logging
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass

from formsynth.pipeline.loader import TextExtractor
from formsynth.state import DetectedField, FieldKind, Geometry, LayoutAnalysis, TextRun

logger = logging.getLogger(__name__)

TEXT_MATCH_CONFIDENCE = 0.8
CHECKBOX_CONFIDENCE = 0.9

_PROXIMITY_THRESHOLD = 50   # max label -> blank distance (points)
_RIGHT_Y_TOLERANCE = 20     # vertical slack for a blank to the right
_BELOW_X_TOLERANCE = 50     # horizontal slack for a blank underneath
_NEARBY_RANGE = 100
_MAX_NEARBY = 5
_MIN_LABEL_LEN = 3
_MAX_LABEL_LEN = 100
_MAX_NAME_LEN = 50

_DEFAULT_BLANK_WIDTH = 100.0
_DEFAULT_BLANK_HEIGHT = 20.0
_CHECKBOX_SIZE = 15.0

_LABEL_KEYWORD_RE = re.compile(
    r"^(nome|cognome|data|codice|telefono|email|indirizzo|comune|cap|provincia"
    r"|pdr|pod|potenza|consumo|fornitore|agenzia|agente)",
    re.IGNORECASE,
)
_LABEL_PHRASE_RE = re.compile(
    r"\b(di nascita|fiscale|residenza|fornitura|attivazione|scadenza)\b",
    re.IGNORECASE,
)
_LABEL_STRIP_RE = re.compile(r"[:_]")
_BLANK_RE = re.compile(r"^[_\s]{3,}$|^\.{3,}$")
_CHECKBOX_GLYPHS = frozenset("☐☑✓✔◻◼▢▣□■")
_CHECKBOX_LITERALS = frozenset({"[ ]", "[X]"})
_REQUIRED_RE = re.compile(r"\b(obbligatorio|required)\b", re.IGNORECASE)

# Checked in order; the first hit decides the kind.
_KIND_PATTERNS: list[tuple[FieldKind, re.Pattern]] = [
    (FieldKind.DATE, re.compile(r"\b(data|date|nascita|attivazione|scadenza)\b")),
    (FieldKind.EMAIL, re.compile(r"\b(email|e-mail|pec)\b")),
    (FieldKind.TEL, re.compile(r"\b(telefono|cellulare|tel|mobile|phone)\b")),
    (FieldKind.NUMBER, re.compile(r"\b(consumo|potenza|kwh|smc|kw|numero|quantità|codice)\b")),
    (FieldKind.TEXTAREA, re.compile(r"\b(note|osservazioni|descrizione|indirizzo completo)\b")),
]


@dataclass(frozen=True)
class _Label:
    text: str
    run: TextRun


@dataclass(frozen=True)
class _Checkbox:
    label: str
    run: TextRun


def infer_kind(label: str) -> FieldKind:
    lower = label.lower()
    for kind, pattern in _KIND_PATTERNS:
        if pattern.search(lower):
            return kind
    return FieldKind.TEXT


def generate_field_name(label: str) -> str:
    """Slug used as the AcroForm field name: "Data di nascita" -> "data_di_nascita"."""
    name = re.sub(r"[^a-z0-9\s]", "", label.lower())
    name = re.sub(r"\s+", "_", name)
    return name[:_MAX_NAME_LEN]


def is_required_label(label: str) -> bool:
    return "*" in label or bool(_REQUIRED_RE.search(label))


def _looks_like_label(text: str) -> bool:
    if not _MIN_LABEL_LEN <= len(text) <= _MAX_LABEL_LEN:
        return False
    return (
        text.endswith(":")
        or "__" in text
        or bool(_LABEL_KEYWORD_RE.match(text))
        or bool(_LABEL_PHRASE_RE.search(text))
    )


def _detect_labels(runs: Sequence[TextRun]) -> list[_Label]:
    labels = []
    for run in runs:
        text = run.content.strip()
        if not _looks_like_label(text):
            continue
        cleaned = _LABEL_STRIP_RE.sub("", text).strip()
        if cleaned:
            labels.append(_Label(text=cleaned, run=run))
    return labels


def _detect_blank_runs(runs: Sequence[TextRun]) -> list[Geometry]:
    blanks = []
    for run in runs:
        if _BLANK_RE.match(run.content.strip()):
            blanks.append(Geometry(
                x=run.x,
                y=run.y,
                width=run.width or _DEFAULT_BLANK_WIDTH,
                height=run.height or _DEFAULT_BLANK_HEIGHT,
            ))
    return blanks


def _detect_checkboxes(runs: Sequence[TextRun]) -> list[_Checkbox]:
    """Box glyphs; the label is whatever fragment was written right after."""
    boxes = []
    for i, run in enumerate(runs):
        text = run.content.strip()
        if not ((len(text) == 1 and text in _CHECKBOX_GLYPHS) or text in _CHECKBOX_LITERALS):
            continue
        label = runs[i + 1].content.strip() if i + 1 < len(runs) else ""
        boxes.append(_Checkbox(label=label or "Checkbox", run=run))
    return boxes


def _nearest_blank(label: TextRun, blanks: Sequence[Geometry]) -> Geometry | None:
    """Closest blank to the right of or below the label, within the threshold."""
    best: Geometry | None = None
    best_distance = math.inf

    for blank in blanks:
        if blank.x > label.x and abs(blank.y - label.y) < _RIGHT_Y_TOLERANCE:
            origin_x, origin_y = label.x + label.width, label.y
        elif blank.y > label.y and abs(blank.x - label.x) < _BELOW_X_TOLERANCE:
            origin_x, origin_y = label.x, label.y + label.height
        else:
            continue

        distance = math.hypot(blank.x - origin_x, blank.y - origin_y)
        if distance < _PROXIMITY_THRESHOLD and distance < best_distance:
            best_distance = distance
            best = blank

    return best


def _nearby_text(x: float, y: float, runs: Sequence[TextRun]) -> tuple[str, ...]:
    nearby = [
        run.content.strip()
        for run in runs
        if run.content.strip()
        and abs(run.x - x) < _NEARBY_RANGE
        and abs(run.y - y) < _NEARBY_RANGE
    ]
    return tuple(nearby[:_MAX_NEARBY])


def analyze_page(runs: Sequence[TextRun], page: int) -> list[DetectedField]:
    """Detect fillable fields among one page's text runs."""
    labels = _detect_labels(runs)
    blanks = _detect_blank_runs(runs)
    checkboxes = _detect_checkboxes(runs)

    fields: list[DetectedField] = []
    dropped = 0

    for label in labels:
        blank = _nearest_blank(label.run, blanks)
        if blank is None:
            dropped += 1
            continue
        fields.append(DetectedField(
            kind=infer_kind(label.text),
            label=label.text,
            geometry=blank,
            page=page,
            confidence=TEXT_MATCH_CONFIDENCE,
            nearby_context=_nearby_text(blank.x, blank.y, runs),
            generated_name=generate_field_name(label.text),
            required=is_required_label(label.text),
        ))

    for box in checkboxes:
        fields.append(DetectedField(
            kind=FieldKind.CHECKBOX,
            label=box.label,
            geometry=Geometry(box.run.x, box.run.y, _CHECKBOX_SIZE, _CHECKBOX_SIZE),
            page=page,
            confidence=CHECKBOX_CONFIDENCE,
            nearby_context=_nearby_text(box.run.x, box.run.y, runs),
            generated_name=generate_field_name(box.label),
            required=False,
        ))

    logger.info(
        "Page %d: %d labels, %d blank runs, %d checkboxes -> %d fields",
        page, len(labels), len(blanks), len(checkboxes), len(fields),
    )
    if dropped:
        logger.debug("Page %d: %d labels had no blank run within %dpt", page, dropped, _PROXIMITY_THRESHOLD)
    return fields


def analyze_layout(document: bytes, extractor: TextExtractor) -> LayoutAnalysis:
    """Run detection page by page over a whole PDF."""
    pages = extractor.extract(document)

    fields: list[DetectedField] = []
    text_blocks: list[TextRun] = []
    for page in pages:
        text_blocks.extend(run for run in page.runs if run.content.strip())
        fields.extend(analyze_page(page.runs, page.page))

    logger.info("Layout analysis: %d fields across %d pages", len(fields), len(pages))
    return LayoutAnalysis(page_count=len(pages), fields=fields, text_blocks=text_blocks)
