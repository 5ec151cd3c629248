"""
Field synthesis: turn detected fields into AcroForm widgets.

Fields are created one at a time in input order; name suffixing depends on
that order. A field that cannot be placed is logged and skipped.
"""

import logging
import math
from collections.abc import Sequence
from pathlib import Path

from formsynth.errors import DocumentError
from formsynth.pipeline import form
from formsynth.state import CreatedField, DetectedField, FieldKind, Geometry

logger = logging.getLogger(__name__)

_DEFAULT_TEXT_WIDTH = 150.0
_DEFAULT_TEXT_HEIGHT = 20.0
_DEFAULT_CHECKBOX_SIZE = 15.0
_POINTS_PER_CHAR = 6        # rough character budget of a text box

_FIXED_MAX_LENGTH = {
    FieldKind.DATE: 10,
    FieldKind.EMAIL: 100,
    FieldKind.TEL: 20,
    FieldKind.TEXTAREA: 500,
}


def compute_max_length(kind: FieldKind, width: float) -> int:
    # 0 would read back as "no limit"
    return _FIXED_MAX_LENGTH.get(kind, max(1, math.floor(width / _POINTS_PER_CHAR)))


def unique_name(base: str, taken: set[str]) -> str:
    """`base`, else `base_1`, `base_2`, ... whichever is free first."""
    name = base
    counter = 1
    while name in taken:
        name = f"{base}_{counter}"
        counter += 1
    return name


def _placed_geometry(detected: DetectedField) -> Geometry:
    g = detected.geometry
    if detected.kind is FieldKind.CHECKBOX:
        return Geometry(g.x, g.y, g.width or _DEFAULT_CHECKBOX_SIZE, g.height or _DEFAULT_CHECKBOX_SIZE)
    return Geometry(g.x, g.y, g.width or _DEFAULT_TEXT_WIDTH, g.height or _DEFAULT_TEXT_HEIGHT)


def _create_field(doc, detected: DetectedField, name: str) -> CreatedField:
    page = form.get_page(doc, detected.page)
    geometry = _placed_geometry(detected).flipped(page.rect.height)

    if detected.kind is FieldKind.CHECKBOX:
        form.add_checkbox(page, geometry, name, detected.label)
        max_length = None
    else:
        max_length = compute_max_length(detected.kind, geometry.width)
        form.add_text_field(page, geometry, name, detected.label, max_length, detected.required)

    return CreatedField(
        name=name,
        kind=detected.kind,
        label=detected.label,
        page=detected.page,
        geometry=geometry,
        max_length=max_length,
        required=detected.required,
        nearby_context=detected.nearby_context,
    )


def synthesize(source: bytes, detected_fields: Sequence[DetectedField]) -> tuple[bytes, list[CreatedField]]:
    """Place one widget per detected field on a copy of `source`."""
    created: list[CreatedField] = []

    with form.open_pdf(source) as doc:
        taken = form.field_names(doc)
        if taken:
            logger.info("Source already has %d fields; new names will avoid them", len(taken))

        for counter, detected in enumerate(detected_fields, start=1):
            name = unique_name(detected.generated_name or f"field_{counter}", taken)
            try:
                field = _create_field(doc, detected, name)
            except Exception as exc:
                logger.error("Field %r (%s) skipped: %s", detected.label, name, exc)
                continue

            taken.add(name)
            created.append(field)
            logger.debug("  %s %r -> %s (max %s)", field.kind.value, field.label, name, field.max_length)

        output = form.save_pdf(doc)

    logger.info("Synthesized %d of %d fields", len(created), len(detected_fields))
    return output, created


def create_interactive_fields(
    source_path: str | Path,
    output_path: str | Path,
    detected_fields: Sequence[DetectedField],
) -> list[CreatedField]:
    """File-level wrapper: the source file is read, never overwritten."""
    source_path = Path(source_path)
    output_path = Path(output_path)
    if output_path.resolve() == source_path.resolve():
        raise DocumentError(f"Output must differ from source: {output_path}")

    try:
        source = source_path.read_bytes()
    except OSError as exc:
        raise DocumentError(f"Cannot read {source_path}: {exc}") from exc

    output, created = synthesize(source, detected_fields)

    try:
        output_path.write_bytes(output)
    except OSError as exc:
        raise DocumentError(f"Cannot write {output_path}: {exc}") from exc

    logger.info("Wrote %d fields -> %s", len(created), output_path)
    return created
