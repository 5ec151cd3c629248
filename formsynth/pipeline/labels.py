"""
Label backfill and field analysis for documents that already carry form fields.

Fields drawn by a third party usually have names like "Text12" or
"undefined_3". The printed text closest to each widget is almost always its
caption, so the nearest label-looking fragment becomes the field's label.

For a richer picture the text around each widget is also split by direction
(left, right, above, below) and sent in batches to the configured LLM, which
returns a label, a data type, a category and a mapping hint per field. A
batch the LLM cannot answer is analysed from the field name and context alone.
"""

import dataclasses
import json
import logging
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass

import httpx

from formsynth.config import ConfigStore, ProviderConfig
from formsynth.errors import ExtractionError
from formsynth.pipeline import form
from formsynth.pipeline.layout import infer_kind, is_required_label
from formsynth.pipeline.loader import TextExtractor
from formsynth.pipeline.mapper import (
    MapError,
    extract_json_array,
    read_provider_config,
    request_completion,
)
from formsynth.state import CreatedField, FieldAnalysis, FieldContext, FieldKind, Geometry, TextRun

logger = logging.getLogger(__name__)

_NEARBY_RADIUS = 150
_MAX_NEARBY = 10
_MIN_DESCRIPTIVE_LEN = 5

_CONTEXT_RADIUS = 100       # max gap (points) between a field and a side fragment
_SAME_LINE_TOLERANCE = 8    # max distance between vertical centres on one line
_MAX_BEFORE = 5
_MAX_SIDE = 3

ANALYSIS_BATCH_SIZE = 15
ANALYSIS_TEMPERATURE = 0.2
ANALYSIS_MAX_TOKENS = 3000
ANALYSIS_TIMEOUT = 120.0
_PROMPT_CONTEXT_CHARS = 100

DATA_TYPES = frozenset({"text", "email", "date", "tel", "number", "fiscalcode", "pod", "pdr", "iban"})

ANALYSIS_PROMPT = """\
Analyze these {count} fields of an Italian energy supply contract. Answer in JSON for EVERY field.

FIELDS:
{fields}

Mapping rules:
- "N", "N_2" -> "Numero Civico" (residence, or supply when the name has "_2")
- "DATA_X", "Date_X" -> "Data" followed by the progressive number
- "POD" -> "Codice POD Luce"
- "PDR" -> "Codice PDR Gas"
- "_2" in the name -> a supply (fornitura) field, not a residence one
- "Consumo kWh" -> "consumo_annuo_luce"
- "Consumo smc" -> "consumo_annuo_gas"
- "Fornitore Uscente" -> "fornitore_uscente_luce" or "fornitore_uscente_gas"
- "Codice Fiscale" -> "codice_fiscale"
- "IBAN" -> "iban"

Reply with plain JSON only, no markdown:
[{{"fieldName": "exact_field_name", "label": "Clear Label", \
"dataType": "text|email|date|tel|number|fiscalcode|pod|pdr|iban", \
"category": "anagrafica|indirizzo_residenza|indirizzo_fornitura|dati_luce|dati_gas|contratto|pagamento|date|altro", \
"description": "Short description", "required": true, "mappingSuggestion": "data_key"}}]"""

_LETTER_RE = re.compile(r"[a-zA-ZÀ-ÿ]")
_TRAILING_RE = re.compile(r"[:\s]+$")
_NUMBER_RE = re.compile(r"\d+")
_SUGGESTION_RE = re.compile(r"[^a-z0-9_]")
_GENERIC_DATE_RE = re.compile(r"^data_\d+$|^date\d*_")
_GENERIC_NAME_RE = re.compile(
    r"^(data_\d+|date\d+(_af_date)?|undefined_\d+|group\s*\d+|check\s*box\s*\d+|\d+)$"
)

# (pattern on the lower-cased name, description template)
_GENERIC_DESCRIPTIONS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"^data_\d+$"), "Date {n} (see document)"),
    (re.compile(r"^date\d+_af_date$"), "Date {n} (contract)"),
    (re.compile(r"^group\s*\d+$"), "Selection {n} (radio button)"),
    (re.compile(r"^check\s*box\s*\d+$"), "Option {n} (checkbox)"),
    (re.compile(r"^undefined_\d+$"), "Field {n} (see document)"),
    (re.compile(r"^\d+$"), "Field {n}"),
]


def _title(name: str) -> str:
    return re.sub(r"\b\w", lambda m: m.group().upper(), name.replace("_", " "))


def describe_field_name(name: str) -> str:
    """Readable label for a bare field name.

    "indirizzo_fornitura" -> "Indirizzo Fornitura"
    "data_3"              -> "Date 3 (see document)"
    "Check Box7"          -> "Option 7 (checkbox)"
    """
    lower = name.lower()
    if len(name) > _MIN_DESCRIPTIVE_LEN and not _GENERIC_NAME_RE.match(lower):
        return _title(name)

    for pattern, template in _GENERIC_DESCRIPTIONS:
        if pattern.match(lower):
            return template.format(n=_NUMBER_RE.search(lower).group())

    return _title(name)


def looks_like_label(text: str) -> bool:
    return text.endswith(":") or (3 < len(text) < 50 and bool(_LETTER_RE.search(text)))


def _nearest_text(x: float, y: float, runs: Sequence[TextRun]) -> list[str]:
    scored = []
    for run in runs:
        text = run.content.strip()
        if not text:
            continue
        distance = math.hypot(run.x - x, run.y - y)
        if distance < _NEARBY_RADIUS:
            scored.append((distance, text))
    scored.sort(key=lambda item: item[0])
    return [text for _, text in scored[:_MAX_NEARBY]]


def _to_created(widget: form.FormWidget, label: str, nearby: Sequence[str] = ()) -> CreatedField:
    return CreatedField(
        name=widget.name,
        kind=widget.kind,
        label=label,
        page=widget.page,
        geometry=widget.geometry,
        max_length=widget.max_length,
        required=widget.required,
        nearby_context=tuple(nearby),
    )


def existing_fields(document: bytes) -> list[CreatedField]:
    """Fields already in the document, labelled from their tooltip or name only."""
    return [
        _to_created(w, w.tooltip or describe_field_name(w.name))
        for w in form.read_widgets(document)
    ]


def backfill(document: bytes, extractor: TextExtractor) -> list[CreatedField]:
    """Existing fields labelled with the closest caption-like text."""
    widgets = form.read_widgets(document)
    logger.info("Backfilling labels for %d fields", len(widgets))

    try:
        pages = extractor.extract(document)
    except ExtractionError as exc:
        logger.warning("No readable text, labels fall back to field names: %s", exc)
        return [_to_created(w, w.name) for w in widgets]

    runs_by_page = {p.page: p.runs for p in pages}
    fields: list[CreatedField] = []

    for widget in widgets:
        # Anchor on the widget's top-left corner, in the same space as the text.
        anchor = widget.geometry.flipped(widget.page_height)
        nearby = _nearest_text(anchor.x, anchor.y, runs_by_page.get(widget.page, ()))

        label = widget.name
        for text in nearby:
            caption = _TRAILING_RE.sub("", text)
            if caption and looks_like_label(text):
                label = caption
                break

        fields.append(_to_created(widget, label, nearby))

    for f in fields[:5]:
        logger.debug("  %s -> %r", f.name, f.label)
    return fields


def context_for(name: str, kind: FieldKind, page: int, geometry: Geometry,
                runs: Sequence[TextRun]) -> FieldContext:
    """Split the text around `geometry` (text space) into left, right, above and below."""
    sides: dict[str, list[tuple[float, str]]] = {"before": [], "after": [], "above": [], "below": []}
    centre = geometry.y + geometry.height / 2
    right = geometry.x + geometry.width
    bottom = geometry.y + geometry.height

    for run in runs:
        text = run.content.strip()
        if not text:
            continue
        if abs(run.y + run.height / 2 - centre) < _SAME_LINE_TOLERANCE:
            if run.x < geometry.x:
                side, gap = "before", geometry.x - (run.x + run.width)
            elif run.x >= right:
                side, gap = "after", run.x - right
            else:
                continue
        elif run.x < right and run.x + run.width > geometry.x:
            if run.y < geometry.y:
                side, gap = "above", geometry.y - (run.y + run.height)
            else:
                side, gap = "below", run.y - bottom
        else:
            continue
        if gap < _CONTEXT_RADIUS:
            sides[side].append((gap, text))

    def nearest(side: str, limit: int) -> list[str]:
        return [text for _, text in sorted(sides[side], key=lambda item: item[0])[:limit]]

    return FieldContext(
        name=name,
        kind=kind,
        page=page,
        geometry=geometry,
        before=tuple(reversed(nearest("before", _MAX_BEFORE))),
        after=tuple(nearest("after", _MAX_SIDE)),
        above=tuple(reversed(nearest("above", _MAX_SIDE))),
        below=tuple(nearest("below", _MAX_SIDE)),
        nearby=tuple(_nearest_text(geometry.x, geometry.y, runs)),
    )


def extract_field_contexts(document: bytes, extractor: TextExtractor) -> list[FieldContext]:
    widgets = form.read_widgets(document)
    try:
        pages = extractor.extract(document)
    except ExtractionError as exc:
        logger.warning("No readable text, field contexts are empty: %s", exc)
        pages = []

    runs_by_page = {p.page: p.runs for p in pages}
    contexts = [
        context_for(w.name, w.kind, w.page, w.geometry.flipped(w.page_height), runs_by_page.get(w.page, ()))
        for w in widgets
    ]
    logger.info("Collected context for %d fields", len(contexts))
    return contexts


def context_caption(context: FieldContext) -> str | None:
    """Nearest label-like fragment on the left, else directly above."""
    for text in context.before[-1:] + context.above[-1:]:
        caption = _TRAILING_RE.sub("", text)
        if caption and looks_like_label(text):
            return caption
    return None


@dataclass(frozen=True)
class _Rule:
    needs: tuple[str, ...]
    label: str
    data_type: str
    category: str
    suggestion: str
    required: bool = False
    description: str = ""
    avoid: tuple[str, ...] = ()

    def matches(self, name: str) -> bool:
        return all(n in name for n in self.needs) and not any(a in name for a in self.avoid)


_PERSON_RULES = [
    _Rule(("cognome",), "Cognome", "text", "anagrafica", "cognome", required=True),
    _Rule(("nome",), "Nome", "text", "anagrafica", "nome", required=True, avoid=("denominazione",)),
    _Rule(("codice", "fiscale"), "Codice Fiscale", "fiscalcode", "anagrafica", "codice_fiscale", required=True),
    _Rule(("data", "attivazione"), "Data Presunta Attivazione", "date", "contratto", "data_attivazione",
          description="Expected activation date of the supply"),
    _Rule(("data", "nascita"), "Data di Nascita", "date", "anagrafica", "data_nascita", required=True),
]

_SUPPLY_RULES = [
    _Rule(("consumo", "kwh"), "Consumo Annuo Luce", "number", "dati_luce", "consumo_annuo_luce",
          description="Annual consumption in kWh"),
    _Rule(("consumo", "smc"), "Consumo Annuo Gas", "number", "dati_gas", "consumo_annuo_gas",
          description="Annual consumption in Smc"),
    _Rule(("potenza",), "Potenza Impegnata", "number", "dati_luce", "potenza_impegnata",
          description="Committed power in kW"),
    _Rule(("pod",), "Codice POD", "pod", "dati_luce", "pod"),
    _Rule(("pdr",), "Codice PDR", "pdr", "dati_gas", "pdr"),
    _Rule(("email",), "Email", "email", "anagrafica", "email"),
    _Rule(("telefon",), "Telefono", "tel", "anagrafica", "telefono"),
    _Rule(("cellulare",), "Telefono", "tel", "anagrafica", "telefono"),
    _Rule(("iban",), "IBAN", "iban", "pagamento", "iban"),
]

# (substring, label stem, residence suggestion, supply suggestion)
_ADDRESS_PARTS = [
    ("indirizzo", "Indirizzo", "indirizzo_residenza", "indirizzo_fornitura"),
    ("comune", "Comune", "comune", "comune_fornitura"),
    ("cap", "CAP", "cap", "cap_fornitura"),
    ("prov", "Provincia", "provincia", "provincia_fornitura"),
]

_SUPPLY_MARKERS = ("_2", "fornitura")

_KIND_DATA_TYPES = {
    FieldKind.DATE: "date",
    FieldKind.EMAIL: "email",
    FieldKind.TEL: "tel",
    FieldKind.NUMBER: "number",
}


def _rule_for(name: str) -> _Rule | None:
    """Known contract field recognised from its lower-cased name, checked in priority order."""
    supply = any(marker in name for marker in _SUPPLY_MARKERS)
    address_category = "indirizzo_fornitura" if supply else "indirizzo_residenza"

    for rule in _PERSON_RULES:
        if rule.matches(name):
            return rule
    if _GENERIC_DATE_RE.match(name):
        n = "".join(ch for ch in name if ch.isdigit())
        return _Rule((), f"Data {n}", "date", "date", f"data_{n}", description="Generic contract date")
    if name in ("n", "n_2"):
        where = "fornitura" if supply else "residenza"
        return _Rule((), f"Numero Civico {where.title()}", "text", address_category, f"civico_{where}")
    if "fornitore" in name and "uscente" in name:
        gas = "_4" in name or "gas" in name
        return _Rule((), "Fornitore Uscente", "text", "dati_gas" if gas else "dati_luce", "fornitore_uscente",
                     description="Previous supplier")
    for rule in _SUPPLY_RULES:
        if rule.matches(name):
            return rule
    for key, stem, residence, supply_key in _ADDRESS_PARTS:
        if key in name:
            where = "Fornitura" if supply else "Residenza"
            return _Rule((), f"{stem} {where}", "text", address_category, supply_key if supply else residence)
    return None


def heuristic_analysis(context: FieldContext) -> FieldAnalysis:
    """Analysis from the field name first, then from the printed caption."""
    name = context.name.lower()
    rule = _rule_for(name)
    if rule is not None:
        return FieldAnalysis(
            field_name=context.name,
            kind=context.kind,
            label=rule.label,
            data_type=rule.data_type,
            category=rule.category,
            description=rule.description or f"Field: {rule.label}",
            required=rule.required,
            mapping_suggestion=rule.suggestion,
        )

    caption = context_caption(context)
    descriptive = len(name) > _MIN_DESCRIPTIVE_LEN and not _GENERIC_NAME_RE.match(name)
    label = describe_field_name(context.name) if descriptive or caption is None else caption
    return FieldAnalysis(
        field_name=context.name,
        kind=context.kind,
        label=label,
        data_type=_KIND_DATA_TYPES.get(infer_kind(label), "text"),
        category="altro",
        description=f"Field {context.name}",
        required=is_required_label(caption or ""),
        mapping_suggestion=_SUGGESTION_RE.sub("_", name),
    )


def build_analysis_prompt(batch: Sequence[FieldContext]) -> str:
    lines = []
    for i, ctx in enumerate(batch, start=1):
        line = f'{i}. "{ctx.name}" ({FieldKind(ctx.kind).value})'
        context = " ".join(ctx.before + ctx.above)[:_PROMPT_CONTEXT_CHARS]
        if context:
            line += f' -> context: "{context}"'
        lines.append(line)
    return ANALYSIS_PROMPT.format(count=len(batch), fields="\n".join(lines))


def _text(value, default: str) -> str:
    return value.strip() if isinstance(value, str) and value.strip() else default


def _merge(baseline: FieldAnalysis, entry: dict) -> FieldAnalysis:
    data_type = entry.get("dataType")
    required = entry.get("required")
    return dataclasses.replace(
        baseline,
        label=_text(entry.get("label"), baseline.label),
        data_type=data_type if isinstance(data_type, str) and data_type in DATA_TYPES else baseline.data_type,
        category=_text(entry.get("category"), baseline.category),
        description=_text(entry.get("description"), baseline.description),
        required=required if isinstance(required, bool) else baseline.required,
        mapping_suggestion=_text(entry.get("mappingSuggestion"), baseline.mapping_suggestion),
    )


def parse_analysis(raw: str, batch: Sequence[FieldContext]) -> list[FieldAnalysis] | MapError:
    """One analysis per batch field, in batch order; fields the reply skips get the heuristic."""
    if not isinstance(raw, str) or not raw.strip():
        return MapError("reply is empty")
    array = extract_json_array(raw)
    if array is None:
        return MapError("reply contains no JSON array")
    try:
        entries = json.loads(array)
    except json.JSONDecodeError as exc:
        return MapError(f"reply JSON is malformed: {exc}")

    by_name: dict[str, dict] = {}
    for entry in entries:
        if isinstance(entry, dict) and isinstance(entry.get("fieldName"), str):
            by_name.setdefault(entry["fieldName"], entry)
    if not any(ctx.name in by_name for ctx in batch):
        return MapError("reply names none of the requested fields")

    results = []
    for ctx in batch:
        baseline = heuristic_analysis(ctx)
        entry = by_name.get(ctx.name)
        results.append(baseline if entry is None else _merge(baseline, entry))
    return results


def _analyze_batch(
    batch: Sequence[FieldContext],
    config: ProviderConfig,
    client: httpx.Client,
) -> list[FieldAnalysis] | MapError:
    raw = request_completion(
        build_analysis_prompt(batch),
        config,
        client,
        temperature=ANALYSIS_TEMPERATURE,
        max_tokens=ANALYSIS_MAX_TOKENS,
        timeout=ANALYSIS_TIMEOUT,
    )
    if isinstance(raw, MapError):
        return raw
    return parse_analysis(raw, batch)


def analyze_fields(
    contexts: Sequence[FieldContext],
    store: ConfigStore,
    client: httpx.Client | None = None,
) -> list[FieldAnalysis]:
    """Analyse existing fields in batches; each failed batch falls back to the heuristic."""
    contexts = list(contexts)
    config = read_provider_config(store)
    if isinstance(config, MapError):
        logger.warning("Field analysis without LLM (%s)", config.reason)
        return [heuristic_analysis(ctx) for ctx in contexts]

    batches = [contexts[i:i + ANALYSIS_BATCH_SIZE] for i in range(0, len(contexts), ANALYSIS_BATCH_SIZE)]
    results: list[FieldAnalysis] = []
    http = client or httpx.Client()
    try:
        for number, batch in enumerate(batches, start=1):
            outcome = _analyze_batch(batch, config, http)
            if isinstance(outcome, MapError):
                logger.warning("Batch %d/%d: heuristic analysis (%s)", number, len(batches), outcome.reason)
                outcome = [heuristic_analysis(ctx) for ctx in batch]
            else:
                logger.info("Batch %d/%d: %d fields analysed", number, len(batches), len(outcome))
            results.extend(outcome)
    finally:
        if client is None:
            http.close()

    return results
