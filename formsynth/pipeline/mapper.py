"""
Data -> field mapping: an LLM pass with a keyword heuristic behind it.

The LLM path returns either mappings or a MapError describing why it could
not produce any. On MapError the caller runs the heuristic exactly once;
there are no retries and no second provider.
"""

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from formsynth.config import PROVIDER_GROQ, ConfigStore, ProviderConfig, load_provider_config
from formsynth.pipeline.layout import generate_field_name
from formsynth.state import CreatedField, FieldKind, FieldMapping

logger = logging.getLogger(__name__)

GROQ_TIMEOUT = 30.0
OLLAMA_TIMEOUT = 60.0
TEMPERATURE = 0.1
MAX_TOKENS = 2000
MIN_FALLBACK_SCORE = 0.6

MAPPING_PROMPT = """\
You are an expert at filling in Italian energy supply contracts.

PROVIDED DATA:
{data}

FIELDS TO FILL:
{fields}

Your ONLY task: match each provided data key to the most appropriate field.

Rules:
- "nome" -> field "nome"
- "cognome" -> field "cognome"
- "codice_fiscale" or "cf" -> fields containing "fiscale"
- "email" -> fields containing "email"
- "telefono" -> fields containing "telefono" or "cellulare"
- "indirizzo" -> the residence address ("indirizzo_residenza") when the field
  name has no "_2" suffix, the supply address ("indirizzo_fornitura") when it has "_2"
- "comune", "cap", "provincia" follow the same residence/supply rule
- "pod" -> "pod", or the split "pod3" + "pod7" fields
- "pdr" -> "pdr"
- "data_nascita" -> fields containing "nascita"
- "data_attivazione" -> fields containing "attivazione"
- "consumo_annuo_luce" -> fields containing "consumo" and "kwh"
- "consumo_annuo_gas" -> fields containing "consumo" and "smc"
- "potenza_impegnata" -> fields containing "potenza"
- "fornitore_uscente" -> fields containing "fornitore"

Return ONLY a JSON array with this structure:
[
  {{"fieldName": "field_name", "dataKey": "data_key", "confidence": 0.95}}
]

Nothing else."""

# (substring in the data key, substring in the field name + label)
_KEYWORD_BUCKETS = [
    ("nome", "nome"),
    ("cognome", "cognome"),
    ("fiscal", "fiscal"),
    ("email", "email"),
    ("telefon", "telefon"),
    ("indirizzo", "indirizzo"),
    ("comune", "comune"),
    ("cap", "cap"),
    ("provincia", "prov"),
    ("pod", "pod"),
    ("pdr", "pdr"),
    ("consumo", "consumo"),
    ("potenza", "potenza"),
    ("fornitore", "fornitore"),
]

_KIND_HINTS = [
    ("data", FieldKind.DATE),
    ("email", FieldKind.EMAIL),
    ("telefon", FieldKind.TEL),
]


@dataclass(frozen=True)
class MapError:
    reason: str


def build_prompt(data: Mapping[str, Any], fields: Sequence[CreatedField]) -> str:
    data_lines = "\n".join(
        f"- {key}: {json.dumps(value, ensure_ascii=False, default=str)}"
        for key, value in data.items()
    )
    field_lines = "\n".join(
        f'{i}. "{f.label}" (name: {f.name}, kind: {FieldKind(f.kind).value}, '
        f"required: {str(f.required).lower()})"
        for i, f in enumerate(fields, start=1)
    )
    return MAPPING_PROMPT.format(data=data_lines, fields=field_lines)


def extract_json_array(text: str) -> str | None:
    """First balanced [...] in `text`; brackets inside JSON strings don't count."""
    start = text.find("[")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _confidence(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    return min(max(value, 0.0), 1.0)


def parse_mappings(raw: str, data: Mapping[str, Any]) -> list[FieldMapping] | MapError:
    if not isinstance(raw, str) or not raw.strip():
        return MapError("reply is empty")
    array = extract_json_array(raw)
    if array is None:
        return MapError("reply contains no JSON array")
    try:
        entries = json.loads(array)
    except json.JSONDecodeError as exc:
        return MapError(f"reply JSON is malformed: {exc}")

    mappings = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        key = entry.get("dataKey")
        field_name = entry.get("fieldName")
        if not isinstance(key, str) or key not in data or not field_name:
            continue
        mappings.append(FieldMapping(
            field_name=str(field_name),
            data_key=key,
            value=data[key],
            confidence=_confidence(entry.get("confidence")),
        ))
    return mappings


def _call_groq(client: httpx.Client, config: ProviderConfig, prompt: str,
               temperature: float, max_tokens: int, timeout: float) -> str:
    response = client.post(
        config.groq_url,
        json={
            "model": config.groq_model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "max_tokens": max_tokens,
        },
        headers={"Authorization": f"Bearer {config.groq_api_key}"},
        timeout=timeout,
    )
    response.raise_for_status()
    return response.json()["choices"][0]["message"]["content"]


def _call_ollama(client: httpx.Client, config: ProviderConfig, prompt: str,
                 temperature: float, max_tokens: int, timeout: float) -> str:
    response = client.post(
        config.ollama_url,
        json={
            "model": config.ollama_model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        },
        timeout=timeout,
    )
    response.raise_for_status()
    return response.json()["response"]


def request_completion(
    prompt: str,
    config: ProviderConfig,
    client: httpx.Client,
    temperature: float = TEMPERATURE,
    max_tokens: int = MAX_TOKENS,
    timeout: float | None = None,
) -> str | MapError:
    """One completion from the configured provider. Never raises."""
    use_groq = config.provider == PROVIDER_GROQ
    if use_groq and not config.groq_api_key:
        return MapError("groq API key is not configured")

    provider = "groq" if use_groq else "ollama"
    call = _call_groq if use_groq else _call_ollama
    timeout = timeout or (GROQ_TIMEOUT if use_groq else OLLAMA_TIMEOUT)
    logger.info("Requesting completion from %s (%s)",
                provider, config.groq_model if use_groq else config.ollama_model)

    try:
        return call(client, config, prompt, temperature, max_tokens, timeout)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        return MapError(f"{provider} request failed: {exc}")
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        return MapError(f"{provider} reply has an unexpected shape: {exc!r}")


def infer_mappings(
    data: Mapping[str, Any],
    fields: Sequence[CreatedField],
    config: ProviderConfig,
    client: httpx.Client,
) -> list[FieldMapping] | MapError:
    """One request to the configured provider. Never raises."""
    raw = request_completion(build_prompt(data, fields), config, client)
    if isinstance(raw, MapError):
        return raw
    return parse_mappings(raw, data)


def score_field(data_key: str, field: CreatedField) -> float:
    key = data_key.lower()
    name = field.name.lower()
    haystack = f"{name} {field.label.lower()}"

    if key == name or key == generate_field_name(field.label) or (name and name in key):
        return 1.0
    if any(k in key and f in haystack for k, f in _KEYWORD_BUCKETS):
        return 0.8
    if any(hint in key and field.kind == kind for hint, kind in _KIND_HINTS):
        return 0.6
    return 0.0


def fallback_mapping(data: Mapping[str, Any], fields: Sequence[CreatedField]) -> list[FieldMapping]:
    """Deterministic keyword matching. Several keys may land on one field."""
    mappings = []
    for key, value in data.items():
        if value is None or value == "":
            continue

        best: CreatedField | None = None
        best_score = 0.0
        for field in fields:
            score = score_field(key, field)
            if score > best_score:
                best, best_score = field, score

        if best is not None and best_score >= MIN_FALLBACK_SCORE:
            mappings.append(FieldMapping(field_name=best.name, data_key=key, value=value, confidence=best_score))
            logger.debug("  %r -> %r (%.2f)", key, best.label, best_score)

    logger.info("Heuristic mapping: %d of %d keys placed", len(mappings), len(data))
    return mappings


def read_provider_config(store: ConfigStore) -> ProviderConfig | MapError:
    try:
        return load_provider_config(store)
    except Exception as exc:
        return MapError(f"configuration unavailable: {exc}")


def map_data_to_fields(
    data: Mapping[str, Any],
    fields: Sequence[CreatedField],
    store: ConfigStore,
    client: httpx.Client | None = None,
) -> list[FieldMapping]:
    """Map data keys onto field names: LLM first, heuristic on any failure."""
    config = read_provider_config(store)
    if isinstance(config, MapError):
        outcome: list[FieldMapping] | MapError = config
    else:
        http = client or httpx.Client()
        try:
            outcome = infer_mappings(data, fields, config, http)
        finally:
            if client is None:
                http.close()

    if isinstance(outcome, MapError):
        logger.warning("LLM mapping unavailable (%s); using heuristic fallback", outcome.reason)
        return fallback_mapping(data, fields)

    logger.info("LLM mapping: %d assignments", len(outcome))
    return outcome
