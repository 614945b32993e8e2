"""Turn raw scan payloads into ExtractedEntity records.

Every source type is first flattened into text lines, then each line is
tested independently for an email, a phone-like digit run and a
two-or-more capitalized word name. A line with at least one hit becomes one
entity; lines with no hit are dropped. Normalization never raises.
"""
from __future__ import annotations

import csv
import io
import json
import logging
import re
from typing import Any, Iterable

from deepscan.models import SourceType
from deepscan.schemas import ExtractedEntity

log = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
PHONE_RE = re.compile(r"\d{10,}")
NAME_RE = re.compile(r"\b[A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)+\b")

# Glyphs OCR engines emit for column rules and bullets
_OCR_NOISE_RE = re.compile(r"[|•·¦]+")

_RECORD_LIST_KEYS = ("items", "data", "contacts", "friends", "connections", "results")


def extract_line(line: str, source_tag: str = "") -> ExtractedEntity | None:
    """Return an entity for *line*, or None when nothing matches."""
    email = EMAIL_RE.search(line)
    phone = PHONE_RE.search(line)
    # Names are searched with emails masked out so "Juan@X.com" can't count.
    name = NAME_RE.search(EMAIL_RE.sub(" ", line))
    if not (email or phone or name):
        return None
    return ExtractedEntity(
        raw_text=line,
        name=name.group(0) if name else None,
        email=email.group(0) if email else None,
        phone=phone.group(0) if phone else None,
        source_tag=source_tag,
    )


def prepare_payload(raw_payload: Any) -> str:
    """Decode *raw_payload* to text with a BOM, NUL bytes and CRLF line endings removed."""
    text = raw_payload if isinstance(raw_payload, str) else _payload_text(raw_payload)
    text = text.lstrip("\ufeff").replace("\x00", "")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def normalize(raw_payload: Any, source_type: SourceType | str) -> list[ExtractedEntity]:
    """Extract entities from *raw_payload*, preserving line order."""
    try:
        source = SourceType(source_type)
    except ValueError:
        log.debug("Unknown source type %r, treating as pasted text", source_type)
        source = SourceType.PASTED_TEXT

    entities: list[ExtractedEntity] = []
    for idx, line in enumerate(_lines_for(raw_payload, source)):
        line = line.strip()
        if not line:
            continue
        entity = extract_line(line, f"{source.value}#{idx}")
        if entity is not None:
            entities.append(entity)
    log.debug("Normalized %s payload into %d entities", source.value, len(entities))
    return entities


# ---------------------------------------------------------------------------
# Source flatteners
# ---------------------------------------------------------------------------


def _payload_text(raw_payload: Any) -> str:
    if raw_payload is None:
        return ""
    if isinstance(raw_payload, bytes):
        return raw_payload.decode("utf-8", errors="replace")
    if isinstance(raw_payload, dict):
        # {"text": "..."} is the shape the scan UI posts
        text = raw_payload.get("text")
        if isinstance(text, str):
            return text
        return json.dumps(raw_payload, default=str)
    if isinstance(raw_payload, (list, tuple)):
        return "\n".join(str(item) for item in raw_payload)
    return str(raw_payload)


def _lines_for(raw_payload: Any, source: SourceType) -> list[str]:
    text = _payload_text(raw_payload)
    if source is SourceType.CSV:
        return _csv_lines(text)
    if source is SourceType.SOCIAL_EXPORT:
        return _social_lines(raw_payload, text)
    if source is SourceType.IMAGE_OCR:
        return [_OCR_NOISE_RE.sub(" ", line) for line in text.splitlines()]
    return text.splitlines()


def _csv_lines(text: str) -> list[str]:
    try:
        rows = list(csv.reader(io.StringIO(text)))
    except csv.Error as exc:
        log.debug("CSV parse failed (%s), falling back to raw lines", exc)
        return text.splitlines()
    return [" ".join(cell.strip() for cell in row if cell and cell.strip()) for row in rows]


def _social_lines(raw_payload: Any, text: str) -> list[str]:
    data = raw_payload if isinstance(raw_payload, (list, dict)) else None
    if data is None:
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            return text.splitlines()
    records = _records(data)
    if records is None:
        return text.splitlines()
    return [" ".join(_flatten_values(record)) for record in records]


def _records(data: Any) -> list[Any] | None:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in _RECORD_LIST_KEYS:
            value = data.get(key)
            if isinstance(value, list):
                return value
    return None


def _flatten_values(record: Any) -> Iterable[str]:
    if isinstance(record, dict):
        for value in record.values():
            yield from _flatten_values(value)
    elif isinstance(record, (list, tuple)):
        for value in record:
            yield from _flatten_values(value)
    elif record is not None and str(record).strip():
        yield str(record).strip()
