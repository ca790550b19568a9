"""
Record decoder: project JSON payloads onto a declared schema.

Decoding is permissive and never raises. The payload is parsed into a plain
JSON value tree, then every schema field is looked up by exact name and
converted with an explicit rule for its semantic type. Values that are
missing or cannot be converted become None; keys not in the schema are
dropped. A payload that is not a JSON object yields a record with every field
None and `decode_failed` set.

Usage:
    from microbatch.decoding import decode

    record = decode(raw, Schema.from_ddl("timestamp TIMESTAMP, zipcode STRING"))
"""

from __future__ import annotations

import json
import math
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from microbatch.domain.models import DecodedRecord, MalformedMode, RawRecord
from microbatch.domain.schema import FieldType, Schema, SchemaField
from microbatch.errors import DecodeFailure
from microbatch.utils.logging import get_logger

log = get_logger(__name__)

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_SPECIAL_FLOATS = {"NaN": math.nan, "Infinity": math.inf, "-Infinity": -math.inf}


def _is_number(value: Any) -> bool:
    # bool is a subclass of int; JSON true/false are never numbers here
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_string(value: Any, field: SchemaField) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if _is_number(value):
        return json.dumps(value)
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        except (RecursionError, ValueError):
            return None
    return None


def _to_integer(value: Any, field: SchemaField) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool):
        if _INT64_MIN <= value <= _INT64_MAX:
            return value
    return None


def _to_float(value: Any, field: SchemaField) -> Optional[float]:
    if _is_number(value):
        try:
            return float(value)
        except OverflowError:
            return None
    if isinstance(value, str) and value in _SPECIAL_FLOATS:
        return _SPECIAL_FLOATS[value]
    return None


def _to_boolean(value: Any, field: SchemaField) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Convert an ISO-8601 string or epoch seconds into a UTC-aware datetime.

    Naive date-times are interpreted as UTC. Returns None when not convertible.
    """
    if _is_number(value):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed_date = date.fromisoformat(text)
        except ValueError:
            return None
        parsed = datetime(parsed_date.year, parsed_date.month, parsed_date.day)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _to_timestamp(value: Any, field: SchemaField) -> Optional[datetime]:
    return parse_timestamp(value)


def _to_nested(value: Any, field: SchemaField) -> Optional[Dict[str, Any]]:
    if not isinstance(value, dict):
        return None
    if field.fields is None:
        return dict(value)
    return project(value, field.fields)


_CONVERTERS: Dict[FieldType, Callable[[Any, SchemaField], Any]] = {
    FieldType.STRING: _to_string,
    FieldType.INTEGER: _to_integer,
    FieldType.FLOAT: _to_float,
    FieldType.BOOLEAN: _to_boolean,
    FieldType.TIMESTAMP: _to_timestamp,
    FieldType.NESTED: _to_nested,
}


def convert(value: Any, field: SchemaField) -> Any:
    """Apply the conversion rule of `field.type` to one JSON value."""
    if value is None:
        return None
    return _CONVERTERS[field.type](value, field)


def project(document: Dict[str, Any], schema: Schema) -> Dict[str, Any]:
    """Project a parsed JSON object onto `schema`, in schema field order."""
    return {f.name: convert(document.get(f.name), f) for f in schema.fields}


def parse_document(payload: bytes) -> Dict[str, Any]:
    """
    Parse a payload into a JSON object.

    Raises
    ------
    DecodeFailure
        If the payload is not UTF-8, not JSON, or not a JSON object.
    """
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeFailure(f"payload is not valid UTF-8: {exc}") from exc
    try:
        document = json.loads(text)
    except RecursionError as exc:
        raise DecodeFailure("payload is nested too deeply") from exc
    except ValueError as exc:
        raise DecodeFailure(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise DecodeFailure(f"expected a JSON object, got {type(document).__name__}")
    return document


def decode(raw: RawRecord, schema: Schema) -> DecodedRecord:
    """
    Decode one raw record. Never raises for bad payloads.
    """
    try:
        document = parse_document(raw.payload)
    except DecodeFailure as exc:
        log.debug(
            "Malformed payload",
            extra={"offset": raw.offset, "reason": exc.reason},
        )
        return DecodedRecord(
            offset=raw.offset,
            values={name: None for name in schema.names},
            decode_failed=True,
            corrupt_record=raw.payload.decode("utf-8", errors="replace"),
        )
    return DecodedRecord(offset=raw.offset, values=project(document, schema))


def decode_batch(
    raws: Iterable[RawRecord],
    schema: Schema,
    mode: MalformedMode = MalformedMode.PERMISSIVE,
) -> List[DecodedRecord]:
    """
    Decode a poll result in order, applying the malformed-record policy.

    PERMISSIVE keeps malformed records (flagged); DROPMALFORMED removes them.
    """
    decoded = [decode(raw, schema) for raw in raws]
    if mode is MalformedMode.DROPMALFORMED:
        return [r for r in decoded if not r.decode_failed]
    return decoded


__all__ = [
    "convert",
    "decode",
    "decode_batch",
    "parse_document",
    "parse_timestamp",
    "project",
]
