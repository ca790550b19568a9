"""
Partition key extraction for partitioned output.

A `PartitionSpec` is an ordered list of rules. Each rule names an output
column, the schema field it reads and a transform picked from a closed set of
named pure functions (`identity`, `year`, `month`, `day`, `hour`, `date`).
Specs are plain data, so they can be parsed from CLI strings and serialized:

    spec = PartitionSpec.parse(["zipcode", "hour=hour(timestamp)"])
    key = extract_key(record, spec)      # (("zipcode", "12345"), ("hour", 14))
    partition_path(key)                  # "zipcode=12345/hour=14"
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Literal, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from microbatch.domain.models import DecodedRecord
from microbatch.domain.schema import FieldType, Schema
from microbatch.errors import SchemaError

PartitionKey = Tuple[Tuple[str, Any], ...]

TransformName = Literal["identity", "year", "month", "day", "hour", "date"]

_ABSENT = object()


def _temporal(fn: Callable[[datetime], Any]) -> Callable[[Any], Any]:
    def apply(value: Any) -> Any:
        if not isinstance(value, datetime):
            return _ABSENT
        return fn(value)

    return apply


TRANSFORMS: Dict[str, Callable[[Any], Any]] = {
    "identity": lambda value: value,
    "year": _temporal(lambda ts: ts.year),
    "month": _temporal(lambda ts: ts.month),
    "day": _temporal(lambda ts: ts.day),
    "hour": _temporal(lambda ts: ts.hour),
    "date": _temporal(lambda ts: ts.date().isoformat()),
}

_RULE_RE = re.compile(
    r"^\s*(?:(?P<column>[A-Za-z_][\w]*)\s*=\s*)?"
    r"(?:(?P<transform>[a-z]+)\(\s*(?P<inner>[A-Za-z_][\w]*)\s*\)|(?P<plain>[A-Za-z_][\w]*))\s*$"
)

# Characters that cannot appear verbatim in a `<column>=<value>` directory name.
_UNSAFE_PATH_CHARS = frozenset('"#%\'*/:=?\\\x7f{}[]^') | frozenset(chr(c) for c in range(0x20))


class PartitionRule(BaseModel):
    """Derive output column `column` from schema field `source` via `transform`."""

    column: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1)
    transform: TransformName = "identity"

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, text: str) -> "PartitionRule":
        """
        Parse `field`, `transform(field)` or `column=transform(field)`.
        """
        match = _RULE_RE.match(text)
        if not match:
            raise SchemaError(f"Invalid partition rule {text!r}")
        if match.group("plain"):
            source = match.group("plain")
            return cls(column=match.group("column") or source, source=source)
        transform = match.group("transform")
        if transform not in TRANSFORMS:
            raise SchemaError(
                f"Unknown partition transform '{transform}'. Available: {', '.join(TRANSFORMS)}"
            )
        return cls(
            column=match.group("column") or transform,
            source=match.group("inner"),
            transform=transform,
        )

    def describe(self) -> str:
        if self.transform == "identity" and self.column == self.source:
            return self.source
        return f"{self.column}={self.transform}({self.source})"


class PartitionSpec(BaseModel):
    """Ordered partition rules; one directory level per rule."""

    rules: Tuple[PartitionRule, ...] = Field(default_factory=tuple)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_unique_columns(self) -> "PartitionSpec":
        columns = [r.column for r in self.rules]
        if len(columns) != len(set(columns)):
            raise SchemaError(f"Duplicate partition columns in {columns}")
        return self

    @classmethod
    def parse(cls, rules: Iterable[str]) -> "PartitionSpec":
        return cls(rules=tuple(PartitionRule.parse(r) for r in rules))

    @property
    def columns(self) -> list[str]:
        return [r.column for r in self.rules]

    def check_schema(self, schema: Schema) -> None:
        """
        Reject rules that can never yield a directory value for `schema`.

        Raises
        ------
        SchemaError
            If a rule reads an unknown or nested field, or applies a
            temporal transform to a non-timestamp field.
        """
        for rule in self.rules:
            if rule.source not in schema:
                raise SchemaError(
                    f"Partition rule '{rule.describe()}' reads unknown field '{rule.source}'"
                )
            ftype = schema.field(rule.source).type
            if ftype is FieldType.NESTED:
                raise SchemaError(
                    f"Partition rule '{rule.describe()}' reads nested field '{rule.source}'"
                )
            if rule.transform != "identity" and ftype is not FieldType.TIMESTAMP:
                raise SchemaError(
                    f"Transform '{rule.transform}' needs a timestamp field, "
                    f"'{rule.source}' is {ftype.value}"
                )


def extract_key(record: DecodedRecord, spec: PartitionSpec) -> Optional[PartitionKey]:
    """
    Compute the partition key of a record, or None when any component is absent.
    """
    key = []
    for rule in spec.rules:
        value = record.get(rule.source)
        if value is None:
            return None
        derived = TRANSFORMS[rule.transform](value)
        if derived is _ABSENT or derived is None or isinstance(derived, (dict, list)):
            return None
        key.append((rule.column, derived))
    return tuple(key)


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def escape_path_name(text: str) -> str:
    """Percent-escape characters that are unsafe in a directory name."""
    return "".join(f"%{ord(ch):02X}" if ch in _UNSAFE_PATH_CHARS else ch for ch in text)


def unescape_path_name(text: str) -> str:
    return re.sub(r"%([0-9A-F]{2})", lambda m: chr(int(m.group(1), 16)), text)


def partition_path(key: PartitionKey) -> str:
    """Render a key as `col=value/col=value`, in declared order."""
    return "/".join(
        f"{escape_path_name(column)}={escape_path_name(format_value(value))}"
        for column, value in key
    )


__all__ = [
    "PartitionKey",
    "PartitionRule",
    "PartitionSpec",
    "TRANSFORMS",
    "escape_path_name",
    "extract_key",
    "format_value",
    "partition_path",
    "unescape_path_name",
]
