"""
Schema definitions for decoding semi-structured payloads.

A `Schema` is an ordered, immutable sequence of named, typed fields. Field
names are case-sensitive and must be unique. Schemas can be built directly or
parsed from a compact DDL string:

    Schema.from_ddl("timestamp TIMESTAMP, zipcode STRING, temperature INT")
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from microbatch.errors import SchemaError


class FieldType(str, Enum):
    TIMESTAMP = "timestamp"
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    NESTED = "nested"


_DDL_TYPES = {
    "TIMESTAMP": FieldType.TIMESTAMP,
    "STRING": FieldType.STRING,
    "INT": FieldType.INTEGER,
    "INTEGER": FieldType.INTEGER,
    "BIGINT": FieldType.INTEGER,
    "LONG": FieldType.INTEGER,
    "FLOAT": FieldType.FLOAT,
    "DOUBLE": FieldType.FLOAT,
    "BOOL": FieldType.BOOLEAN,
    "BOOLEAN": FieldType.BOOLEAN,
}


class SchemaField(BaseModel):
    """
    One named, typed field. `fields` is only meaningful for NESTED.
    """

    name: str = Field(..., min_length=1, description="Case-sensitive field name.")
    type: FieldType = Field(..., description="Semantic type of the field.")
    fields: Optional["Schema"] = Field(None, description="Sub-schema for nested fields.")

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_nested(self) -> "SchemaField":
        if self.fields is not None and self.type is not FieldType.NESTED:
            raise SchemaError(f"Field '{self.name}' has a sub-schema but is not nested")
        return self


class Schema(BaseModel):
    """
    Ordered collection of fields bound to a stream.
    """

    fields: Tuple[SchemaField, ...] = Field(default_factory=tuple)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_unique(self) -> "Schema":
        seen: set[str] = set()
        for f in self.fields:
            if f.name in seen:
                raise SchemaError(f"Duplicate field name '{f.name}' in schema")
            seen.add(f.name)
        return self

    @classmethod
    def of(cls, *fields: tuple[str, FieldType | str] | SchemaField) -> "Schema":
        """Build a schema from `(name, type)` pairs or SchemaField instances."""
        built = []
        for item in fields:
            if isinstance(item, SchemaField):
                built.append(item)
            else:
                name, ftype = item
                built.append(SchemaField(name=name, type=FieldType(ftype)))
        return cls(fields=tuple(built))

    @classmethod
    def from_ddl(cls, ddl: str) -> "Schema":
        """
        Parse `name TYPE, name TYPE, ...`. Nested fields use `STRUCT<...>`.
        """
        return cls(fields=tuple(_parse_field(part) for part in _split_top_level(ddl)))

    @property
    def names(self) -> list[str]:
        return [f.name for f in self.fields]

    def field(self, name: str) -> SchemaField:
        for f in self.fields:
            if f.name == name:
                return f
        raise KeyError(name)

    def __contains__(self, name: object) -> bool:
        return any(f.name == name for f in self.fields)

    def to_ddl(self) -> str:
        return ", ".join(_field_ddl(f) for f in self.fields)


def _field_ddl(f: SchemaField) -> str:
    if f.type is FieldType.NESTED:
        inner = f.fields.to_ddl() if f.fields is not None else ""
        return f"{f.name} STRUCT<{inner}>"
    return f"{f.name} {f.type.value.upper()}"


def _split_top_level(text: str) -> list[str]:
    """Split on commas that are not inside STRUCT<...>."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in text:
        if ch == "<":
            depth += 1
        elif ch == ">":
            depth -= 1
            if depth < 0:
                raise SchemaError(f"Unbalanced '>' in schema definition: {text!r}")
        if ch == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    if depth != 0:
        raise SchemaError(f"Unbalanced '<' in schema definition: {text!r}")
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    if any(not p for p in parts):
        raise SchemaError(f"Empty field definition in schema: {text!r}")
    return parts


def _parse_field(definition: str) -> SchemaField:
    pieces = definition.split(None, 1)
    if len(pieces) != 2:
        raise SchemaError(f"Expected 'name TYPE', got {definition!r}")
    name, type_text = pieces[0], pieces[1].strip()
    upper = type_text.upper()
    if upper.startswith("STRUCT<") and upper.endswith(">"):
        inner = type_text[len("STRUCT<") : -1]
        return SchemaField(name=name, type=FieldType.NESTED, fields=Schema.from_ddl(inner))
    if upper == "STRUCT":
        return SchemaField(name=name, type=FieldType.NESTED)
    if upper not in _DDL_TYPES:
        raise SchemaError(f"Unknown type '{type_text}' for field '{name}'")
    return SchemaField(name=name, type=_DDL_TYPES[upper])


SchemaField.model_rebuild()


__all__ = ["FieldType", "Schema", "SchemaField"]
