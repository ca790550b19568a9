"""
Read-only query surface over materialized rows.

Supports column projection, row filtering, ordering and limits; there is no
planner or optimizer. Queries are immutable builders over a snapshot:

    view.query().where("zipcode", "==", 22334).where("temperature > 65") \
        .select("timestamp", "temperature").order_by("temperature").collect()

Literals are coerced to the type of the value they are compared with, so
`zipcode == 22334` matches the string "22334". Rows whose value is None never
match a comparison. Dotted names (`reading.temperature`) read into nested
fields; `_offset`, `_decode_failed` and `_corrupt_record` expose record
metadata.
"""

from __future__ import annotations

import json
import operator
import re
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from microbatch.decoding import parse_timestamp
from microbatch.domain.models import DecodedRecord

_OPS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "=": operator.eq,
    "!=": operator.ne,
    "<>": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

_CONDITION_RE = re.compile(r"^\s*([A-Za-z_][\w.]*)\s*(==|!=|<>|<=|>=|=|<|>)\s*(.+?)\s*$")

_META_COLUMNS = {
    "_offset": lambda r: r.offset,
    "_decode_failed": lambda r: r.decode_failed,
    "_corrupt_record": lambda r: r.corrupt_record,
}

_NO_MATCH = object()


def column_value(record: DecodedRecord, column: str) -> Any:
    """Value of `column` in `record`; dotted names descend into nested fields."""
    if column in _META_COLUMNS:
        return _META_COLUMNS[column](record)
    head, _, rest = column.partition(".")
    value = record.get(head)
    while rest and isinstance(value, dict):
        head, _, rest = rest.partition(".")
        value = value.get(head)
    return None if rest else value


def parse_literal(text: str) -> Any:
    """Parse a condition literal: quoted string, true/false/null, number, or bare word."""
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    lowered = text.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if lowered == "null":
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def _coerce(literal: Any, actual: Any) -> Any:
    if isinstance(actual, bool):
        if isinstance(literal, bool):
            return literal
        if isinstance(literal, str) and literal.lower() in ("true", "false"):
            return literal.lower() == "true"
        return _NO_MATCH
    if isinstance(actual, str):
        if isinstance(literal, str):
            return literal
        if isinstance(literal, bool):
            return "true" if literal else "false"
        return json.dumps(literal)
    if isinstance(actual, (int, float)):
        if isinstance(literal, bool):
            return _NO_MATCH
        if isinstance(literal, (int, float)):
            return literal
        if isinstance(literal, str):
            try:
                return float(literal)
            except ValueError:
                return _NO_MATCH
        return _NO_MATCH
    if isinstance(actual, datetime):
        if isinstance(literal, datetime):
            return literal
        coerced = parse_timestamp(literal.isoformat() if isinstance(literal, date) else literal)
        return coerced if coerced is not None else _NO_MATCH
    return literal


@dataclass(frozen=True)
class Condition:
    column: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _OPS:
            raise ValueError(f"Unsupported operator '{self.op}'. Available: {', '.join(_OPS)}")

    @classmethod
    def parse(cls, text: str) -> "Condition":
        match = _CONDITION_RE.match(text)
        if not match:
            raise ValueError(f"Invalid condition {text!r}; expected '<column> <op> <literal>'")
        column, op, literal = match.groups()
        return cls(column=column, op=op, value=parse_literal(literal))

    def matches(self, record: DecodedRecord) -> bool:
        actual = column_value(record, self.column)
        if actual is None or self.value is None:
            return False
        literal = _coerce(self.value, actual)
        if literal is _NO_MATCH:
            return False
        try:
            return bool(_OPS[self.op](actual, literal))
        except TypeError:
            return False


@dataclass(frozen=True)
class Query:
    """
    Immutable query over a fixed sequence of rows.
    """

    rows: Sequence[DecodedRecord]
    columns: Optional[Sequence[str]] = None
    conditions: Tuple[Condition, ...] = ()
    ordering: Tuple[Tuple[str, bool], ...] = ()
    max_rows: Optional[int] = None
    projection: Optional[Tuple[str, ...]] = None

    def select(self, *columns: str) -> "Query":
        return replace(self, projection=tuple(columns) or None)

    def where(self, column: str, op: Optional[str] = None, value: Any = None) -> "Query":
        """Add a condition; `where("temperature > 65")` parses a condition string."""
        if op is None:
            condition = Condition.parse(column)
        else:
            condition = Condition(column=column, op=op, value=value)
        return replace(self, conditions=self.conditions + (condition,))

    def order_by(self, column: str, descending: bool = False) -> "Query":
        return replace(self, ordering=self.ordering + ((column, descending),))

    def limit(self, n: int) -> "Query":
        if n < 0:
            raise ValueError("limit must be >= 0")
        return replace(self, max_rows=n)

    def _matching(self) -> List[DecodedRecord]:
        matched = [r for r in self.rows if all(c.matches(r) for c in self.conditions)]
        # stable sorts applied last-key-first give multi-column ordering
        for column, descending in reversed(self.ordering):
            present = [r for r in matched if column_value(r, column) is not None]
            missing = [r for r in matched if column_value(r, column) is None]
            present.sort(key=lambda r: column_value(r, column), reverse=descending)
            matched = present + missing
        if self.max_rows is not None:
            matched = matched[: self.max_rows]
        return matched

    def output_columns(self) -> List[str]:
        if self.projection is not None:
            return list(self.projection)
        if self.columns is not None:
            return list(self.columns)
        names: Dict[str, None] = {}
        for row in self.rows:
            names.update(dict.fromkeys(row.values))
        return list(names)

    def collect(self) -> List[Dict[str, Any]]:
        columns = self.output_columns()
        return [{c: column_value(r, c) for c in columns} for r in self._matching()]

    def count(self) -> int:
        return len(self._matching())


__all__ = ["Condition", "Query", "column_value", "parse_literal"]
