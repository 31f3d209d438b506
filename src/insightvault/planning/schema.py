"""Dataset schema inference for InsightVault.

The schema is derived, never stored: it is a pure function of the row set and
is rebuilt on every request. Field order always follows first-seen order in
the data so that anything user-visible is deterministic.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from insightvault.execution.type_detector import is_time_like_field, parse_number
from insightvault.planning.resolver import build_aliases

# Share of non-empty values that must parse as numbers for a numeric field
NUMERIC_RATIO = 0.6
# Categorical thresholds: few distinct values, or low uniqueness ratio
MAX_CATEGORIES = 50
MAX_UNIQUENESS = 0.3
TOP_VALUES_LIMIT = 20

TITLE_CANDIDATES = ("title", "name", "movie", "film", "song", "book", "product", "item", "show")

# ISO-ish dates (2001-05, 2001-05-03) and US-style dates (05/03/2001)
_DATE_VALUE_RE = re.compile(r"^\d{4}-\d{1,2}(?:-\d{1,2})?\b|^\d{1,2}/\d{1,2}/\d{4}\b")


@dataclass(frozen=True)
class ValueRange:
    """Min/max over the parsed values of a numeric field."""

    min: float
    max: float


@dataclass
class DatasetSchema:
    """Inferred schema for one dataset.

    Attributes:
        all_fields: Column names in first-seen order
        numeric_fields: Fields where >=60% of non-empty values are numbers
        categorical_fields: Low-cardinality non-numeric fields
        title_field: Identifying column (title, name, ...) if any
        time_fields: Fields holding years or dates (by name and values)
        ranges: Per numeric field min/max
        top_values: Per categorical field, up to 20 values by descending frequency
        aliases: Normalized natural-language token -> field name
        row_count: Number of rows the schema was built from
    """

    all_fields: list[str] = field(default_factory=list)
    numeric_fields: list[str] = field(default_factory=list)
    categorical_fields: list[str] = field(default_factory=list)
    title_field: Optional[str] = None
    time_fields: list[str] = field(default_factory=list)
    ranges: dict[str, ValueRange] = field(default_factory=dict)
    top_values: dict[str, list[str]] = field(default_factory=dict)
    aliases: dict[str, str] = field(default_factory=dict)
    row_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.all_fields

    def is_numeric(self, name: str) -> bool:
        return name in self.numeric_fields

    def is_categorical(self, name: str) -> bool:
        return name in self.categorical_fields

    def to_dict(self) -> dict:
        """JSON-friendly summary (aliases omitted)."""
        return {
            "row_count": self.row_count,
            "all_fields": list(self.all_fields),
            "numeric_fields": list(self.numeric_fields),
            "categorical_fields": list(self.categorical_fields),
            "title_field": self.title_field,
            "time_fields": list(self.time_fields),
            "ranges": {f: {"min": r.min, "max": r.max} for f, r in self.ranges.items()},
            "top_values": {f: list(v) for f, v in self.top_values.items()},
        }

    def is_boolean(self, name: str) -> bool:
        """Numeric field whose value range is exactly [0, 1]."""
        r = self.ranges.get(name)
        return r is not None and r.min == 0 and r.max == 1


def _ordered_fields(rows: Iterable[Mapping[str, str]]) -> list[str]:
    seen: dict[str, None] = {}
    for row in rows:
        for key in row:
            if key not in seen:
                seen[key] = None
    return list(seen)


def _is_time_field(name: str, values: list[str]) -> bool:
    """Years or dates, judged by the column name or by the values themselves."""
    if is_time_like_field(name, values):
        return True
    dated = sum(1 for v in values if _DATE_VALUE_RE.match(v))
    return dated / len(values) >= NUMERIC_RATIO


def build_schema(rows: list[Mapping[str, str]], sample_size: int | None = None) -> DatasetSchema:
    """
    Infer the schema of a row set.

    Args:
        rows: All rows of one dataset (possibly empty)
        sample_size: If set, consider only the first N non-empty values per
            field (summary contexts). Structural execution passes None so the
            full row set is used.

    Returns:
        DatasetSchema (all-empty for empty input)
    """
    if not rows:
        return DatasetSchema()

    all_fields = _ordered_fields(rows)
    numeric_fields: list[str] = []
    categorical_fields: list[str] = []
    ranges: dict[str, ValueRange] = {}
    top_values: dict[str, list[str]] = {}
    time_fields: list[str] = []

    for name in all_fields:
        vals = []
        for row in rows:
            raw = row.get(name)
            if raw is None:
                continue
            text = str(raw).strip()
            if text:
                vals.append(text)
                if sample_size is not None and len(vals) >= sample_size:
                    break
        if not vals:
            continue

        if _is_time_field(name, vals):
            time_fields.append(name)

        nums = [n for n in (parse_number(v) for v in vals) if n is not None]
        if len(nums) / len(vals) >= NUMERIC_RATIO:
            numeric_fields.append(name)
            ranges[name] = ValueRange(min=min(nums), max=max(nums))
            continue

        unique = {v.lower() for v in vals}
        if len(unique) <= MAX_CATEGORIES or len(unique) / len(vals) < MAX_UNIQUENESS:
            categorical_fields.append(name)
            # Counter preserves first-seen order among equal counts
            freq = Counter(vals)
            ranked = sorted(freq.items(), key=lambda item: -item[1])
            top_values[name] = [v for v, _ in ranked[:TOP_VALUES_LIMIT]]

    title_field = next((f for f in all_fields if f in TITLE_CANDIDATES), None)

    return DatasetSchema(
        all_fields=all_fields,
        numeric_fields=numeric_fields,
        categorical_fields=categorical_fields,
        title_field=title_field,
        time_fields=time_fields,
        ranges=ranges,
        top_values=top_values,
        aliases=build_aliases(all_fields),
        row_count=len(rows),
    )


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def describe_schema(schema: DatasetSchema) -> str:
    """Render a compact dataset description for LLM prompts."""
    range_str = ", ".join(
        f"{f}: {_fmt(r.min)}-{_fmt(r.max)}" for f, r in list(schema.ranges.items())[:8]
    )
    cat_samples = "; ".join(
        f"{f}: [{', '.join(schema.top_values.get(f, [])[:5])}]"
        for f in schema.categorical_fields[:4]
    )

    lines = [
        f"Dataset: {schema.row_count} rows, {len(schema.all_fields)} columns.",
        f"All columns: {', '.join(schema.all_fields)}.",
        f"Numeric columns: {', '.join(schema.numeric_fields)}." if schema.numeric_fields else "",
        f"Categorical columns: {', '.join(schema.categorical_fields)}." if schema.categorical_fields else "",
        f"Title/name column: {schema.title_field}." if schema.title_field else "",
        f"Value ranges: {range_str}." if range_str else "",
        f"Sample category values: {cat_samples}." if cat_samples else "",
    ]
    return "\n".join(line for line in lines if line)
