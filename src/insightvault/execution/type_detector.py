"""
Value and column type detection for in-memory rows.

Row values arrive as strings. These helpers decide whether a value is a
finite number, whether a column is time-like or an identifier, and pull
year/month buckets out of date-ish strings.
"""

from typing import Literal, Optional
import math
import re


TypeHint = Literal[
    "time",
    "identifier",
    "numeric_amount",  # money/currency
    "numeric_rate",    # ratings, scores, percentages
    "numeric_count",   # counts, votes
    "numeric",
    "boolean",
    "text",
]

_NUMBER_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")
_GROUPED_NUMBER_RE = re.compile(r"^[+-]?\d{1,3}(?:,\d{3})+(?:\.\d+)?$")
_YEAR_RE = re.compile(r"(?<!\d)(1[5-9]\d{2}|2\d{3})(?!\d)")
_MONTH_RE = re.compile(r"^\s*(\d{4})[-/](\d{1,2})(?!\d)")


def parse_number(value) -> Optional[float]:
    """
    Parse a raw cell value as a finite number.

    Accepts plain numerals ("8.1", "-3", "1e3") and comma-grouped thousands
    ("1,234,567.5"). Anything else, including "nan"/"inf", returns None.

    Args:
        value: Raw cell value (usually a string)

    Returns:
        The float value, or None if the value is not a finite number
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
        return f if math.isfinite(f) else None

    text = str(value).strip()
    if not text:
        return None
    if _GROUPED_NUMBER_RE.match(text):
        text = text.replace(",", "")
    elif not _NUMBER_RE.match(text):
        return None

    f = float(text)
    return f if math.isfinite(f) else None


def extract_year(value) -> Optional[int]:
    """Return the year in a year or date value ("2001", "2001-05-03", "05/03/2001")."""
    num = parse_number(value)
    if num is not None:
        year = int(math.floor(num))
        return year if 1000 <= year <= 2999 else None
    match = _YEAR_RE.search(str(value or ""))
    return int(match.group(1)) if match else None


def extract_month(value) -> Optional[str]:
    """Return the YYYY-MM bucket of a date value, or None when there is no month."""
    match = _MONTH_RE.match(str(value or ""))
    if not match:
        return None
    month = int(match.group(2))
    if not 1 <= month <= 12:
        return None
    return f"{match.group(1)}-{month:02d}"


def is_time_like_field(column_name: str, sample_values: list = None) -> bool:
    """
    Decide whether a column holds years or dates.

    Args:
        column_name: Name of the column
        sample_values: Optional values; when given, most must carry a year

    Returns:
        True if the name looks temporal and (when values are given) the
        values carry a year
    """
    col_lower = column_name.lower()

    time_patterns = [
        r'year', r'date', r'^released?$', r'release', r'^time$', r'_time$',
        r'timestamp', r'_at$', r'^month$', r'^period$', r'decade',
    ]
    name_match = any(re.search(p, col_lower) for p in time_patterns)
    if not name_match:
        return False
    if not sample_values:
        return True

    non_empty = [v for v in sample_values if str(v).strip()]
    if not non_empty:
        return False
    with_year = sum(1 for v in non_empty if extract_year(v) is not None)
    return with_year / len(non_empty) >= 0.6


def is_identifier_field(column_name: str) -> bool:
    """Identifier columns (IDs, codes, keys) must never be averaged or summed."""
    col_lower = column_name.lower()
    if col_lower in ("id", "key", "uuid", "index", "idx", "code"):
        return True
    # But not if it's a count-like ID
    if 'count' in col_lower:
        return False
    return any(re.search(p, col_lower) for p in [r'_id$', r'^id_', r'(?<![a-z])id$', r'_key$', r'_code$', r'uuid'])


def detect_column_type(column_name: str, numeric: bool, value_range: tuple = None) -> TypeHint:
    """
    Detect the semantic type of a column from its name and classification.

    Args:
        column_name: Name of the column
        numeric: Whether the schema classified the column as numeric
        value_range: Optional (min, max) for numeric columns

    Returns:
        TypeHint indicating the semantic type
    """
    col_lower = column_name.lower()

    # Time detection (highest priority for trend questions)
    if is_time_like_field(column_name):
        return "time"

    if is_identifier_field(column_name):
        return "identifier"

    if not numeric:
        return "text"

    if value_range is not None and value_range[0] == 0 and value_range[1] == 1:
        return "boolean"

    amount_patterns = [
        'amount', 'price', 'cost', 'fee', 'revenue', 'gross', 'boxoffice',
        'box_office', 'sales', 'income', 'budget', 'salary', 'earning', 'total',
    ]
    if any(p in col_lower for p in amount_patterns):
        return "numeric_amount"

    rate_patterns = ['rating', 'score', 'rate', 'percent', 'pct', 'ratio', 'imdb']
    if any(p in col_lower for p in rate_patterns):
        return "numeric_rate"

    count_patterns = ['count', 'votes', 'quantity', 'qty', 'number_of', 'num_']
    if any(p in col_lower for p in count_patterns):
        return "numeric_count"

    return "numeric"
