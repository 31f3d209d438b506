"""Deterministic intent detectors.

Each detector inspects the normalized question and the inferred schema and
either declines (returns None) or returns a fully parameterized intent. A
detector that cannot resolve a required field declines rather than guess.

Detectors are pure: no I/O, no shared state. Their precedence lives in
``insightvault.planning.dispatch.DETECTOR_CHAIN``.
"""

import re
from typing import Optional

from insightvault.execution.type_detector import (
    detect_column_type,
    is_identifier_field,
    is_time_like_field,
    parse_number,
)
from insightvault.planning.intent import (
    Aggregate,
    ConditionalCount,
    DatasetInfo,
    Filter,
    FilteredAggregate,
    GroupBy,
    GroupRank,
    ListAll,
    Lookup,
    Outlier,
    TopN,
    Trend,
)
from insightvault.planning.resolver import collapse, pluralize, resolve_field, singularize
from insightvault.planning.schema import TITLE_CANDIDATES, DatasetSchema

# Fixed preference order for the default rank field
RANK_PREFERENCE = ("rating", "score", "imdb", "votes", "boxoffice", "revenue")

NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
    "eleven": 11, "twelve": 12, "thirteen": 13, "fourteen": 14, "fifteen": 15,
    "sixteen": 16, "seventeen": 17, "eighteen": 18, "nineteen": 19, "twenty": 20,
}

# Never treated as field names on their own
STOPWORDS = frozenset({
    "a", "an", "the", "of", "in", "on", "at", "to", "for", "by", "with", "and", "or",
    "is", "are", "was", "were", "be", "been", "being", "do", "does", "did",
    "have", "has", "had", "what", "which", "who", "whom", "whose", "how", "many",
    "much", "me", "my", "i", "we", "you", "us", "can", "could", "please", "there",
    "that", "this", "these", "those", "it", "its", "their", "from", "within", "among",
    "show", "list", "give", "tell", "display", "get", "find", "all", "each", "every",
    "per", "top", "bottom", "best", "worst", "highest", "lowest", "most", "least",
    "than", "more", "less", "over", "under", "above", "below", "average", "avg",
    "mean", "total", "sum", "count", "number", "max", "maximum", "min", "minimum",
    "largest", "smallest", "biggest", "greatest", "distinct", "unique", "different",
    "where", "when", "any", "some", "not", "no", "only", "just", "also", "overall",
})

# Generic entity nouns that must never be resolved as field names
ENTITY_WORDS = frozenset({
    "row", "rows", "item", "items", "record", "records", "entry", "entries",
    "result", "results", "thing", "things", "one", "ones", "data", "dataset",
    "line", "lines", "value", "values", "entity", "entities", "observation",
    "observations", "sample", "samples",
})

TIME_UNIT_WORDS = frozenset({
    "year", "years", "month", "months", "date", "dates", "day", "days", "week",
    "weeks", "quarter", "quarters", "decade", "decades", "time", "period", "periods",
})

_NUM = r"-?\d[\d,]*(?:\.\d+)?"
_NUM_WORD = "|".join(NUMBER_WORDS)

_WORD_RE = re.compile(r"[a-z0-9](?:[a-z0-9_&.'-]*[a-z0-9])?")
_SYMBOL_OP_RE = re.compile(r"\s*(>=|<=|>|<|=)\s*")

_TOP_N_RE = re.compile(
    rf"\b(?P<word>top|best|highest|bottom|worst|lowest|largest|biggest|smallest)\s+"
    rf"(?P<n>\d+|{_NUM_WORD})\b"
)
_N_TOP_RE = re.compile(
    rf"\b(?P<n>\d{{1,3}}|{_NUM_WORD})\s+(?:[a-z-]+\s+)?"
    r"(?P<word>highest|lowest|best|worst|largest|biggest|smallest|top|bottom|most|least)\b"
)
_DESC_WORDS = frozenset({"top", "best", "highest", "largest", "biggest", "most"})

_BY_RE = re.compile(r"\bby\s+(?:the\s+|their\s+|its\s+)?(?P<target>[a-z][\w\s-]*)")

_GROUP_CUE_RE = re.compile(
    r"\b(?:per|for\s+each|for\s+every|by\s+each|by\s+every|grouped\s+by|group\s+by|"
    r"broken\s+down\s+by|breakdown\s+by|split\s+by)\s+(?P<rest>[a-z][\w\s-]*)"
)
_TRAILING_BY_RE = re.compile(r"\bby\s+(?:the\s+)?(?P<rest>[a-z][\w-]*(?:\s+[a-z][\w-]*){0,2})$")

_GROUP_RANK_RE = re.compile(
    r"\b(?P<sup>most\s+popular|least\s+popular|most\s+common|least\s+common|"
    r"most\s+frequent|least\s+frequent|highest[\s-]rated|lowest[\s-]rated|top[\s-]rated|"
    r"best|worst|top)\s+(?P<rest>[a-z][\w\s-]*)"
)
_WHICH_GROUP_RE = re.compile(
    r"^(?:which|what)\s+(?P<target>[a-z][\w\s-]*?)\s+(?:is|has|had|have|was|gets|got|scores?)\s+"
    r"(?:the\s+)?(?P<sup>best|worst|highest|lowest|most|least|top|biggest|largest|smallest)\b"
    r"(?P<tail>.*)$"
)

_COUNT_CUE_RE = re.compile(r"\b(?:how\s+many|number\s+of|count\s+of)\b")
_HAVE_RE = re.compile(r"\b(?:have|has|had|with)\s+(?:an?\s+|any\s+|the\s+|some\s+)?(?P<rest>.+)$")
_FIELD_NUM_RE = re.compile(
    rf"\b(?P<field>[a-z][\w-]*(?:\s+[a-z][\w-]*)?)\s+(?:of\s+|=\s+|equal\s+to\s+)?(?P<num>{_NUM})\b"
)
_YEAR_CLAUSE_RE = re.compile(r"\b(?:in|from|during|released\s+in)\s+(?P<year>[12]\d{3})\b")
_NEGATION_RE = r"(?:did\s+not|didn't|do\s+not|don't|does\s+not|doesn't|not|never)\s+"

_OP_PATTERN = (
    r"(?P<op>no\s+more\s+than|no\s+less\s+than|greater\s+than\s+or\s+equal\s+to|"
    r"less\s+than\s+or\s+equal\s+to|more\s+than|greater\s+than|higher\s+than|"
    r"less\s+than|fewer\s+than|lower\s+than|at\s+least|at\s+most|over|under|above|"
    r"below|exceeding|equal\s+to|equals|exactly|>=|<=|>|<|=)"
)
_FIELD_OP_NUM_RE = re.compile(
    rf"\b(?P<field>[a-z][\w-]*(?:\s+[a-z][\w-]*){{0,3}}?)\s+{_OP_PATTERN}\s+(?P<num>{_NUM})"
)
_OP_NUM_FIELD_RE = re.compile(
    rf"\b{_OP_PATTERN}\s+(?P<num>{_NUM})\s+(?P<field>[a-z][\w-]*(?:\s+[a-z][\w-]*)?)"
)
_OP_MAP = {
    "no more than": "<=", "no less than": ">=",
    "greater than or equal to": ">=", "less than or equal to": "<=",
    "more than": ">", "greater than": ">", "higher than": ">", "over": ">",
    "above": ">", "exceeding": ">", ">": ">",
    "less than": "<", "fewer than": "<", "lower than": "<", "under": "<",
    "below": "<", "<": "<",
    "at least": ">=", ">=": ">=", "at most": "<=", "<=": "<=",
    "equal to": "=", "equals": "=", "exactly": "=", "=": "=",
}
_FILLER_WORDS = frozenset({
    "is", "are", "was", "were", "be", "of", "a", "an", "the", "that", "with",
    "has", "have", "had", "whose", "where", "rated",
})

_AGG_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("count", re.compile(r"\b(?:how\s+many|number\s+of|count(?:\s+of)?)\b")),
    ("avg", re.compile(r"\b(?:average|avg|mean)\b")),
    ("sum", re.compile(r"\b(?:total|sum(?:\s+of)?|combined)\b")),
    ("max", re.compile(r"\b(?:max|maximum|highest|largest|biggest|greatest)\b")),
    ("min", re.compile(r"\b(?:min|minimum|lowest|smallest)\b")),
]
_SCOPE_CLAUSE_RE = re.compile(r"\b(?:in|for|from|within|among)\s+(?:the\s+)?")

_DISTINCT_RE = re.compile(r"\b(?:distinct|unique|different)\b")
_EARLIEST_RE = re.compile(r"\b(?:earliest|oldest)\b")
_LATEST_RE = re.compile(r"\b(?:latest|newest|most\s+recent)\b")
_WHICH_WHO_RE = re.compile(r"^(?:which|who)\b")
_EXTREMAL_MAX_RE = re.compile(r"\b(?:highest|most|best|largest|biggest|greatest|max|maximum|top)\b")
_EXTREMAL_MIN_RE = re.compile(r"\b(?:lowest|least|worst|smallest|fewest|min|minimum)\b")

_TREND_CUE_RE = re.compile(
    r"\b(?:over\s+time|over\s+the\s+(?:years|decades|months)|through\s+the\s+years|trends?|trending|"
    r"(?:by|per|each|every|across)\s+(?:year|years|month|months|decade|decades)|"
    r"yearly|annually|annual|monthly|year\s+over\s+year|year-over-year)\b"
)
_IMPLICIT_TREND_RE = re.compile(
    r"\b(?:which|what)\s+(?P<period>year|month|decade)\b.*?"
    r"\b(?P<sup>highest|lowest|most|least|best|worst|biggest|largest|smallest|fewest|top)\b"
)
_TREND_COUNT_RE = re.compile(
    r"\b(?:how\s+many|number\s+of|count|fewest|(?:most|least)\s+(?:\w+\s+)?"
    r"(?:movies|films|records|entries|rows|releases|items))\b"
)
_TREND_SUM_RE = re.compile(r"\b(?:total|sum|revenue|gross|grossing|sales|earnings|box\s*office)\b")

_LIST_ALL_RE = re.compile(
    r"^(?:can\s+you\s+|please\s+)?(?:list|show(?:\s+me)?|give(?:\s+me)?|display|what\s+are|tell\s+me)\s+"
    r"(?:all(?:\s+of)?(?:\s+the)?|every|the\s+(?:unique|distinct|different)|unique|distinct)\s+"
    r"(?:(?:unique|distinct|different|possible)\s+)?(?P<target>.+)$"
)
_COMPARISON_HINT_RE = re.compile(
    r"\d|\b(?:over|under|above|below|more\s+than|less\s+than|greater\s+than|fewer\s+than|"
    r"at\s+least|at\s+most|exceeding)\b|[<>=]"
)

_OUTLIER_RE = re.compile(
    r"\b(?:outliers?|anomal\w*|unusual|abnormal|extreme\s+values?|stands?\s+out|standing\s+out)\b"
)

_LOOKUP_RE = re.compile(
    r"^(?:tell\s+me\s+about|details\s+(?:on|for|about)|(?:information|info)\s+(?:on|about)|"
    r"look\s+up|lookup|search\s+for|find|who\s+is|who\s+was)\s+(?:the\s+)?(?P<query>.+)$"
)

_DATASET_INFO_PATTERNS = [
    re.compile(r"\b(?:what|which)\s+(?:are\s+the\s+)?(?:columns|fields|attributes|variables)\b"),
    re.compile(r"\bhow\s+many\s+(?:columns|fields)\b"),
    re.compile(r"\bdescribe\s+(?:the|this|my)\s+(?:dataset|data|file|table|csv)\b"),
    re.compile(r"\bwhat\s+(?:is|'s)\s+in\s+(?:the|this|my)\s+(?:dataset|data|file|table|csv)\b"),
    re.compile(r"\btell\s+me\s+about\s+(?:the|this|my)\s+(?:dataset|data|file|table|csv)\b"),
    re.compile(r"\bwhat\s+does\s+(?:the|this|my)\s+(?:dataset|data|file|table|csv)\s+contain\b"),
    re.compile(r"\b(?:schema|column\s+names|field\s+names)\b"),
]


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def normalize_question(question: str) -> str:
    """Lower-case, unify quotes, pad comparison symbols, drop trailing punctuation."""
    text = question.lower().replace("’", "'").replace("‘", "'")
    text = _SYMBOL_OP_RE.sub(r" \1 ", text)
    text = " ".join(text.split())
    return text.strip(" ?!.")


def _words(text: str) -> list[str]:
    words = []
    for w in _WORD_RE.findall(text):
        if w.endswith("'s"):
            w = w[:-2]
        words.append(w)
    return words


def _parse_count(token: str) -> Optional[int]:
    if token in NUMBER_WORDS:
        return NUMBER_WORDS[token]
    num = parse_number(token)
    return int(num) if num is not None else None


def _is_skippable(word: str, field_names: set[str]) -> bool:
    if word in ENTITY_WORDS:
        return True
    if word in STOPWORDS and word not in field_names:
        return True
    return parse_number(word) is not None


def _lookup_alias(phrase: str, schema: DatasetSchema) -> Optional[str]:
    return schema.aliases.get(phrase) or schema.aliases.get(collapse(phrase))


def resolve_phrase(
    text: str,
    schema: DatasetSchema,
    allowed: Optional[list[str]] = None,
    exclude: tuple = (),
) -> Optional[str]:
    """
    Find the first field mentioned in free text.

    Scans left to right; at each position the longest n-gram (up to 3 words)
    wins. Multi-word n-grams match aliases only; single words go through the
    full resolver, including fuzzy containment.

    Args:
        text: Normalized question text (or a fragment of it)
        schema: Inferred dataset schema
        allowed: Restrict results to these fields
        exclude: Fields that must not be returned

    Returns:
        Field name or None
    """
    words = _words(text)
    field_names = {f.lower() for f in schema.all_fields}

    for i in range(len(words)):
        for size in (3, 2, 1):
            gram = words[i:i + size]
            if len(gram) < size:
                continue
            if _is_skippable(gram[0], field_names) or _is_skippable(gram[-1], field_names):
                continue
            phrase = " ".join(gram)
            field = resolve_field(phrase, schema) if size == 1 else _lookup_alias(phrase, schema)
            if field is None or field in exclude:
                continue
            if allowed is not None and field not in allowed:
                continue
            return field
    return None


def _resolve_prefix(text: str, schema: DatasetSchema, allowed: Optional[list[str]] = None) -> Optional[str]:
    """Resolve a field named by the first one to three words of ``text``."""
    words = _words(text)
    if words and words[0] in ("the", "a", "an"):
        words = words[1:]
    for size in (3, 2, 1):
        if len(words) < size:
            continue
        gram = words[:size]
        if gram[0] in ENTITY_WORDS or gram[0] in STOPWORDS:
            return None
        phrase = " ".join(gram)
        field = resolve_field(phrase, schema) if size == 1 else _lookup_alias(phrase, schema)
        if field is not None and (allowed is None or field in allowed):
            return field
    return None


def _resolve_suffix(text: str, schema: DatasetSchema, allowed: Optional[list[str]] = None) -> Optional[str]:
    """Resolve a field named by the last one to three words of ``text``."""
    words = _words(text)
    while words and words[-1] in _FILLER_WORDS and words[-1] not in schema.aliases:
        words = words[:-1]
    for size in (3, 2, 1):
        if len(words) < size:
            continue
        gram = words[-size:]
        if gram[-1] in ENTITY_WORDS:
            return None
        phrase = " ".join(gram)
        field = resolve_field(phrase, schema) if size == 1 else _lookup_alias(phrase, schema)
        if field is not None and (allowed is None or field in allowed):
            return field
    return None


def default_rank_field(schema: DatasetSchema) -> Optional[str]:
    """
    Numeric field used when a ranking question names no sort column.

    Preference: rating, score, imdb, votes, boxoffice, revenue (by substring of
    the collapsed name); then the first numeric field that is neither time-like
    nor an identifier; then the first numeric field.
    """
    numeric = schema.numeric_fields
    if not numeric:
        return None
    for pref in RANK_PREFERENCE:
        for field in numeric:
            if pref in collapse(field):
                return field
    for field in numeric:
        if field in schema.time_fields or is_time_like_field(field) or is_identifier_field(field):
            continue
        return field
    return numeric[0]


def _metric_fields(schema: DatasetSchema) -> list[str]:
    """Numeric fields that can be summed or averaged."""
    return [
        f for f in schema.numeric_fields
        if not is_identifier_field(f) and f not in schema.time_fields
    ]


def find_category_value(
    text: str, schema: DatasetSchema, include_title: bool = False
) -> Optional[tuple[str, str]]:
    """
    Find a known categorical value mentioned verbatim in the question.

    Matching is case-insensitive, whole-word, and tolerant of a simple plural
    or singular form. The longest matching value wins.

    Returns:
        (field, value) with the value in its original casing, or None
    """
    best: Optional[tuple[str, str]] = None
    for field in schema.categorical_fields:
        if field == schema.title_field and not include_title:
            continue
        for value in schema.top_values.get(field, []):
            v = value.lower().strip()
            if len(v) < 2:
                continue
            for form in {v, pluralize(v), singularize(v)}:
                if re.search(rf"(?<![\w-]){re.escape(form)}(?![\w-])", text):
                    if best is None or len(value) > len(best[1]):
                        best = (field, value)
                    break
    return best


def _match_category_value(phrase: str, schema: DatasetSchema) -> Optional[tuple[str, str]]:
    """Match a whole phrase (e.g. the tail of "average rating in comedy") to a known value."""
    phrase = phrase.strip().strip("'\"")
    candidates = [phrase, singularize(phrase), pluralize(phrase)]
    words = phrase.split()
    if len(words) > 1:
        # "comedy movies" -> "comedy"
        head = " ".join(words[:-1])
        candidates.extend([head, singularize(head)])

    for candidate in candidates:
        for field in schema.categorical_fields:
            for value in schema.top_values.get(field, []):
                v = value.lower().strip()
                if candidate == v or candidate == singularize(v) or candidate == pluralize(v):
                    return field, value
    return None


def _parse_comparison(text: str, schema: DatasetSchema) -> Optional[tuple[str, str, float]]:
    """Extract (numeric field, operator, threshold) from a comparison phrase."""
    for match in _FIELD_OP_NUM_RE.finditer(text):
        field = _resolve_suffix(match.group("field"), schema, schema.numeric_fields)
        value = parse_number(match.group("num").rstrip(","))
        if field and value is not None:
            return field, _OP_MAP[" ".join(match.group("op").split())], value

    for match in _OP_NUM_FIELD_RE.finditer(text):
        field = _resolve_prefix(match.group("field"), schema, schema.numeric_fields)
        value = parse_number(match.group("num").rstrip(","))
        if field and value is not None:
            return field, _OP_MAP[" ".join(match.group("op").split())], value

    return None


def _explicit_n(text: str) -> Optional[tuple[int, str]]:
    match = _TOP_N_RE.search(text) or _N_TOP_RE.search(text)
    if not match:
        return None
    n = _parse_count(match.group("n"))
    if n is None:
        return None
    order = "desc" if match.group("word") in _DESC_WORDS else "asc"
    return max(1, min(n, 100)), order


def _detect_agg(text: str) -> Optional[str]:
    for agg, pattern in _AGG_PATTERNS:
        if pattern.search(text):
            return agg
    return None


def _time_field(text: str, schema: DatasetSchema) -> Optional[str]:
    """Time field mentioned in the question, else the first time field."""
    if not schema.time_fields:
        return None
    mentioned = resolve_phrase(text, schema, allowed=schema.time_fields)
    return mentioned or schema.time_fields[0]


def _is_trend_question(text: str) -> bool:
    return bool(_TREND_CUE_RE.search(text) or _IMPLICIT_TREND_RE.search(text))


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------


def detect_dataset_info(question: str, schema: DatasetSchema) -> Optional[DatasetInfo]:
    """'what columns are there', 'describe the dataset', 'schema'."""
    q = normalize_question(question)
    if schema.is_empty:
        return None
    if any(p.search(q) for p in _DATASET_INFO_PATTERNS):
        return DatasetInfo()
    return None


def detect_list_all(question: str, schema: DatasetSchema) -> Optional[ListAll]:
    """'list all genres', 'what are the unique directors'."""
    q = normalize_question(question)
    match = _LIST_ALL_RE.search(q)
    if not match:
        return None
    target = match.group("target")
    # "list all movies with rating over 8" is a filter
    if _COMPARISON_HINT_RE.search(target):
        return None

    field = _resolve_prefix(target, schema)
    if field is None:
        field = resolve_phrase(target, schema)
    if field is None and schema.title_field:
        words = _words(target)
        nouns = {singularize(w) for w in words} | {w[:-1] for w in words if w.endswith("ies")}
        if nouns & (set(TITLE_CANDIDATES) | {"record", "entry", "row", schema.title_field}):
            field = schema.title_field
    if field is None:
        return None
    return ListAll(field=field)


def detect_top_n(question: str, schema: DatasetSchema) -> Optional[TopN]:
    """'top 10 movies by rating', 'bottom five crime films', '3 highest rated'."""
    q = normalize_question(question)
    explicit = _explicit_n(q)
    if explicit is None:
        return None
    n, order = explicit

    field = None
    by_match = _BY_RE.search(q)
    if by_match:
        field = _resolve_prefix(by_match.group("target"), schema, schema.numeric_fields)
    if field is None:
        field = resolve_phrase(q, schema, allowed=schema.numeric_fields)
    if field is None:
        field = default_rank_field(schema)
    if field is None:
        return None

    filter_field = filter_value = None
    category = find_category_value(q, schema)
    if category:
        filter_field, filter_value = category

    return TopN(field=field, n=n, order=order, filter_field=filter_field, filter_value=filter_value)


def detect_group_by(question: str, schema: DatasetSchema) -> Optional[GroupBy]:
    """'total revenue per genre', 'average rating by each director', 'count by country'."""
    q = normalize_question(question)
    match = _GROUP_CUE_RE.search(q) or _TRAILING_BY_RE.search(q)
    if not match:
        return None

    rest = match.group("rest")
    rest_words = _words(rest)
    if rest_words and rest_words[0] == "the":
        rest_words = rest_words[1:]
    if not rest_words or rest_words[0] in TIME_UNIT_WORDS:
        return None

    group_field = _resolve_prefix(rest, schema, schema.categorical_fields)
    if group_field is None or group_field in schema.time_fields:
        return None

    head = q[:match.start()]
    agg = _detect_agg(head)
    metric = None
    if agg != "count":
        metric = resolve_phrase(head, schema, allowed=_metric_fields(schema), exclude=(group_field,))

    if agg == "count" or metric is None:
        return GroupBy(group_field=group_field, metric_field=None, agg="count")
    if agg is None:
        agg = "sum"
    return GroupBy(group_field=group_field, metric_field=metric, agg=agg)


def detect_group_rank(question: str, schema: DatasetSchema) -> Optional[GroupRank]:
    """'best genre', 'most common country', 'which director has the highest rating'."""
    q = normalize_question(question)
    if _explicit_n(q) is not None:
        return None

    group_field = None
    sup = tail = ""
    which = _WHICH_GROUP_RE.search(q)
    if which:
        target_words = _words(which.group("target"))
        if target_words and target_words[0] in TIME_UNIT_WORDS:
            return None
        group_field = _resolve_prefix(which.group("target"), schema, schema.categorical_fields)
        sup, tail = which.group("sup"), which.group("tail")
    if group_field is None:
        match = _GROUP_RANK_RE.search(q)
        if not match:
            return None
        group_field = _resolve_prefix(match.group("rest"), schema, schema.categorical_fields)
        sup, tail = match.group("sup"), q[match.end("rest"):]
    if group_field is None or group_field == schema.title_field or group_field in schema.time_fields:
        return None

    sup = " ".join(sup.replace("-", " ").split())
    order = "asc" if sup.split()[0] in ("worst", "lowest", "least") else "desc"
    named_metric = resolve_phrase(q, schema, allowed=schema.numeric_fields, exclude=(group_field,))

    count_words = ("popular", "common", "frequent")
    if any(w in sup for w in count_words) or any(w in tail for w in count_words):
        return GroupRank(group_field=group_field, by="count", order=order)
    if sup in ("most", "least") and named_metric is None:
        return GroupRank(group_field=group_field, by="count", order=order)

    metric = named_metric or default_rank_field(schema)
    if metric is None:
        return None
    return GroupRank(group_field=group_field, metric_field=metric, by="mean", order=order)


def detect_conditional_count(question: str, schema: DatasetSchema) -> Optional[ConditionalCount]:
    """'how many have a sequel', 'how many with rating over 8', 'how many survived'."""
    q = normalize_question(question)
    if not _COUNT_CUE_RE.search(q):
        return None

    # (a) have/has/with FIELD [OP NUMBER]
    have = _HAVE_RE.search(q)
    if have:
        rest = have.group("rest")
        comparison = _parse_comparison(rest, schema)
        if comparison:
            field, op, value = comparison
            return ConditionalCount(field=field, op=op, value=value)
        field = _resolve_prefix(rest, schema)
        if field is not None:
            if schema.is_boolean(field):
                return ConditionalCount(field=field, op="truthy")
            num = re.search(rf"^\s*\S+(?:\s+\S+)?\s+(?:of\s+|=\s+)?(?P<num>{_NUM})\b", rest)
            if num and schema.is_numeric(field) and parse_number(num.group("num")) is not None:
                return ConditionalCount(field=field, op="=", value=parse_number(num.group("num")))
            return ConditionalCount(field=field, op="nonempty")

    comparison = _parse_comparison(q, schema)
    if comparison:
        field, op, value = comparison
        return ConditionalCount(field=field, op=op, value=value)

    # (b) FIELD NUMBER
    for match in _FIELD_NUM_RE.finditer(q):
        field = _resolve_suffix(match.group("field"), schema, schema.numeric_fields)
        value = parse_number(match.group("num").rstrip(","))
        if field and value is not None:
            return ConditionalCount(field=field, op="=", value=value)
    year = _YEAR_CLAUSE_RE.search(q)
    if year and schema.time_fields and schema.is_numeric(schema.time_fields[0]):
        return ConditionalCount(field=schema.time_fields[0], op="=", value=float(year.group("year")))

    # (c) 0/1 fields used as a verb: "how many survived", "how many did not survive"
    for field in schema.numeric_fields:
        if not schema.is_boolean(field):
            continue
        name = field.lower()
        stem = re.sub(r"(?:ed|d|s)$", "", name) if len(name) > 5 else name
        match = re.search(rf"\b(?P<neg>{_NEGATION_RE})?{re.escape(stem)}\w*\b", q)
        if match:
            return ConditionalCount(field=field, op="falsy" if match.group("neg") else "truthy")

    return None


def detect_filtered_aggregate(question: str, schema: DatasetSchema) -> Optional[FilteredAggregate]:
    """'average rating in comedy', 'total revenue for Drama movies', 'how many in sci-fi'."""
    q = normalize_question(question)
    agg = _detect_agg(q)
    if agg is None:
        return None

    category = None
    clause_start = None
    for match in _SCOPE_CLAUSE_RE.finditer(q):
        category = _match_category_value(q[match.end():], schema)
        if category:
            clause_start = match.start()
            break
    if category is None:
        return None
    filter_field, filter_value = category

    if agg == "count":
        return FilteredAggregate(agg="count", field=None, filter_field=filter_field, filter_value=filter_value)

    metric = resolve_phrase(q[:clause_start], schema, allowed=_metric_fields(schema))
    if metric is None:
        metric = default_rank_field(schema)
    if metric is None:
        return None
    return FilteredAggregate(agg=agg, field=metric, filter_field=filter_field, filter_value=filter_value)


def detect_aggregate(question: str, schema: DatasetSchema) -> Optional[Aggregate]:
    """Whole-dataset counts, averages, sums, extremes and earliest/latest records."""
    q = normalize_question(question)
    if _is_trend_question(q):
        return None

    count_cue = _COUNT_CUE_RE.search(q) or re.search(r"^count\b", q)
    if count_cue:
        target = q[count_cue.end():]
        field = resolve_phrase(target, schema)
        if field is None:
            return Aggregate(agg="count")
        if _DISTINCT_RE.search(q) or schema.is_categorical(field) or not schema.is_numeric(field):
            return Aggregate(agg="count_distinct", field=field)
        return Aggregate(agg="count", field=field)

    if schema.time_fields:
        if _EARLIEST_RE.search(q):
            return Aggregate(agg="earliest", field=_time_field(q, schema))
        if _LATEST_RE.search(q):
            return Aggregate(agg="latest", field=_time_field(q, schema))

    metrics = _metric_fields(schema)

    if _WHICH_WHO_RE.search(q):
        if _EXTREMAL_MAX_RE.search(q) or _EXTREMAL_MIN_RE.search(q):
            field = resolve_phrase(q, schema, allowed=metrics) or default_rank_field(schema)
            if field is None:
                return None
            agg = "extremal_min" if _EXTREMAL_MIN_RE.search(q) else "extremal_max"
            return Aggregate(agg=agg, field=field)
        return None

    if re.search(r"\b(?:average|avg|mean)\b", q):
        field = resolve_phrase(q, schema, allowed=metrics)
        return Aggregate(agg="avg", field=field) if field else None

    if re.search(r"\b(?:total|sum|combined)\b", q):
        field = resolve_phrase(q, schema, allowed=metrics)
        return Aggregate(agg="sum", field=field) if field else None

    for agg, pattern in (("max", _AGG_PATTERNS[3][1]), ("min", _AGG_PATTERNS[4][1])):
        if pattern.search(q):
            field = resolve_phrase(q, schema, allowed=schema.numeric_fields) or default_rank_field(schema)
            return Aggregate(agg=agg, field=field) if field else None

    return None


def detect_filter(question: str, schema: DatasetSchema) -> Optional[Filter]:
    """'movies with rating over 8', 'films with more than 500 votes'."""
    q = normalize_question(question)
    comparison = _parse_comparison(q, schema)
    if comparison is None:
        return None
    field, op, value = comparison
    return Filter(field=field, op=op, value=value)


def detect_trend(question: str, schema: DatasetSchema) -> Optional[Trend]:
    """'rating over time', 'revenue by year', 'which year had the most movies'."""
    q = normalize_question(question)
    implicit = _IMPLICIT_TREND_RE.search(q)
    if not implicit and not _TREND_CUE_RE.search(q):
        return None

    time_field = _time_field(q, schema)
    if time_field is None:
        return None

    if re.search(r"\bdecades?\b", q):
        period = "decade"
    elif re.search(r"\b(?:month|months|monthly)\b", q):
        period = "month"
    else:
        period = "year"

    superlative = None
    if implicit:
        superlative = "min" if implicit.group("sup") in ("lowest", "least", "worst", "smallest", "fewest") else "max"

    candidates = [f for f in _metric_fields(schema) if f != time_field]
    metric = resolve_phrase(q, schema, allowed=candidates)

    if metric is None or _TREND_COUNT_RE.search(q):
        return Trend(time_field=time_field, period=period, agg="count", superlative=superlative)

    value_range = schema.ranges.get(metric)
    money_like = detect_column_type(
        metric, True, (value_range.min, value_range.max) if value_range else None
    ) == "numeric_amount"
    if _TREND_SUM_RE.search(q) or money_like or superlative:
        agg = "sum"
    else:
        agg = "avg"
    return Trend(time_field=time_field, metric_field=metric, period=period, agg=agg, superlative=superlative)


def detect_outlier(question: str, schema: DatasetSchema) -> Optional[Outlier]:
    """'any outliers in budget', 'which values stand out', 'unusual ratings'."""
    q = normalize_question(question)
    if not _OUTLIER_RE.search(q):
        return None
    field = resolve_phrase(q, schema, allowed=schema.numeric_fields) or default_rank_field(schema)
    if field is None:
        return None
    return Outlier(field=field)


def detect_lookup(question: str, schema: DatasetSchema) -> Optional[Lookup]:
    """'tell me about Jaws', 'find Alien', 'who is Ridley Scott'."""
    if schema.is_empty:
        return None
    q = normalize_question(question)
    match = _LOOKUP_RE.search(q)
    if not match:
        return None
    query = match.group("query").strip(" '\"")
    if len(query) < 2:
        return None
    return Lookup(query=query)


# Keywords that make a question worth running through the detector chain
_STRUCTURAL_RE = re.compile(
    r"\b(?:top|bottom|best|worst|highest|lowest|most|least|largest|smallest|biggest|"
    r"average|avg|mean|sum|total|count|how\s+many|number\s+of|max|maximum|min|minimum|"
    r"list|show|give|display|what\s+are|all|every|each|per|by|group(?:ed)?|breakdown|"
    r"broken\s+down|trends?|over\s+time|monthly|yearly|annual(?:ly)?|decades?|"
    r"outliers?|anomal\w*|unusual|extreme|stands?\s+out|over|under|above|below|"
    r"more\s+than|less\s+than|greater\s+than|fewer\s+than|at\s+least|at\s+most|"
    r"earliest|latest|oldest|newest|distinct|unique|which|who|columns?|fields?|schema|"
    r"dataset|describe|find|look\s+up|search|details|tell\s+me\s+about|popular|common|rated)\b"
    r"|[<>=]|\d"
)


def looks_structural(question: str) -> bool:
    """Whether the question carries any keyword a detector could act on."""
    return bool(_STRUCTURAL_RE.search(normalize_question(question)))
