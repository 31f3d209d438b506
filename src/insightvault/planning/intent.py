"""Intent variants for natural language questions.

An intent is the resolved, parameterized form of what a question asks for.
Every variant carries only real column names (already passed through the
field resolver) and the parameters its executor needs. Variants are frozen
pydantic models discriminated by ``kind`` so they round-trip through JSON
for the LLM selector and for logging.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class IntentKind(str, Enum):
    """Operation families recognized by the router."""

    TOP_N = "top_n"  # "top 10 movies by rating"
    GROUP_BY = "group_by"  # "total revenue per genre"
    GROUP_RANK = "group_rank"  # "best genre", "most common country"
    CONDITIONAL_COUNT = "conditional_count"  # "how many have a sequel"
    FILTERED_AGGREGATE = "filtered_aggregate"  # "average rating in comedy"
    AGGREGATE = "aggregate"  # "average rating", "how many movies"
    FILTER = "filter"  # "movies with rating over 8"
    TREND = "trend"  # "revenue over time", "which year had the most"
    LIST_ALL = "list_all"  # "list all genres"
    OUTLIER = "outlier"  # "any outliers in budget"
    LOOKUP = "lookup"  # "tell me about Jaws"
    DATASET_INFO = "dataset_info"  # "what columns are there"
    FOLLOW_UP = "follow_up"  # "why?", "what about the worst?"
    NONE = "none"  # Nothing matched; fall through to retrieval


AggType = Literal["sum", "avg", "count", "min", "max"]
CompareOp = Literal[">", "<", ">=", "<=", "="]
SortOrder = Literal["asc", "desc"]


class _IntentBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class TopN(_IntentBase):
    """Rank rows by a numeric field and keep the first N."""

    kind: Literal["top_n"] = "top_n"
    field: str
    n: int = Field(10, ge=1, le=100)
    order: SortOrder = "desc"
    filter_field: Optional[str] = None
    filter_value: Optional[str] = None


class GroupBy(_IntentBase):
    """Aggregate a metric (or count rows) per value of a categorical field."""

    kind: Literal["group_by"] = "group_by"
    group_field: str
    metric_field: Optional[str] = None
    agg: AggType = "count"


class GroupRank(_IntentBase):
    """Rank categorical groups by mean of a metric or by row count."""

    kind: Literal["group_rank"] = "group_rank"
    group_field: str
    metric_field: Optional[str] = None
    by: Literal["mean", "count"] = "mean"
    order: SortOrder = "desc"


class ConditionalCount(_IntentBase):
    """Count rows satisfying one condition on one field.

    ``op`` is ``nonempty`` (has a value), a numeric comparison, or
    ``truthy``/``falsy`` for 0/1 fields.
    """

    kind: Literal["conditional_count"] = "conditional_count"
    field: str
    op: Literal["nonempty", ">", "<", ">=", "<=", "=", "truthy", "falsy"] = "nonempty"
    value: Optional[float] = None


class FilteredAggregate(_IntentBase):
    """Aggregate a metric over rows whose categorical field equals a value."""

    kind: Literal["filtered_aggregate"] = "filtered_aggregate"
    agg: AggType
    field: Optional[str] = None
    filter_field: str
    filter_value: str


class Aggregate(_IntentBase):
    """Whole-dataset aggregation, or a single extremal/earliest/latest record."""

    kind: Literal["aggregate"] = "aggregate"
    agg: Literal[
        "count", "count_distinct", "avg", "sum", "min", "max",
        "earliest", "latest", "extremal_max", "extremal_min",
    ]
    field: Optional[str] = None


class Filter(_IntentBase):
    """List the rows where a numeric field compares against a threshold."""

    kind: Literal["filter"] = "filter"
    field: str
    op: CompareOp
    value: float


class Trend(_IntentBase):
    """Bucket rows by a time field and aggregate per bucket."""

    kind: Literal["trend"] = "trend"
    time_field: str
    metric_field: Optional[str] = None
    period: Literal["year", "month", "decade"] = "year"
    agg: Literal["sum", "avg", "count"] = "avg"
    superlative: Optional[Literal["max", "min"]] = None


class ListAll(_IntentBase):
    """Enumerate the distinct values of a field."""

    kind: Literal["list_all"] = "list_all"
    field: str


class Outlier(_IntentBase):
    """Flag values outside the 1.5 x IQR fences of a numeric field."""

    kind: Literal["outlier"] = "outlier"
    field: str


class Lookup(_IntentBase):
    """Find records whose text mentions a search term."""

    kind: Literal["lookup"] = "lookup"
    query: str = Field(..., min_length=1)


class DatasetInfo(_IntentBase):
    """Describe the dataset itself (rows, columns, types, ranges)."""

    kind: Literal["dataset_info"] = "dataset_info"


class FollowUp(_IntentBase):
    """Answer from conversation history instead of the dataset."""

    kind: Literal["follow_up"] = "follow_up"
    followup_type: str = "short_vague"


class NoIntent(_IntentBase):
    """No detector claimed the question."""

    kind: Literal["none"] = "none"
    reason: str = "no_detector_matched"


Intent = Annotated[
    Union[
        TopN, GroupBy, GroupRank, ConditionalCount, FilteredAggregate, Aggregate,
        Filter, Trend, ListAll, Outlier, Lookup, DatasetInfo, FollowUp, NoIntent,
    ],
    Field(discriminator="kind"),
]

# Structural intents are the ones executed against rows
STRUCTURAL_KINDS = frozenset(
    k.value for k in IntentKind if k not in (IntentKind.FOLLOW_UP, IntentKind.NONE)
)

intent_adapter: TypeAdapter = TypeAdapter(Intent)


def is_structural(intent) -> bool:
    return intent.kind in STRUCTURAL_KINDS
