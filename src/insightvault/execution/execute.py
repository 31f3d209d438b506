"""Execute resolved intents against in-memory rows.

Executors never look at the question text: everything they need is on the
intent. A row whose value fails numeric parsing is left out of that
computation and never aborts the batch. Answers lead with the finding.
"""

import math
from typing import Callable, Mapping, Optional, Sequence

import structlog

from insightvault.contracts import ChartData, QueryResult
from insightvault.execution.type_detector import extract_month, extract_year, parse_number
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
from insightvault.planning.schema import DatasetSchema

logger = structlog.get_logger(__name__)

Row = Mapping[str, str]

CHART_LABEL_MAX = 14
FILTER_LIST_LIMIT = 15
OUTLIER_LIST_LIMIT = 15
LOOKUP_LIMIT = 5
PIE_MAX_GROUPS = 8
CHART_MAX_GROUPS = 10
OUTLIER_MIN_VALUES = 4
TREND_DEAD_BAND = 0.05

OP_LABELS = {"<": "under", ">": "over", "=": "equal to", "<=": "at most", ">=": "at least"}


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_number(value: float) -> str:
    """Plain number: integers without a decimal point, others as-is."""
    if float(value).is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def format_grouped(value: float) -> str:
    """Locale-style grouping: 1234567.891 -> '1,234,567.891'."""
    if float(value).is_integer():
        return f"{int(value):,}"
    text = f"{value:,.3f}".rstrip("0").rstrip(".")
    return text


def format_aggregate(value: float) -> str:
    """Integers grouped, everything else with two decimals."""
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:.2f}"


def truncate_label(label: str, limit: int = CHART_LABEL_MAX) -> str:
    """Shorten a chart label; textual answers are never truncated."""
    return label if len(label) <= limit else label[:limit] + "…"


def _capitalize(key: str) -> str:
    return key[:1].upper() + key[1:]


def format_record(row: Row) -> str:
    """'Title: Jaws, Year: 1975, Rating: 8.1'."""
    return ", ".join(f"{_capitalize(k)}: {v}" for k, v in row.items())


def _title_of(row: Row, schema: DatasetSchema) -> Optional[str]:
    for key in (schema.title_field, "title", "name"):
        if key and row.get(key):
            return row[key]
    return None


def _numeric(row: Row, field: str) -> Optional[float]:
    return parse_number(row.get(field))


def _matches(row: Row, field: str, value: str) -> bool:
    return str(row.get(field, "")).strip().lower() == value.strip().lower()


def _compare(num: float, op: str, value: float) -> bool:
    if op == ">":
        return num > value
    if op == "<":
        return num < value
    if op == ">=":
        return num >= value
    if op == "<=":
        return num <= value
    return num == value


def _more(count: int) -> str:
    return f"\n…and {count} more." if count > 0 else ""


def _records(count: int) -> str:
    return f"{count} record" if count == 1 else f"{count} records"


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def execute_top_n(intent: TopN, rows: Sequence[Row], schema: DatasetSchema) -> QueryResult:
    field = intent.field
    candidates = [r for r in rows if _numeric(r, field) is not None]

    filter_note = ""
    if intent.filter_field and intent.filter_value:
        candidates = [r for r in candidates if _matches(r, intent.filter_field, intent.filter_value)]
        filter_note = f" ({intent.filter_field}: {intent.filter_value})"
        if not candidates:
            return QueryResult(
                answer=f"No records found where {intent.filter_field} is {intent.filter_value} "
                f"with a numeric {field} value."
            )

    if not candidates:
        return QueryResult(answer=f'No records with a numeric "{field}" field found.')

    # sorted() is stable with reverse=True, so ties keep row order
    ranked = sorted(candidates, key=lambda r: _numeric(r, field), reverse=intent.order == "desc")
    top = ranked[: intent.n]

    lines = []
    for i, row in enumerate(top, start=1):
        title = _title_of(row, schema)
        label = f"{i}. {title} ({field}: {row[field]})" if title else f"{i}. {field}: {row[field]}"
        details = " | ".join(
            f"{_capitalize(k)}: {v}"
            for k, v in row.items()
            if k not in (schema.title_field, "title", "name", field) and str(v).strip()
        )
        lines.append(f"{label} | {details}" if details else label)

    heading = "Top" if intent.order == "desc" else "Bottom"
    chart = ChartData(
        type="bar",
        title=f"{heading} {intent.n}{filter_note} by {field}",
        x_key="label",
        y_key=field,
        data=[
            {"label": truncate_label(_title_of(r, schema) or "Record"), field: _numeric(r, field)}
            for r in top
        ],
    )
    return QueryResult(
        answer="\n".join(lines),
        context=(
            f"topN:{intent.n} field:{field} order:{intent.order} "
            f"filter:{intent.filter_field}={intent.filter_value} total:{len(candidates)}"
        ),
        chart_data=chart,
    )


def _aggregate_values(agg: str, values: list[float]) -> float:
    if agg == "sum":
        return math.fsum(values)
    if agg == "avg":
        return math.fsum(values) / len(values)
    if agg == "max":
        return max(values)
    if agg == "min":
        return min(values)
    return float(len(values))


def execute_group_by(intent: GroupBy, rows: Sequence[Row], schema: DatasetSchema) -> QueryResult:
    group_field = intent.group_field
    metric = intent.metric_field
    agg = intent.agg if metric else "count"

    groups: dict[str, list[float]] = {}
    for row in rows:
        group = str(row.get(group_field, "")).strip()
        if not group:
            continue
        if agg == "count":
            groups.setdefault(group, []).append(1.0)
            continue
        num = _numeric(row, metric)
        if num is not None:
            groups.setdefault(group, []).append(num)

    if not groups:
        return QueryResult(answer=f'No data found for group field "{group_field}".')

    results = [(group, _aggregate_values(agg, vals)) for group, vals in groups.items()]
    results.sort(key=lambda item: item[1], reverse=True)

    lines = [f"{i}. {group}: {format_aggregate(score)}" for i, (group, score) in enumerate(results, start=1)]
    chart = ChartData(
        type="pie" if len(results) <= PIE_MAX_GROUPS else "bar",
        title=f"{agg} {metric} by {group_field}" if metric else f"count by {group_field}",
        x_key="group",
        y_key="value",
        data=[
            {"group": truncate_label(group), "value": round(score, 2)}
            for group, score in results[:CHART_MAX_GROUPS]
        ],
    )
    return QueryResult(
        answer="\n".join(lines),
        context=f"groupBy:{agg} metric:{metric or ''} group:{group_field} groups:{len(results)}",
        chart_data=chart,
    )


def execute_group_rank(intent: GroupRank, rows: Sequence[Row], schema: DatasetSchema) -> QueryResult:
    group_field = intent.group_field
    metric = intent.metric_field

    groups: dict[str, list[float]] = {}
    for row in rows:
        group = str(row.get(group_field, "")).strip()
        if not group:
            continue
        if intent.by == "count":
            groups.setdefault(group, []).append(1.0)
            continue
        num = _numeric(row, metric)
        if num is not None:
            groups.setdefault(group, []).append(num)

    if not groups:
        return QueryResult(answer=f'No data found for group field "{group_field}".')

    if intent.by == "count":
        scored = [(g, float(len(v)), len(v)) for g, v in groups.items()]
    else:
        scored = [(g, math.fsum(v) / len(v), len(v)) for g, v in groups.items()]
    scored.sort(key=lambda item: item[1], reverse=intent.order == "desc")

    lines = []
    for i, (group, score, count) in enumerate(scored, start=1):
        if intent.by == "count":
            lines.append(f"{i}. {group}: {_records(count)}")
        else:
            lines.append(f"{i}. {group}: {score:.2f} average {metric} ({_records(count)})")

    y_key = "count" if intent.by == "count" else metric
    chart = ChartData(
        type="bar",
        title=(
            f"{group_field} by record count" if intent.by == "count"
            else f"{group_field} by average {metric}"
        ),
        x_key="group",
        y_key=y_key,
        data=[
            {"group": truncate_label(group), y_key: round(score, 2)}
            for group, score, _ in scored[:CHART_MAX_GROUPS]
        ],
    )
    return QueryResult(
        answer="\n".join(lines),
        context=f"groupRank:{intent.by} metric:{metric or ''} group:{group_field} order:{intent.order}",
        chart_data=chart,
    )


def execute_conditional_count(
    intent: ConditionalCount, rows: Sequence[Row], schema: DatasetSchema
) -> QueryResult:
    field = intent.field

    def qualifies(row: Row) -> bool:
        raw = str(row.get(field, "")).strip()
        if intent.op == "nonempty":
            return bool(raw)
        num = parse_number(raw)
        if num is None:
            return False
        if intent.op == "truthy":
            return num == 1
        if intent.op == "falsy":
            return num == 0
        return _compare(num, intent.op, intent.value)

    count = sum(1 for row in rows if qualifies(row))
    if intent.op == "nonempty":
        condition = f"a {field} value"
    elif intent.op in ("truthy", "falsy"):
        condition = f"{field} = {1 if intent.op == 'truthy' else 0}"
    else:
        condition = f"{field} {OP_LABELS[intent.op]} {format_number(intent.value)}"

    return QueryResult(
        answer=f"{count} of {len(rows)} records have {condition}.",
        context=f"conditionalCount field:{field} op:{intent.op} value:{intent.value} count:{count}",
    )


def _stat_answer(agg: str, values: list[float]) -> str:
    if agg == "avg":
        return f"{_aggregate_values('avg', values):.2f}"
    if agg == "sum":
        return format_grouped(_aggregate_values("sum", values))
    return format_number(_aggregate_values(agg, values))


def execute_filtered_aggregate(
    intent: FilteredAggregate, rows: Sequence[Row], schema: DatasetSchema
) -> QueryResult:
    scoped = [r for r in rows if _matches(r, intent.filter_field, intent.filter_value)]
    scope = f"{intent.filter_field}={intent.filter_value}"
    if not scoped:
        return QueryResult(answer=f"No records found where {intent.filter_field} is {intent.filter_value}.")

    if intent.agg == "count":
        return QueryResult(answer=str(len(scoped)), context=f"stat:count filter:{scope} total:{len(scoped)}")

    values = [n for n in (_numeric(r, intent.field) for r in scoped) if n is not None]
    if not values:
        return QueryResult(
            answer=f'No numeric values found for "{intent.field}" where {intent.filter_field} is {intent.filter_value}.'
        )
    return QueryResult(
        answer=_stat_answer(intent.agg, values),
        context=f"stat:{intent.agg} field:{intent.field} n:{len(values)} filter:{scope}",
    )


def _time_key(row: Row, field: str) -> Optional[tuple]:
    raw = str(row.get(field, "")).strip()
    year = extract_year(raw)
    if year is None:
        return None
    return (year, raw)


def execute_aggregate(intent: Aggregate, rows: Sequence[Row], schema: DatasetSchema) -> QueryResult:
    agg, field = intent.agg, intent.field

    if agg == "count":
        if field is None:
            return QueryResult(answer=str(len(rows)), context=f"stat:count total:{len(rows)}")
        count = sum(1 for r in rows if str(r.get(field, "")).strip())
        return QueryResult(answer=str(count), context=f"stat:count field:{field} total:{len(rows)}")

    if agg == "count_distinct":
        seen: dict[str, None] = {}
        for row in rows:
            value = str(row.get(field, "")).strip()
            if value:
                seen.setdefault(value, None)
        values = list(seen)
        return QueryResult(
            answer=str(len(values)),
            context=(
                f"stat:countDistinct field:{field} n:{len(values)} total:{len(rows)} "
                f"values:{','.join(values[:30])}"
            ),
        )

    if agg in ("earliest", "latest"):
        keyed = [(k, r) for k, r in ((_time_key(r, field), r) for r in rows) if k is not None]
        if not keyed:
            return QueryResult(answer=f'No date values found for "{field}".')
        pick = min if agg == "earliest" else max
        best_key = pick(k for k, _ in keyed)
        record = next(r for k, r in keyed if k == best_key)
        return QueryResult(answer=format_record(record), context=f"record:{agg} field:{field}")

    if agg in ("extremal_max", "extremal_min"):
        scored = [(n, r) for n, r in ((_numeric(r, field), r) for r in rows) if n is not None]
        if not scored:
            return QueryResult(answer=f'No numeric values found for "{field}".')
        pick = max if agg == "extremal_max" else min
        best = pick(n for n, _ in scored)
        record = next(r for n, r in scored if n == best)
        return QueryResult(
            answer=format_record(record),
            context=f"record:{agg} field:{field} value:{format_number(best)}",
        )

    values = [n for n in (_numeric(r, field) for r in rows) if n is not None]
    if not values:
        return QueryResult(answer=f'No numeric values found for "{field}".')
    return QueryResult(
        answer=_stat_answer(agg, values),
        context=f"stat:{agg} field:{field} n:{len(values)}",
    )


def execute_filter(intent: Filter, rows: Sequence[Row], schema: DatasetSchema) -> QueryResult:
    matched = []
    for row in rows:
        num = _numeric(row, intent.field)
        if num is not None and _compare(num, intent.op, intent.value):
            matched.append(row)
    condition = f"{intent.field} is {OP_LABELS[intent.op]} {format_number(intent.value)}"
    if not matched:
        return QueryResult(answer=f"No records found where {condition}.")

    lines = [f"{i}. {format_record(r)}" for i, r in enumerate(matched[:FILTER_LIST_LIMIT], start=1)]
    return QueryResult(
        answer=(
            f"Found {len(matched)} record(s) where {condition}:\n\n"
            + "\n".join(lines)
            + _more(len(matched) - FILTER_LIST_LIMIT)
        ),
        context=f"filter field:{intent.field} op:{intent.op} value:{intent.value} matched:{len(matched)}",
    )


def bucket_rows(
    rows: Sequence[Row], time_field: str, period: str, metric_field: Optional[str] = None
) -> dict[str, list[float]]:
    """
    Group rows into time buckets.

    Args:
        rows: Rows to bucket
        time_field: Year or date column
        period: "year", "month" (YYYY-MM) or "decade" ("1970s")
        metric_field: When given, bucket the parsed metric; rows without a
            numeric metric are skipped. Otherwise every row contributes 1.

    Returns:
        Mapping of bucket label to values, sorted by label
    """
    buckets: dict[str, list[float]] = {}
    for row in rows:
        raw = str(row.get(time_field, "")).strip()
        if period == "month":
            label = extract_month(raw)
        else:
            year = extract_year(raw)
            if year is None:
                label = None
            elif period == "decade":
                label = f"{year // 10 * 10}s"
            else:
                label = str(year)
        if label is None:
            continue

        if metric_field is None:
            buckets.setdefault(label, []).append(1.0)
            continue
        num = _numeric(row, metric_field)
        if num is not None:
            buckets.setdefault(label, []).append(num)

    return dict(sorted(buckets.items()))


def execute_trend(intent: Trend, rows: Sequence[Row], schema: DatasetSchema) -> QueryResult:
    agg = intent.agg if intent.metric_field else "count"
    metric_field = intent.metric_field if agg != "count" else None
    buckets = bucket_rows(rows, intent.time_field, intent.period, metric_field)
    if not buckets:
        return QueryResult(answer="No trend data found for the specified fields.")

    points = []
    for period, vals in buckets.items():
        value = float(len(vals)) if agg == "count" else round(_aggregate_values(agg, vals), 2)
        points.append({"period": period, "value": value, "count": len(vals)})

    pick = min if intent.superlative == "min" else max
    best = pick(points, key=lambda p: p["value"])
    first, last = points[0], points[-1]
    delta = last["value"] - first["value"]
    if delta > TREND_DEAD_BAND:
        direction = "increased"
    elif delta < -TREND_DEAD_BAND:
        direction = "decreased"
    else:
        direction = "stayed relatively stable"

    metric = intent.metric_field or "records"
    if agg == "count":
        measure = "number of records"
    elif agg == "sum":
        measure = f"total {metric}"
    else:
        measure = f"average {metric}"
    extreme = "lowest" if intent.superlative == "min" else "highest"

    if intent.superlative or agg == "sum":
        summary = (
            f"{best['period']} had the {extreme} {measure} at "
            f"{format_grouped(best['value'])} ({_records(best['count'])})."
        )
    elif agg == "count":
        summary = (
            f"Record count {direction} from {format_number(first['value'])} ({first['period']}) "
            f"to {format_number(last['value'])} ({last['period']})."
        )
    else:
        summary = (
            f"{metric} {direction} from {format_number(first['value'])} ({first['period']}) "
            f"to {format_number(last['value'])} ({last['period']})."
        )

    agg_label = {"sum": "total", "avg": "avg", "count": "records"}[agg]
    lines = []
    for p in points:
        marker = f" ← {extreme}" if p is best else ""
        if agg == "count":
            lines.append(f"{p['period']}: {_records(p['count'])}{marker}")
        else:
            lines.append(f"{p['period']}: {format_grouped(p['value'])} {agg_label} ({_records(p['count'])}){marker}")

    y_key = metric_field or "count"
    title_prefix = {"sum": "Total", "avg": "Avg", "count": "Count of"}[agg]
    chart = ChartData(
        type="line",
        title=f"{title_prefix} {metric} by {intent.period}",
        x_key="period",
        y_key=y_key,
        data=[{"period": p["period"], y_key: p["value"]} for p in points],
    )
    return QueryResult(
        answer="\n".join([summary, "", *lines]),
        context=(
            f"trend:{intent.period} agg:{agg} metric:{intent.metric_field or ''} "
            f"time:{intent.time_field} points:{len(points)}"
        ),
        chart_data=chart,
    )


def execute_list_all(intent: ListAll, rows: Sequence[Row], schema: DatasetSchema) -> QueryResult:
    values = sorted({str(r.get(intent.field, "")).strip() for r in rows} - {""})
    if not values:
        return QueryResult(answer=f'No values found for "{intent.field}".')
    lines = "\n".join(f"{i}. {v}" for i, v in enumerate(values, start=1))
    return QueryResult(
        answer=f"{len(values)} unique {intent.field} values:\n\n{lines}",
        context=f"listAll field:{intent.field} count:{len(values)}",
    )


def iqr_fences(values: Sequence[float]) -> tuple[float, float, float, float]:
    """
    Quartiles and 1.5 x IQR fences without interpolation.

    Q1 and Q3 are taken at sorted[floor(n * 0.25)] and sorted[floor(n * 0.75)].

    Returns:
        (q1, q3, lower_fence, upper_fence)
    """
    ordered = sorted(values)
    n = len(ordered)
    q1 = ordered[math.floor(n * 0.25)]
    q3 = ordered[math.floor(n * 0.75)]
    iqr = q3 - q1
    return q1, q3, q1 - 1.5 * iqr, q3 + 1.5 * iqr


def execute_outlier(intent: Outlier, rows: Sequence[Row], schema: DatasetSchema) -> QueryResult:
    field = intent.field
    scored = [(n, r) for n, r in ((_numeric(r, field), r) for r in rows) if n is not None]

    if len(scored) < OUTLIER_MIN_VALUES:
        return QueryResult(
            answer=(
                f'Not enough data to detect outliers in "{field}" '
                f"(need at least {OUTLIER_MIN_VALUES} numeric values, found {len(scored)})."
            ),
            context=f"outliers:insufficient field:{field} n:{len(scored)}",
        )

    q1, q3, lo, hi = iqr_fences([n for n, _ in scored])
    outliers = [(n, r) for n, r in scored if n < lo or n > hi]
    context = f"outliers:{len(outliers)} field:{field} q1:{format_number(q1)} q3:{format_number(q3)} iqr:{q3 - q1:.2f}"

    if not outliers:
        return QueryResult(
            answer=(
                f'No outliers in "{field}". All {len(scored)} records fall within '
                f"{lo:.2f} to {hi:.2f} (IQR method)."
            ),
            context=context,
        )

    shown = outliers[:OUTLIER_LIST_LIMIT]
    lines = []
    for i, (num, row) in enumerate(shown, start=1):
        title = _title_of(row, schema)
        lines.append(f"{i}. {title} ({field}: {format_number(num)})" if title else f"{i}. {field}: {format_number(num)}")

    chart = ChartData(
        type="bar",
        title=f"Outliers by {field}",
        x_key="label",
        y_key=field,
        data=[
            {"label": truncate_label(_title_of(r, schema) or f"val {format_number(n)}"), field: n}
            for n, r in shown
        ],
    )
    header = (
        f'Found {len(outliers)} outlier(s) in "{field}". Normal range: {lo:.2f} to {hi:.2f} '
        f"(IQR method, {len(scored)} records)."
    )
    return QueryResult(
        answer="\n".join([header, "", *lines]) + _more(len(outliers) - OUTLIER_LIST_LIMIT),
        context=context,
        chart_data=chart,
    )


def execute_lookup(intent: Lookup, rows: Sequence[Row], schema: DatasetSchema) -> QueryResult:
    query = intent.query.lower().strip()
    if schema.title_field:
        search_fields = [schema.title_field, *[f for f in schema.categorical_fields if f != schema.title_field]]
    else:
        search_fields = schema.all_fields

    matched = [
        r for r in rows
        if any(query in str(r.get(f, "")).lower() for f in search_fields)
    ]
    if not matched:
        return QueryResult(answer=f'No records matching "{intent.query}" found.')

    lines = [f"{i}. {format_record(r)}" for i, r in enumerate(matched[:LOOKUP_LIMIT], start=1)]
    return QueryResult(
        answer="\n\n".join(lines) + _more(len(matched) - LOOKUP_LIMIT),
        context=f"lookup query:{intent.query} matched:{len(matched)}",
    )


def execute_dataset_info(intent: DatasetInfo, rows: Sequence[Row], schema: DatasetSchema) -> QueryResult:
    parts = [
        f"{len(rows)} records, {len(schema.all_fields)} columns.",
        "",
        f"Columns: {', '.join(schema.all_fields)}.",
    ]
    if schema.numeric_fields:
        parts.append(f"\nNumeric: {', '.join(schema.numeric_fields)}.")
    if schema.categorical_fields:
        parts.append(f"Categorical: {', '.join(schema.categorical_fields)}.")
    range_str = ", ".join(
        f"{f}: {format_number(r.min)} to {format_number(r.max)}" for f, r in schema.ranges.items()
    )
    if range_str:
        parts.append(f"\nRanges: {range_str}.")
    return QueryResult(
        answer="\n".join(parts),
        context=f"schema:{','.join(schema.all_fields)} rows:{len(rows)}",
    )


_EXECUTORS: dict[str, Callable] = {
    "top_n": execute_top_n,
    "group_by": execute_group_by,
    "group_rank": execute_group_rank,
    "conditional_count": execute_conditional_count,
    "filtered_aggregate": execute_filtered_aggregate,
    "aggregate": execute_aggregate,
    "filter": execute_filter,
    "trend": execute_trend,
    "list_all": execute_list_all,
    "outlier": execute_outlier,
    "lookup": execute_lookup,
    "dataset_info": execute_dataset_info,
}


def execute_intent(intent, rows: Sequence[Row], schema: DatasetSchema) -> QueryResult:
    """
    Run the executor registered for a structural intent.

    Args:
        intent: A structural intent (not FollowUp or NoIntent)
        rows: The full row set of the dataset
        schema: Schema built from the same rows

    Returns:
        QueryResult with the formatted answer and optional chart

    Raises:
        ValueError: If the intent kind has no executor
    """
    executor = _EXECUTORS.get(intent.kind)
    if executor is None:
        raise ValueError(f"No executor for intent kind: {intent.kind}")
    result = executor(intent, rows, schema)
    logger.debug("operation_executed", kind=intent.kind, has_chart=result.chart_data is not None)
    return result
