"""Request criteria parser.

Turns request parameters such as::

    {"filter": "status:active;role_id:in:3,7", "filterJoin": "and",
     "orderBy": "name,created_at", "sortedBy": "asc,desc"}

into a ``QuerySpec``. Parsing is pure and all-or-nothing: the result is a
complete ``QuerySpec`` or a ``ParseError`` naming the offending parameter.
"""

import re
from collections.abc import Mapping

import typing as t

from ._base import CriteriaParams, ParseError, SortDirection
from .query_spec import (
    COMPARISON_OPERATORS,
    FieldComparison,
    FilterSpec,
    IncludeSpec,
    JoinType,
    Operator,
    QuerySpec,
    SearchField,
    SearchSpec,
    SortField,
    SortSpec,
)

OPERATOR_TOKENS: dict[str, Operator] = {
    "=": Operator.EQ,
    "eq": Operator.EQ,
    "!=": Operator.NEQ,
    "<>": Operator.NEQ,
    "ne": Operator.NEQ,
    "neq": Operator.NEQ,
    "like": Operator.LIKE,
    "ilike": Operator.LIKE,
    "in": Operator.IN,
    "notin": Operator.NOT_IN,
    "not_in": Operator.NOT_IN,
    "between": Operator.BETWEEN,
    "notbetween": Operator.NOT_BETWEEN,
    "not_between": Operator.NOT_BETWEEN,
    ">": Operator.GT,
    "gt": Operator.GT,
    ">=": Operator.GTE,
    "gte": Operator.GTE,
    "<": Operator.LT,
    "lt": Operator.LT,
    "<=": Operator.LTE,
    "lte": Operator.LTE,
    "null": Operator.IS_NULL,
    "isnull": Operator.IS_NULL,
    "is_null": Operator.IS_NULL,
    "notnull": Operator.IS_NOT_NULL,
    "not_null": Operator.IS_NOT_NULL,
    "isnotnull": Operator.IS_NOT_NULL,
    "is_not_null": Operator.IS_NOT_NULL,
    "dateequals": Operator.DATE_EQUALS,
    "date_equals": Operator.DATE_EQUALS,
    "datebetween": Operator.DATE_BETWEEN,
    "date_between": Operator.DATE_BETWEEN,
}

_FIELD = re.compile(r"^[A-Za-z_]\w*(\.[A-Za-z_]\w*)*$")


def lookup_operator(token: str) -> Operator | None:
    return OPERATOR_TOKENS.get(token.strip().lower())


def _field(param: str, name: str, token: str) -> str:
    name = name.strip()
    if not name:
        raise ParseError(param, "empty field name", token)
    if name.lower() in OPERATOR_TOKENS:
        raise ParseError(param, f"operator {name!r} where a field was expected", token)
    if not _FIELD.match(name):
        raise ParseError(param, f"invalid field name {name!r}", token)
    return name


def _split_values(param: str, operator: Operator, raw: str, token: str) -> tuple[str, ...]:
    value = raw.strip()
    if operator.is_nullary:
        if value:
            raise ParseError(param, f"{operator.value} takes no value", token)
        return ()
    if operator.is_multi_value:
        items = [item.strip() for item in value.split(",")]
        if not value or not all(items):
            raise ParseError(param, f"unterminated {operator.value} value list", token)
        if operator.is_range and len(items) != 2:
            raise ParseError(param, f"{operator.value} takes exactly two values", token)
        return tuple(items)
    if not value:
        raise ParseError(param, "missing value", token)
    return (value,)


def _condition(param: str, chunk: str, default: Operator, join: JoinType) -> FilterSpec:
    name, sep, rest = chunk.partition(":")
    if not sep:
        raise ParseError(param, "expected field:value", chunk)
    name = _field(param, name, chunk)
    head, sep, tail = rest.partition(":")
    if sep:
        operator = lookup_operator(head)
        if operator is None:
            raise ParseError(param, f"unknown operator {head.strip()!r}", chunk)
        return FilterSpec(name, operator, _split_values(param, operator, tail, chunk), join)
    operator = lookup_operator(rest)
    if operator is not None and operator.is_nullary:
        return FilterSpec(name, operator, (), join)
    return FilterSpec(
        name,
        default,
        _split_values(param, default, rest, chunk),
        join,
        explicit=False,
    )


def _chunks(raw: str) -> list[str]:
    return [chunk for chunk in raw.split(";") if chunk.strip()]


def _conditions(
    param: str,
    raw: str,
    default: Operator,
    join: JoinType,
) -> tuple[FilterSpec, ...]:
    return tuple(_condition(param, chunk, default, join) for chunk in _chunks(raw))


def _join(raw_params: Mapping[str, t.Any], param: str, default: JoinType) -> JoinType:
    value = _text(raw_params, param)
    if value is None:
        return default
    try:
        return JoinType(value.strip().lower())
    except ValueError:
        raise ParseError(param, "join must be 'and' or 'or'", value) from None


def _text(raw_params: Mapping[str, t.Any], param: str) -> str | None:
    value = raw_params.get(param)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ParseError(param, f"expected a string, got {type(value).__name__}")
    return value if value.strip() else None


def _comma_list(raw: str | None) -> list[str]:
    if raw is None:
        return []
    return [item.strip() for item in raw.split(",")]


def _search_fields(param: str, raw: str | None) -> tuple[SearchField, ...]:
    if raw is None:
        return ()
    fields: list[SearchField] = []
    for chunk in _chunks(raw):
        name, sep, op_token = chunk.partition(":")
        operator = None
        if sep:
            operator = lookup_operator(op_token)
            if operator is None or operator.is_multi_value or operator.is_nullary:
                raise ParseError(param, f"unusable search operator {op_token.strip()!r}", chunk)
        fields.append(SearchField(_field(param, name, chunk), operator))
    return tuple(fields)


def _search(
    raw_params: Mapping[str, t.Any],
    params: CriteriaParams,
    enhanced: bool,
) -> SearchSpec | None:
    raw = _text(raw_params, params.search)
    join = _join(raw_params, params.search_join, JoinType.OR)
    fields = _search_fields(params.search_fields, _text(raw_params, params.search_fields))
    if raw is None:
        return None
    if ":" not in raw:
        return SearchSpec(join=join, term=raw.strip(), fields=fields, enhanced=enhanced)
    return SearchSpec(
        filters=_conditions(params.search, raw, Operator.LIKE, join),
        join=join,
        fields=fields,
        enhanced=enhanced,
    )


def _section(
    raw_params: Mapping[str, t.Any],
    param: str,
    join_param: str,
) -> SearchSpec | None:
    raw = _text(raw_params, param)
    join = _join(raw_params, join_param, JoinType.AND)
    if raw is None:
        return None
    conditions = _conditions(param, raw, Operator.EQ, join)
    if not conditions:
        return None
    return SearchSpec(filters=conditions, join=join)


def _sort(raw_params: Mapping[str, t.Any], params: CriteriaParams) -> SortSpec | None:
    order_raw = _text(raw_params, params.order_by)
    directions: list[SortDirection] = []
    for item in _comma_list(_text(raw_params, params.sorted_by)):
        if not item:
            directions.append(SortDirection.ASC)
            continue
        try:
            directions.append(SortDirection(item.lower()))
        except ValueError:
            raise ParseError(
                params.sorted_by,
                "direction must be 'asc' or 'desc'",
                item,
            ) from None
    if order_raw is None:
        return None
    fields: list[SortField] = []
    for position, item in enumerate(_comma_list(order_raw)):
        name = _field(params.order_by, item, order_raw)
        direction = directions[position] if position < len(directions) else SortDirection.ASC
        fields.append(SortField(name, direction))
    return SortSpec(tuple(fields))


def _include(raw_params: Mapping[str, t.Any], params: CriteriaParams) -> IncludeSpec | None:
    relations: dict[str, None] = {}
    counts: dict[str, None] = {}
    for param in (params.include, params.include_alias):
        for path in _comma_list(_text(raw_params, param)):
            if not path:
                continue
            if path.endswith("_count") and len(path) > len("_count"):
                counts[_field(param, path.removesuffix("_count"), path)] = None
            else:
                relations[_field(param, path, path)] = None
    if not relations and not counts:
        return None
    return IncludeSpec(tuple(relations), tuple(counts))


def _group_by(raw_params: Mapping[str, t.Any], params: CriteriaParams) -> tuple[str, ...]:
    raw = _text(raw_params, params.group_by)
    return tuple(
        _field(params.group_by, item, raw or "") for item in _comma_list(raw) if item
    )


def _compare(
    raw_params: Mapping[str, t.Any],
    params: CriteriaParams,
) -> tuple[FieldComparison, ...]:
    raw = _text(raw_params, params.compare)
    if raw is None:
        return ()
    comparisons: list[FieldComparison] = []
    for chunk in _chunks(raw):
        parts = chunk.split(":")
        if len(parts) != 3:
            raise ParseError(params.compare, "expected fieldA:operator:fieldB", chunk)
        left, op_token, right = parts
        operator = lookup_operator(op_token)
        if operator not in COMPARISON_OPERATORS:
            raise ParseError(
                params.compare,
                f"unknown comparison operator {op_token.strip()!r}",
                chunk,
            )
        comparisons.append(
            FieldComparison(
                _field(params.compare, left, chunk),
                operator,
                _field(params.compare, right, chunk),
            ),
        )
    return tuple(comparisons)


def parse(
    raw_params: Mapping[str, t.Any],
    params: CriteriaParams | None = None,
    *,
    enhanced: bool = True,
) -> QuerySpec:
    """Parse request parameters into a ``QuerySpec``.

    Args:
        raw_params: Request parameters; unrelated keys are ignored
        params: Names of the criteria parameters
        enhanced: Read phrases, ``+required``, ``-excluded`` and ``word~N``
            tokens in bare search terms

    Raises:
        ParseError: If any criteria parameter is malformed
    """
    params = params or CriteriaParams()
    return QuerySpec(
        search=_search(raw_params, params, enhanced),
        filter=_section(raw_params, params.filter, params.filter_join),
        sort=_sort(raw_params, params),
        include=_include(raw_params, params),
        group_by=_group_by(raw_params, params),
        having=_section(raw_params, params.having, params.having_join),
        compare=_compare(raw_params, params),
    )


def serialize(spec: QuerySpec, params: CriteriaParams | None = None) -> dict[str, str]:
    """Canonical inverse of ``parse``."""
    return spec.to_params(params)
