"""Query Specification Pattern Implementation.

Provides composable predicate trees for repository queries:
- Field predicates for every request criteria operator
- Column-to-column comparisons
- Logical operators (AND, OR, NOT)
- Parametrized SQL rendering and in-memory evaluation
"""

import re
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence

import typing as t
from dataclasses import dataclass, field
from datetime import date, datetime

from .query_spec import Operator


@dataclass
class SpecificationContext:
    """Context for rendering specifications to SQL."""

    field_mappings: dict[str, str] = field(default_factory=dict)
    table_alias: str | None = None
    _counter: int = field(default=0, repr=False)

    def get_field_name(self, logical_name: str) -> str:
        """Get actual field name from logical name."""
        return self.field_mappings.get(logical_name, logical_name)

    def full_field_name(self, logical_name: str) -> str:
        table_prefix = f"{self.table_alias}." if self.table_alias else ""
        return f"{table_prefix}{self.get_field_name(logical_name)}"

    def next_param(self) -> str:
        """Sequential bind names keep rendered SQL stable between runs."""
        name = f"p{self._counter}"
        self._counter += 1
        return name


def read_field(record: t.Any, name: str) -> t.Any:
    """Resolve a possibly dotted field on a mapping or object."""
    current = record
    for part in name.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
    return current


def coerce_like(sample: t.Any, value: t.Any) -> t.Any:
    """Convert a request value to the type of the stored value."""
    if not isinstance(value, str) or sample is None or isinstance(sample, str):
        return value
    try:
        if isinstance(sample, bool):
            return value.strip().lower() in ("1", "true", "yes", "on")
        if isinstance(sample, int):
            return int(value)
        if isinstance(sample, float):
            return float(value)
        if isinstance(sample, datetime):
            return datetime.fromisoformat(value)
        if isinstance(sample, date):
            return date.fromisoformat(value)
    except ValueError:
        return value
    return value


def _as_date(value: t.Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value).date()
        except ValueError:
            return None
    return None


def like_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a SQL LIKE pattern (``%`` and ``_`` wildcards), case-insensitive."""
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile(f"^{''.join(parts)}$", re.IGNORECASE | re.DOTALL)


class Specification(ABC):
    """Abstract base class for query specifications.

    Specifications represent query criteria that can be combined
    using logical operators to build complex queries.
    """

    @abstractmethod
    def to_sql_where(self, context: SpecificationContext) -> tuple[str, dict[str, t.Any]]:
        """Convert specification to SQL WHERE clause.

        Args:
            context: Specification context with field mappings

        Returns:
            Tuple of (where_clause, parameters)
        """

    @abstractmethod
    def is_satisfied_by(self, record: t.Any) -> bool:
        """Evaluate the specification against one record."""

    @abstractmethod
    def to_dict(self) -> dict[str, t.Any]:
        """Convert specification to dictionary representation."""

    def __and__(self, other: "Specification") -> "AndSpecification":
        return AndSpecification([self, other])

    def __or__(self, other: "Specification") -> "OrSpecification":
        return OrSpecification([self, other])

    def __invert__(self) -> "NotSpecification":
        return NotSpecification(self)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Specification):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __hash__(self) -> int:
        return hash(repr(self.to_dict()))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.to_dict()!r})"


class FieldSpecification(Specification):
    """Specification comparing a field against request values."""

    def __init__(self, field: str, operator: Operator, values: Sequence[t.Any] = ()) -> None:
        self.field = field
        self.operator = operator
        self.values = tuple(values)

    def to_sql_where(self, context: SpecificationContext) -> tuple[str, dict[str, t.Any]]:  # noqa: C901
        field_name = context.full_field_name(self.field)

        match self.operator:
            case Operator.EQ:
                return self._sql_binary(field_name, "=", context)
            case Operator.NEQ:
                return self._sql_binary(field_name, "!=", context)
            case Operator.GT:
                return self._sql_binary(field_name, ">", context)
            case Operator.GTE:
                return self._sql_binary(field_name, ">=", context)
            case Operator.LT:
                return self._sql_binary(field_name, "<", context)
            case Operator.LTE:
                return self._sql_binary(field_name, "<=", context)
            case Operator.LIKE:
                return self._sql_binary(field_name, "LIKE", context)
            case Operator.IN:
                return self._sql_in(field_name, "IN", context)
            case Operator.NOT_IN:
                return self._sql_in(field_name, "NOT IN", context)
            case Operator.BETWEEN:
                return self._sql_between(field_name, "BETWEEN", context)
            case Operator.NOT_BETWEEN:
                return self._sql_between(field_name, "NOT BETWEEN", context)
            case Operator.IS_NULL:
                return f"{field_name} IS NULL", {}
            case Operator.IS_NOT_NULL:
                return f"{field_name} IS NOT NULL", {}
            case Operator.DATE_EQUALS:
                return self._sql_binary(f"DATE({field_name})", "=", context)
            case Operator.DATE_BETWEEN:
                return self._sql_between(f"DATE({field_name})", "BETWEEN", context)

        msg = f"Unsupported operator: {self.operator}"
        raise ValueError(msg)

    def _sql_binary(
        self,
        field_name: str,
        sql_operator: str,
        context: SpecificationContext,
    ) -> tuple[str, dict[str, t.Any]]:
        param_key = context.next_param()
        return f"{field_name} {sql_operator} :{param_key}", {param_key: self.values[0]}

    def _sql_in(
        self,
        field_name: str,
        sql_operator: str,
        context: SpecificationContext,
    ) -> tuple[str, dict[str, t.Any]]:
        if not self.values:
            # an empty IN matches nothing, an empty NOT IN everything
            return ("1 = 0" if sql_operator == "IN" else "1 = 1"), {}
        params = {context.next_param(): v for v in self.values}
        placeholders = ",".join(f":{key}" for key in params)
        return f"{field_name} {sql_operator} ({placeholders})", params

    def _sql_between(
        self,
        field_name: str,
        sql_operator: str,
        context: SpecificationContext,
    ) -> tuple[str, dict[str, t.Any]]:
        if len(self.values) != 2:
            msg = "BETWEEN operator requires exactly 2 values"
            raise ValueError(msg)
        start, end = context.next_param(), context.next_param()
        return (
            f"{field_name} {sql_operator} :{start} AND :{end}",
            {start: self.values[0], end: self.values[1]},
        )

    def is_satisfied_by(self, record: t.Any) -> bool:  # noqa: C901
        actual = read_field(record, self.field)
        values = [coerce_like(actual, v) for v in self.values]

        match self.operator:
            case Operator.IS_NULL:
                return actual is None
            case Operator.IS_NOT_NULL:
                return actual is not None
            case Operator.IN:
                return actual in values
            case Operator.NOT_IN:
                return actual not in values
            case Operator.DATE_EQUALS:
                return _as_date(actual) is not None and _as_date(actual) == _as_date(values[0])
            case Operator.DATE_BETWEEN:
                day, low, high = _as_date(actual), _as_date(values[0]), _as_date(values[1])
                return None not in (day, low, high) and low <= day <= high  # type: ignore[operator]

        if actual is None:
            return False

        try:
            match self.operator:
                case Operator.EQ:
                    return actual == values[0]
                case Operator.NEQ:
                    return actual != values[0]
                case Operator.GT:
                    return actual > values[0]
                case Operator.GTE:
                    return actual >= values[0]
                case Operator.LT:
                    return actual < values[0]
                case Operator.LTE:
                    return actual <= values[0]
                case Operator.LIKE:
                    return like_pattern(str(values[0])).match(str(actual)) is not None
                case Operator.BETWEEN:
                    return values[0] <= actual <= values[1]
                case Operator.NOT_BETWEEN:
                    return not values[0] <= actual <= values[1]
        except TypeError:
            return False

        msg = f"Unsupported operator: {self.operator}"
        raise ValueError(msg)

    def to_dict(self) -> dict[str, t.Any]:
        return {
            "type": "field",
            "field": self.field,
            "operator": self.operator.value,
            "values": list(self.values),
        }


class ColumnSpecification(Specification):
    """Specification comparing two fields of the same record."""

    _SQL_OPERATORS: t.ClassVar[dict[Operator, str]] = {
        Operator.EQ: "=",
        Operator.NEQ: "!=",
        Operator.GT: ">",
        Operator.GTE: ">=",
        Operator.LT: "<",
        Operator.LTE: "<=",
    }

    def __init__(self, left: str, operator: Operator, right: str) -> None:
        if operator not in self._SQL_OPERATORS:
            msg = f"Unsupported column comparison operator: {operator}"
            raise ValueError(msg)
        self.left = left
        self.operator = operator
        self.right = right

    def to_sql_where(self, context: SpecificationContext) -> tuple[str, dict[str, t.Any]]:
        return (
            f"{context.full_field_name(self.left)} "
            f"{self._SQL_OPERATORS[self.operator]} "
            f"{context.full_field_name(self.right)}"
        ), {}

    def is_satisfied_by(self, record: t.Any) -> bool:
        left, right = read_field(record, self.left), read_field(record, self.right)
        if left is None or right is None:
            return False
        try:
            match self.operator:
                case Operator.EQ:
                    return left == right
                case Operator.NEQ:
                    return left != right
                case Operator.GT:
                    return left > right
                case Operator.GTE:
                    return left >= right
                case Operator.LT:
                    return left < right
                case Operator.LTE:
                    return left <= right
        except TypeError:
            return False
        return False

    def to_dict(self) -> dict[str, t.Any]:
        return {
            "type": "column",
            "left": self.left,
            "operator": self.operator.value,
            "right": self.right,
        }


class NeverSpecification(Specification):
    """Matches nothing. Stands in for filters that can never hold."""

    def to_sql_where(self, context: SpecificationContext) -> tuple[str, dict[str, t.Any]]:
        return "1 = 0", {}

    def is_satisfied_by(self, record: t.Any) -> bool:
        return False

    def to_dict(self) -> dict[str, t.Any]:
        return {"type": "never"}


class AndSpecification(Specification):
    """Specification for AND operations."""

    def __init__(self, specifications: Sequence[Specification]) -> None:
        self.specifications = list(specifications)

    def to_sql_where(self, context: SpecificationContext) -> tuple[str, dict[str, t.Any]]:
        if not self.specifications:
            return "1 = 1", {}
        clauses = []
        all_params: dict[str, t.Any] = {}

        for spec in self.specifications:
            clause, params = spec.to_sql_where(context)
            clauses.append(f"({clause})")
            all_params.update(params)

        return " AND ".join(clauses), all_params

    def is_satisfied_by(self, record: t.Any) -> bool:
        return all(spec.is_satisfied_by(record) for spec in self.specifications)

    def to_dict(self) -> dict[str, t.Any]:
        return {
            "type": "and",
            "specifications": [spec.to_dict() for spec in self.specifications],
        }


class OrSpecification(Specification):
    """Specification for OR operations."""

    def __init__(self, specifications: Sequence[Specification]) -> None:
        self.specifications = list(specifications)

    def to_sql_where(self, context: SpecificationContext) -> tuple[str, dict[str, t.Any]]:
        if not self.specifications:
            return "1 = 0", {}
        clauses = []
        all_params: dict[str, t.Any] = {}

        for spec in self.specifications:
            clause, params = spec.to_sql_where(context)
            clauses.append(f"({clause})")
            all_params.update(params)

        return " OR ".join(clauses), all_params

    def is_satisfied_by(self, record: t.Any) -> bool:
        return any(spec.is_satisfied_by(record) for spec in self.specifications)

    def to_dict(self) -> dict[str, t.Any]:
        return {
            "type": "or",
            "specifications": [spec.to_dict() for spec in self.specifications],
        }


class NotSpecification(Specification):
    """Specification for NOT operations."""

    def __init__(self, specification: Specification) -> None:
        self.specification = specification

    def to_sql_where(self, context: SpecificationContext) -> tuple[str, dict[str, t.Any]]:
        clause, params = self.specification.to_sql_where(context)
        return f"NOT ({clause})", params

    def is_satisfied_by(self, record: t.Any) -> bool:
        return not self.specification.is_satisfied_by(record)

    def to_dict(self) -> dict[str, t.Any]:
        return {"type": "not", "specification": self.specification.to_dict()}


def combine(specifications: Sequence[Specification], or_: bool = False) -> Specification:
    """Join specifications, collapsing single-element groups."""
    if len(specifications) == 1:
        return specifications[0]
    if or_:
        return OrSpecification(specifications)
    return AndSpecification(specifications)


def equals(field: str, value: t.Any) -> FieldSpecification:
    return FieldSpecification(field, Operator.EQ, (value,))


def in_values(field: str, values: Sequence[t.Any]) -> FieldSpecification:
    return FieldSpecification(field, Operator.IN, values)


def not_in_values(field: str, values: Sequence[t.Any]) -> FieldSpecification:
    return FieldSpecification(field, Operator.NOT_IN, values)


def like(field: str, pattern: str) -> FieldSpecification:
    return FieldSpecification(field, Operator.LIKE, (pattern,))


def between(field: str, start: t.Any, end: t.Any) -> FieldSpecification:
    return FieldSpecification(field, Operator.BETWEEN, (start, end))
