"""Criteria and the immutable criteria pipeline.

A criterion is a frozen value object with one capability, ``apply``,
which adds its part of a query to a ``QueryBuilder``. Criteria compare
structurally through their ``identity``; that identity is what the
pipeline pops by and what cache keys are derived from.
"""

import dataclasses
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator

import typing as t
from dataclasses import dataclass, field, replace

from ._base import DecodePolicy, FieldNotSearchableError, RepositoryError, SortDirection
from .query_builder import QueryBuilder
from .query_spec import (
    FilterSpec,
    JoinType,
    Operator,
    QuerySpec,
    SearchField,
    SearchSpec,
    TokenMode,
)
from .specifications import (
    FieldSpecification,
    NeverSpecification,
    NotSpecification,
    Specification,
    combine,
)
from .transcoder import IdTranscoder, decode_values


class CriterionIdentity(t.NamedTuple):
    tag: str
    params: tuple[t.Any, ...]


class Criterion(ABC):
    """A single composable query transformation."""

    tag: t.ClassVar[str] = "criterion"

    @abstractmethod
    def apply(self, builder: QueryBuilder) -> QueryBuilder: ...

    @property
    def identity(self) -> CriterionIdentity:
        params = tuple(
            getattr(self, f.name) for f in dataclasses.fields(self) if f.compare  # type: ignore[arg-type]
        )
        return CriterionIdentity(self.tag, params)

    def fields(self) -> tuple[str, ...]:
        """Entity fields this criterion reads."""
        return ()

    def equalities(self) -> tuple[tuple[str, t.Any], ...]:
        """``(field, value)`` pairs the criterion pins with equality."""
        return ()


@dataclass(frozen=True)
class Where(Criterion):
    tag: t.ClassVar[str] = "where"

    field: str
    operator: Operator = Operator.EQ
    values: tuple[t.Any, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", tuple(self.values))
        if not self.operator.check_arity(len(self.values)):
            msg = f"{self.operator.value} cannot take {len(self.values)} value(s)"
            raise ValueError(msg)

    def apply(self, builder: QueryBuilder) -> QueryBuilder:
        return builder.where(self.field, self.operator, self.values)

    def fields(self) -> tuple[str, ...]:
        return (self.field,)

    def equalities(self) -> tuple[tuple[str, t.Any], ...]:
        if self.operator is Operator.EQ:
            return ((self.field, self.values[0]),)
        return ()


@dataclass(frozen=True)
class WhereColumn(Criterion):
    tag: t.ClassVar[str] = "where_column"

    left: str
    operator: Operator
    right: str

    def apply(self, builder: QueryBuilder) -> QueryBuilder:
        return builder.where_column(self.left, self.operator, self.right)

    def fields(self) -> tuple[str, ...]:
        return (self.left, self.right)


@dataclass(frozen=True)
class OrderBy(Criterion):
    tag: t.ClassVar[str] = "order_by"

    field: str
    direction: SortDirection = SortDirection.ASC

    def apply(self, builder: QueryBuilder) -> QueryBuilder:
        return builder.order_by(self.field, self.direction)

    def fields(self) -> tuple[str, ...]:
        return (self.field,)


@dataclass(frozen=True)
class With(Criterion):
    tag: t.ClassVar[str] = "with"

    relation: str

    def apply(self, builder: QueryBuilder) -> QueryBuilder:
        return builder.with_relation(self.relation)


@dataclass(frozen=True)
class WithCount(Criterion):
    tag: t.ClassVar[str] = "with_count"

    relation: str

    def apply(self, builder: QueryBuilder) -> QueryBuilder:
        return builder.with_count(self.relation)


@dataclass(frozen=True)
class Scope(Criterion):
    """A named custom transformation.

    The callable takes part in neither equality nor identity; two scopes
    with the same ``name`` and ``args`` are the same criterion.
    """

    tag: t.ClassVar[str] = "scope"

    name: str
    fn: Callable[..., QueryBuilder] = field(compare=False, repr=False)
    args: tuple[t.Any, ...] = ()
    reads: tuple[str, ...] = field(default=(), compare=False)

    def apply(self, builder: QueryBuilder) -> QueryBuilder:
        return self.fn(builder, *self.args)

    def fields(self) -> tuple[str, ...]:
        return self.reads


def _like_value(value: t.Any) -> t.Any:
    if isinstance(value, str) and "%" not in value:
        return f"%{value}%"
    return value


@dataclass(frozen=True)
class RequestCriterion(Criterion):
    """A parsed request, compiled into a single criterion.

    Sections become predicate groups: conditions sharing a section share
    its join type and the groups are combined with AND. Values of id
    fields go through the transcoder here, at apply time, under
    ``decode_policy``.
    """

    tag: t.ClassVar[str] = "request"

    spec: QuerySpec
    decode_policy: DecodePolicy = DecodePolicy.NO_MATCH
    decode_search: bool = True
    decode_filters: bool = True
    searchable: tuple[SearchField, ...] = ()
    transcoder: IdTranscoder | None = field(default=None, compare=False, repr=False)
    entity_type: str | None = field(default=None, compare=False)

    def apply(self, builder: QueryBuilder) -> QueryBuilder:
        spec = self.spec
        if spec.search is not None:
            if spec.search.term is not None:
                self._apply_term(builder, spec.search)
            else:
                self._apply_section(builder, spec.search, self.decode_search)
        if spec.filter is not None:
            self._apply_section(builder, spec.filter, self.decode_filters)
        for comparison in spec.compare:
            self._check(comparison.left)
            self._check(comparison.right)
            builder.where_column(comparison.left, comparison.operator, comparison.right)
        if spec.sort is not None:
            for sort_field in spec.sort.fields:
                builder.order_by(sort_field.field, sort_field.direction)
        if spec.include is not None:
            for relation in spec.include.relations:
                builder.with_relation(relation)
            for relation in spec.include.counts:
                builder.with_count(relation)
        if spec.group_by:
            builder.group_by(*spec.group_by)
        if spec.having is not None:
            predicates = [
                FieldSpecification(f.field, f.operator, f.values)
                for f in spec.having.filters
            ]
            if predicates:
                builder.having_spec(combine(predicates, or_=spec.having.join is JoinType.OR))
        return builder

    @property
    def _whitelist(self) -> dict[str, Operator | None]:
        return {f.field: f.operator for f in self.searchable}

    def _check(self, name: str) -> None:
        if self.searchable and name not in self._whitelist:
            raise FieldNotSearchableError(name, self.entity_type)

    def _operator_for(self, condition: FilterSpec, section: SearchSpec) -> Operator:
        if condition.explicit:
            return condition.operator
        requested = {f.field: f.operator for f in section.fields}
        return (
            requested.get(condition.field)
            or self._whitelist.get(condition.field)
            or condition.operator
        )

    def _predicate(
        self,
        condition: FilterSpec,
        operator: Operator,
        decode: bool,
    ) -> Specification:
        values: tuple[t.Any, ...] = condition.values
        if decode and self.transcoder is not None and condition.maybe_encoded_id:
            decoded = decode_values(
                condition.field,
                values,
                self.transcoder,
                self.decode_policy,
                self.entity_type,
            )
            if decoded is None:
                return NeverSpecification()
            values = decoded
            # decoded ids match exactly
            if operator is Operator.LIKE:
                operator = Operator.EQ
        if operator is Operator.LIKE:
            values = tuple(_like_value(v) for v in values)
        return FieldSpecification(condition.field, operator, values)

    def _apply_section(self, builder: QueryBuilder, section: SearchSpec, decode: bool) -> None:
        predicates = []
        for condition in section.filters:
            self._check(condition.field)
            operator = self._operator_for(condition, section)
            predicates.append(self._predicate(condition, operator, decode))
        if predicates:
            builder.where_spec(combine(predicates, or_=section.join is JoinType.OR))

    def _term_fields(self, search: SearchSpec) -> list[tuple[str, Operator]]:
        fields = search.fields or self.searchable
        if not fields:
            msg = "A search term needs searchFields or searchable fields"
            raise RepositoryError(msg, entity_type=self.entity_type, operation="search")
        resolved = []
        for search_field in fields:
            self._check(search_field.field)
            operator = (
                search_field.operator
                or self._whitelist.get(search_field.field)
                or Operator.LIKE
            )
            resolved.append((search_field.field, operator))
        return resolved

    def _apply_term(self, builder: QueryBuilder, search: SearchSpec) -> None:
        fields = self._term_fields(search)

        def across(text: str, or_: bool) -> Specification:
            return combine(
                [
                    FieldSpecification(
                        name,
                        operator,
                        (_like_value(text) if operator is Operator.LIKE else text,),
                    )
                    for name, operator in fields
                ],
                or_=or_,
            )

        any_field = search.join is JoinType.OR
        optional = [
            across(tok.text, any_field)
            for tok in search.tokens
            if tok.mode is TokenMode.OPTIONAL
        ]
        parts: list[Specification] = []
        if optional:
            parts.append(combine(optional, or_=True))
        parts.extend(
            across(tok.text, any_field)
            for tok in search.tokens
            if tok.mode is TokenMode.REQUIRED
        )
        parts.extend(
            NotSpecification(across(tok.text, True))
            for tok in search.tokens
            if tok.mode is TokenMode.EXCLUDED
        )
        if parts:
            builder.where_spec(combine(parts))

    def fields(self) -> tuple[str, ...]:
        names = list(self.spec.referenced_fields())
        search = self.spec.search
        if search is not None and search.term is not None and not search.fields:
            names.extend(f.field for f in self.searchable)
        return tuple(dict.fromkeys(names))

    def equalities(self) -> tuple[tuple[str, t.Any], ...]:
        pairs: list[tuple[str, t.Any]] = []
        for section in (self.spec.filter, self.spec.search):
            if section is None:
                continue
            pairs.extend(
                (condition.field, condition.values[0])
                for condition in section.filters
                if self._operator_for(condition, section) is Operator.EQ
            )
        return tuple(pairs)


@dataclass(frozen=True)
class CriteriaPipeline:
    """Ordered, immutable sequence of criteria.

    Every operation returns a new pipeline, so a pipeline can be handed to
    concurrent calls without sharing mutable state.
    """

    criteria: tuple[Criterion, ...] = ()
    skip: bool = False

    def __iter__(self) -> Iterator[Criterion]:
        return iter(self.criteria)

    def __len__(self) -> int:
        return len(self.criteria)

    def pushed(self, *criteria: Criterion) -> "CriteriaPipeline":
        return replace(self, criteria=(*self.criteria, *criteria))

    def popped(self, criterion: Criterion | CriterionIdentity) -> "CriteriaPipeline":
        """Remove the first criterion structurally equal to ``criterion``."""
        target = criterion.identity if isinstance(criterion, Criterion) else criterion
        for index, candidate in enumerate(self.criteria):
            if candidate.identity == target:
                return replace(
                    self,
                    criteria=self.criteria[:index] + self.criteria[index + 1 :],
                )
        return self

    def cleared(self) -> "CriteriaPipeline":
        return replace(self, criteria=())

    def skipping(self, skip: bool = True) -> "CriteriaPipeline":
        return replace(self, skip=skip)

    def active(self) -> tuple[Criterion, ...]:
        return () if self.skip else self.criteria

    def apply_all(self, builder: QueryBuilder) -> QueryBuilder:
        for criterion in self.active():
            builder = criterion.apply(builder)
        return builder

    def identities(self) -> tuple[CriterionIdentity, ...]:
        return tuple(criterion.identity for criterion in self.active())
