"""Query Builder Implementation.

Provides the fluent builder criteria are applied to:
- Field, column and grouped predicates
- Sorting, relations and relation counts
- Grouping and HAVING predicates
- Limit/offset, with execution delegated to the entity store
"""

from collections.abc import Sequence

import typing as t
from dataclasses import dataclass, field

from ._base import SortCriteria, SortDirection
from .query_spec import Operator
from .specifications import (
    AndSpecification,
    ColumnSpecification,
    FieldSpecification,
    Specification,
    SpecificationContext,
)

if t.TYPE_CHECKING:
    from .memory import EntityStoreProtocol


@dataclass(frozen=True)
class QueryState:
    """Immutable snapshot of everything a builder has collected."""

    where: tuple[Specification, ...] = ()
    sort: tuple[SortCriteria, ...] = ()
    relations: tuple[str, ...] = ()
    counts: tuple[str, ...] = ()
    group_by: tuple[str, ...] = ()
    having: tuple[Specification, ...] = ()
    limit: int | None = None
    offset: int | None = None

    @property
    def predicate(self) -> Specification:
        return AndSpecification(self.where)

    @property
    def having_predicate(self) -> Specification:
        return AndSpecification(self.having)

    def to_sql_where(
        self,
        context: SpecificationContext | None = None,
    ) -> tuple[str, dict[str, t.Any]]:
        return self.predicate.to_sql_where(context or SpecificationContext())

    def to_dict(self) -> dict[str, t.Any]:
        return {
            "where": [spec.to_dict() for spec in self.where],
            "sort": [[s.field, s.direction.value] for s in self.sort],
            "relations": list(self.relations),
            "counts": list(self.counts),
            "group_by": list(self.group_by),
            "having": [spec.to_dict() for spec in self.having],
            "limit": self.limit,
            "offset": self.offset,
        }


@dataclass
class QueryBuilder:
    """Fluent query builder bound to an entity store.

    Every method mutates the builder and returns it for chaining; use
    ``clone()`` to branch.
    """

    store: "EntityStoreProtocol | None" = None
    _where: list[Specification] = field(default_factory=list)
    _sort: list[SortCriteria] = field(default_factory=list)
    _relations: list[str] = field(default_factory=list)
    _counts: list[str] = field(default_factory=list)
    _group_by: list[str] = field(default_factory=list)
    _having: list[Specification] = field(default_factory=list)
    _limit: int | None = None
    _offset: int | None = None

    def where(
        self,
        field: str,
        operator: Operator,
        values: Sequence[t.Any] = (),
    ) -> "QueryBuilder":
        return self.where_spec(FieldSpecification(field, operator, values))

    def where_spec(self, specification: Specification) -> "QueryBuilder":
        self._where.append(specification)
        return self

    def where_column(self, left: str, operator: Operator, right: str) -> "QueryBuilder":
        return self.where_spec(ColumnSpecification(left, operator, right))

    def order_by(
        self,
        field: str,
        direction: SortDirection = SortDirection.ASC,
    ) -> "QueryBuilder":
        self._sort.append(SortCriteria(field, direction))
        return self

    def with_relation(self, path: str) -> "QueryBuilder":
        if path not in self._relations:
            self._relations.append(path)
        return self

    def with_count(self, path: str) -> "QueryBuilder":
        if path not in self._counts:
            self._counts.append(path)
        return self

    def group_by(self, *fields: str) -> "QueryBuilder":
        self._group_by.extend(fields)
        return self

    def having(
        self,
        field: str,
        operator: Operator,
        values: Sequence[t.Any] = (),
    ) -> "QueryBuilder":
        return self.having_spec(FieldSpecification(field, operator, values))

    def having_spec(self, specification: Specification) -> "QueryBuilder":
        self._having.append(specification)
        return self

    def limit(self, limit: int | None) -> "QueryBuilder":
        self._limit = limit
        return self

    def offset(self, offset: int | None) -> "QueryBuilder":
        self._offset = offset
        return self

    def snapshot(self) -> QueryState:
        return QueryState(
            where=tuple(self._where),
            sort=tuple(self._sort),
            relations=tuple(self._relations),
            counts=tuple(self._counts),
            group_by=tuple(self._group_by),
            having=tuple(self._having),
            limit=self._limit,
            offset=self._offset,
        )

    def clone(self) -> "QueryBuilder":
        return QueryBuilder(
            store=self.store,
            _where=self._where.copy(),
            _sort=self._sort.copy(),
            _relations=self._relations.copy(),
            _counts=self._counts.copy(),
            _group_by=self._group_by.copy(),
            _having=self._having.copy(),
            _limit=self._limit,
            _offset=self._offset,
        )

    def _require_store(self) -> "EntityStoreProtocol":
        if self.store is None:
            msg = "QueryBuilder is not bound to an entity store"
            raise RuntimeError(msg)
        return self.store

    async def get(self) -> list[t.Any]:
        """Execute the query and return every matching entity."""
        return await self._require_store().execute(self.snapshot())

    async def first(self) -> t.Any | None:
        """Execute the query and return the first result, if any."""
        results = await self.clone().limit(1).get()
        return results[0] if results else None

    async def count(self) -> int:
        """Count matching entities, ignoring limit and offset."""
        return await self._require_store().count(self.snapshot())
