"""Entity store protocol and a dict-backed reference store."""

import itertools
from collections.abc import Callable, Iterable, Mapping

import typing as t

from ._base import EntityNotFoundError, RepositoryError, SortDirection
from .query_builder import QueryBuilder, QueryState
from .specifications import read_field

Record = dict[str, t.Any]


@t.runtime_checkable
class EntityStoreProtocol(t.Protocol):
    """The persisted-entity store a ``Repository`` runs queries against."""

    def query(self) -> QueryBuilder: ...

    async def execute(self, state: QueryState) -> list[t.Any]: ...

    async def count(self, state: QueryState) -> int: ...

    async def get(self, entity_id: t.Any) -> t.Any | None: ...

    async def insert(self, attributes: Mapping[str, t.Any]) -> t.Any: ...

    async def update(self, entity_id: t.Any, attributes: Mapping[str, t.Any]) -> t.Any: ...

    async def delete(self, entity_id: t.Any) -> bool: ...


def _sort_key(field: str) -> Callable[[Record], tuple[bool, t.Any]]:
    def key(record: Record) -> tuple[bool, t.Any]:
        value = read_field(record, field)
        return value is None, value

    return key


class InMemoryEntityStore:
    """Dict-backed store evaluating query snapshots in process.

    Relations are callables resolving a related value from a record;
    ``with_relation`` attaches their result under the relation name and
    ``with_count`` attaches ``<relation>_count``.
    """

    def __init__(
        self,
        entity_type: str = "entity",
        records: Iterable[Mapping[str, t.Any]] = (),
        relations: Mapping[str, Callable[[Record], t.Any]] | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.relations = dict(relations or {})
        self._records: dict[t.Any, Record] = {}
        self._ids = itertools.count(1)
        self.executions = 0
        for record in records:
            self._store(dict(record))

    def _store(self, record: Record) -> Record:
        if record.get("id") is None:
            record["id"] = next(self._ids)
            while record["id"] in self._records:
                record["id"] = next(self._ids)
        self._records[record["id"]] = record
        return record

    def query(self) -> QueryBuilder:
        return QueryBuilder(store=self)

    def _relation(self, name: str) -> Callable[[Record], t.Any]:
        try:
            return self.relations[name]
        except KeyError:
            msg = f"Unknown relation {name!r}"
            raise RepositoryError(msg, entity_type=self.entity_type, operation="with") from None

    def _matching(self, state: QueryState) -> list[Record]:
        predicate = state.predicate
        return [r for r in self._records.values() if predicate.is_satisfied_by(r)]

    def _grouped(self, records: list[Record], state: QueryState) -> list[Record]:
        groups: dict[tuple[t.Any, ...], Record] = {}
        for record in records:
            group_key = tuple(read_field(record, f) for f in state.group_by)
            row = groups.setdefault(
                group_key,
                dict(zip(state.group_by, group_key, strict=True)) | {"count": 0},
            )
            row["count"] += 1
        having = state.having_predicate
        return [row for row in groups.values() if having.is_satisfied_by(row)]

    async def execute(self, state: QueryState) -> list[Record]:
        self.executions += 1
        rows = self._matching(state)
        if state.group_by:
            rows = self._grouped(rows, state)
        for criteria in reversed(state.sort):
            rows.sort(
                key=_sort_key(criteria.field),
                reverse=criteria.direction is SortDirection.DESC,
            )
        start = state.offset or 0
        end = start + state.limit if state.limit is not None else None
        rows = rows[start:end]
        results = []
        for row in rows:
            result = dict(row)
            for name in state.relations:
                result[name] = self._relation(name)(row)
            for name in state.counts:
                result[f"{name}_count"] = len(self._relation(name)(row) or ())
            results.append(result)
        return results

    async def count(self, state: QueryState) -> int:
        self.executions += 1
        rows = self._matching(state)
        if state.group_by:
            return len(self._grouped(rows, state))
        return len(rows)

    async def get(self, entity_id: t.Any) -> Record | None:
        record = self._records.get(entity_id)
        return dict(record) if record is not None else None

    async def insert(self, attributes: Mapping[str, t.Any]) -> Record:
        return dict(self._store(dict(attributes)))

    async def update(self, entity_id: t.Any, attributes: Mapping[str, t.Any]) -> Record:
        record = self._records.get(entity_id)
        if record is None:
            raise EntityNotFoundError(self.entity_type, entity_id)
        record.update({k: v for k, v in attributes.items() if k != "id"})
        return dict(record)

    async def delete(self, entity_id: t.Any) -> bool:
        return self._records.pop(entity_id, None) is not None
