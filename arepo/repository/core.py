"""Repository facade.

Ties an entity store, a criteria pipeline and a cache coordinator
together. Every criteria operation returns a new repository view, so a
view can serve concurrent calls without shared pipeline state::

    users = Repository("user", store, coordinator, fields_searchable=["name", "email"])
    active = users.with_request({"filter": "status:active", "orderBy": "name"})
    page = await active.paginate(limit=20)
"""

import copy
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from functools import partial

import typing as t

from arepo.logger import get_logger

from ._base import (
    EntityNotFoundError,
    Page,
    PaginationInfo,
    RepositorySettings,
)
from .coordinator import CacheCoordinator, CacheMetrics
from .criteria import (
    CriteriaPipeline,
    Criterion,
    CriterionIdentity,
    RequestCriterion,
    Where,
)
from .keys import derive_key
from .memory import EntityStoreProtocol
from .parser import lookup_operator, parse
from .query_builder import QueryBuilder
from .query_spec import Operator, SearchField
from .tags import (
    entity_id,
    entity_tag,
    tags_for_entity,
    tags_for_query,
    tags_for_result,
    tags_for_values,
)
from .transcoder import IdTranscoder

logger = get_logger(__name__)

_TRUTHY = frozenset({"1", "true", "yes", "on"})


def _operator(operator: Operator | str) -> Operator:
    if isinstance(operator, Operator):
        return operator
    resolved = lookup_operator(operator)
    if resolved is None:
        msg = f"Unknown operator {operator!r}"
        raise ValueError(msg)
    return resolved


def _searchable(
    fields: Mapping[str, Operator | str | None] | Sequence[str] | None,
) -> tuple[SearchField, ...]:
    if not fields:
        return ()
    if isinstance(fields, Mapping):
        items = fields.items()
    else:
        items = ((name, None) for name in fields)
    resolved = []
    for name, operator in items:
        if operator is not None:
            operator = _operator(operator)
            if operator.is_multi_value or operator.is_nullary:
                msg = f"Searchable field {name!r} cannot default to {operator.value}"
                raise ValueError(msg)
        resolved.append(SearchField(name, operator))
    return tuple(resolved)


class Repository:
    """Cached, criteria-driven access to one entity type."""

    def __init__(
        self,
        entity_type: str | type,
        store: EntityStoreProtocol,
        coordinator: CacheCoordinator | None = None,
        settings: RepositorySettings | None = None,
        transcoder: IdTranscoder | None = None,
        fields_searchable: Mapping[str, Operator | str | None] | Sequence[str] | None = None,
        pipeline: CriteriaPipeline | None = None,
    ) -> None:
        if isinstance(entity_type, str):
            self.entity_name = entity_type
        else:
            self.entity_name = entity_type.__name__.lower()
        self.store = store
        self.coordinator = coordinator
        self.settings = settings or RepositorySettings()
        self.transcoder = transcoder
        self.searchable = _searchable(fields_searchable)
        self.pipeline = pipeline or CriteriaPipeline()
        self.skip_cache = False

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.entity_name!r}, "
            f"criteria={len(self.pipeline)}, skip_cache={self.skip_cache})"
        )

    def _view(self, **changes: t.Any) -> t.Self:
        view = copy.copy(self)
        for name, value in changes.items():
            setattr(view, name, value)
        return view

    # Criteria views

    def pushed_criteria(self, *criteria: Criterion) -> t.Self:
        return self._view(pipeline=self.pipeline.pushed(*criteria))

    def popped_criteria(self, criterion: Criterion | CriterionIdentity) -> t.Self:
        return self._view(pipeline=self.pipeline.popped(criterion))

    def cleared_criteria(self) -> t.Self:
        return self._view(pipeline=self.pipeline.cleared())

    def skipping_criteria(self, skip: bool = True) -> t.Self:
        return self._view(pipeline=self.pipeline.skipping(skip))

    def skipping_cache(self, skip: bool = True) -> t.Self:
        return self._view(skip_cache=skip)

    def get_criteria(self) -> tuple[Criterion, ...]:
        return self.pipeline.criteria

    def request_criterion(self, raw_params: Mapping[str, t.Any]) -> RequestCriterion:
        """Parse request parameters into a criterion bound to this repository."""
        spec = parse(
            raw_params,
            self.settings.params,
            enhanced=self.settings.enhanced_search,
        )
        return RequestCriterion(
            spec,
            decode_policy=self.settings.decode_policy,
            decode_search=self.settings.decode_search,
            decode_filters=self.settings.decode_filters,
            searchable=self.searchable,
            transcoder=self.transcoder,
            entity_type=self.entity_name,
        )

    def with_request(self, raw_params: Mapping[str, t.Any]) -> t.Self:
        """Push the criteria of a request.

        A truthy ``skipCache`` parameter also bypasses the cache.
        """
        view = self.pushed_criteria(self.request_criterion(raw_params))
        skip = raw_params.get(self.settings.skip_cache_param)
        if skip is True or (isinstance(skip, str) and skip.strip().lower() in _TRUTHY):
            view = view.skipping_cache()
        return view

    # Caching

    def allowed_cache(self, method: str) -> bool:
        if self.coordinator is None or self.skip_cache or not self.settings.cache_enabled:
            return False
        if self.settings.cache_only:
            return method in self.settings.cache_only
        return method not in self.settings.cache_except

    def cache_key(self, method: str, args: Sequence[t.Any] = ()) -> str:
        return derive_key(
            self.entity_name,
            method,
            args,
            self.pipeline.identities(),
            prefix=self.settings.cache_prefix,
        )

    async def _read(
        self,
        method: str,
        args: Sequence[t.Any],
        execute: Callable[[QueryBuilder], Awaitable[t.Any]],
        constraints: Iterable[Criterion] = (),
    ) -> t.Any:
        constraints = tuple(constraints)

        async def compute() -> t.Any:
            builder = self.pipeline.apply_all(self.store.query())
            for criterion in constraints:
                builder = criterion.apply(builder)
            return await execute(builder)

        if not self.allowed_cache(method):
            return await compute()
        assert self.coordinator is not None
        tags = tags_for_query(self.entity_name, (*self.pipeline.active(), *constraints))
        return await self.coordinator.get_or_compute(
            self.cache_key(method, args),
            tags,
            compute,
            ttl=self.settings.cache_ttl,
            result_tags=partial(tags_for_result, self.entity_name),
        )

    async def _invalidate(self, tags: Iterable[str]) -> bool:
        if self.coordinator is None:
            return True
        return await self.coordinator.invalidate(tags)

    async def clear_cache(self) -> bool:
        """Invalidate every cached read of this entity type."""
        return await self._invalidate({entity_tag(self.entity_name)})

    async def forget_where(self, **values: t.Any) -> bool:
        """Invalidate cached reads pinned to these field values."""
        return await self._invalidate(tags_for_values(self.entity_name, values))

    def cache_metrics(self) -> CacheMetrics | None:
        return self.coordinator.metrics if self.coordinator is not None else None

    # Reads

    async def all(self) -> list[t.Any]:
        return await self._read("all", (), lambda b: b.get())

    async def first(self) -> t.Any | None:
        return await self._read("first", (), lambda b: b.first())

    async def paginate(self, limit: int | None = None, page: int = 1) -> Page:
        """Return one page of results with pagination info.

        Args:
            limit: Items per page, capped at ``max_page_size``
            page: Page number (1-based)
        """
        page_size = min(limit or self.settings.page_size, self.settings.max_page_size)
        page = max(page, 1)

        async def execute(builder: QueryBuilder) -> Page:
            total = await builder.count()
            pagination = PaginationInfo(page=page, page_size=page_size, total_items=total)
            items = await builder.limit(page_size).offset(pagination.offset).get()
            return Page(items=items, pagination=pagination)

        return await self._read("paginate", (page_size, page), execute)

    async def find(self, entity_id: t.Any) -> t.Any | None:
        return await self._read(
            "find",
            (entity_id,),
            lambda b: b.first(),
            (Where("id", Operator.EQ, (entity_id,)),),
        )

    async def find_or_fail(self, entity_id: t.Any) -> t.Any:
        entity = await self.find(entity_id)
        if entity is None:
            raise EntityNotFoundError(self.entity_name, entity_id)
        return entity

    async def exists(self, entity_id: t.Any) -> bool:
        return await self.find(entity_id) is not None

    async def find_by_field(self, field: str, value: t.Any) -> list[t.Any]:
        return await self._read(
            "find_by_field",
            (field, value),
            lambda b: b.get(),
            (Where(field, Operator.EQ, (value,)),),
        )

    async def find_where(
        self,
        where: Mapping[str, t.Any] | None = None,
        **conditions: t.Any,
    ) -> list[t.Any]:
        """Find entities matching every condition.

        A condition value is either the value to equal or an
        ``(operator, value)`` pair; ``in``/``between`` style operators take
        a sequence of values.
        """
        constraints = self._where_criteria({**(where or {}), **conditions})
        return await self._read(
            "find_where",
            (sorted((c.field, c.operator.value, c.values) for c in constraints),),
            lambda b: b.get(),
            constraints,
        )

    async def find_where_in(self, field: str, values: Sequence[t.Any]) -> list[t.Any]:
        if not values:
            return []
        return await self._read(
            "find_where_in",
            (field, list(values)),
            lambda b: b.get(),
            (Where(field, Operator.IN, tuple(values)),),
        )

    async def find_where_not_in(self, field: str, values: Sequence[t.Any]) -> list[t.Any]:
        return await self._read(
            "find_where_not_in",
            (field, list(values)),
            lambda b: b.get(),
            (Where(field, Operator.NOT_IN, tuple(values)),),
        )

    async def find_where_between(self, field: str, low: t.Any, high: t.Any) -> list[t.Any]:
        return await self._read(
            "find_where_between",
            (field, low, high),
            lambda b: b.get(),
            (Where(field, Operator.BETWEEN, (low, high)),),
        )

    async def count(self) -> int:
        return await self._read("count", (), lambda b: b.count())

    async def get_by_criteria(self, criterion: Criterion) -> list[t.Any]:
        """Run the pipeline plus one extra criterion without pushing it."""
        return await self._read(
            "get_by_criteria",
            ([criterion.identity.tag, list(criterion.identity.params)],),
            lambda b: b.get(),
            (criterion,),
        )

    @staticmethod
    def _where_criteria(conditions: Mapping[str, t.Any]) -> tuple[Where, ...]:
        criteria = []
        for field, condition in conditions.items():
            if isinstance(condition, tuple) and len(condition) == 2:
                operator, value = condition
                operator = _operator(operator)
                if operator.is_nullary:
                    values: tuple[t.Any, ...] = ()
                elif operator.is_multi_value:
                    values = tuple(value)
                else:
                    values = (value,)
                criteria.append(Where(field, operator, values))
            else:
                criteria.append(Where(field, Operator.EQ, (condition,)))
        return tuple(criteria)

    # Writes

    async def create(self, attributes: Mapping[str, t.Any]) -> t.Any:
        entity = await self.store.insert(attributes)
        logger.debug(f"Created {self.entity_name} {entity_id(entity)}")
        if self.settings.clean_on_create:
            await self._invalidate(
                tags_for_entity(self.entity_name, entity_id(entity), attributes.keys()),
            )
        return entity

    async def update(self, ident: t.Any, attributes: Mapping[str, t.Any]) -> t.Any:
        """Update an entity and invalidate reads that may now be stale.

        Only the entity's id tag and the changed fields' tags are
        invalidated: cached reads that neither contained the entity nor
        constrained a changed field stay valid.
        """
        entity = await self.store.update(ident, attributes)
        logger.debug(f"Updated {self.entity_name} {ident}: {sorted(attributes)}")
        if self.settings.clean_on_update:
            tags = tags_for_entity(self.entity_name, ident, attributes.keys())
            await self._invalidate(tags - {entity_tag(self.entity_name)})
        return entity

    async def update_or_create(
        self,
        match: Mapping[str, t.Any],
        values: Mapping[str, t.Any] | None = None,
    ) -> t.Any:
        values = dict(values or {})
        builder = self.store.query()
        for criterion in self._where_criteria(match):
            builder = criterion.apply(builder)
        existing = await builder.first()
        if existing is not None:
            return await self.update(entity_id(existing), values)
        return await self.create({**match, **values})

    async def delete(self, ident: t.Any) -> bool:
        deleted = await self.store.delete(ident)
        if deleted:
            logger.debug(f"Deleted {self.entity_name} {ident}")
            if self.settings.clean_on_delete:
                await self._invalidate(tags_for_entity(self.entity_name, ident))
        return deleted

    async def delete_where(self, **conditions: t.Any) -> int:
        builder = self.store.query()
        for criterion in self._where_criteria(conditions):
            builder = criterion.apply(builder)
        ids = [entity_id(entity) for entity in await builder.get()]
        deleted = [ident for ident in ids if await self.store.delete(ident)]
        if deleted and self.settings.clean_on_delete:
            tags: set[str] = set()
            for ident in deleted:
                tags |= tags_for_entity(self.entity_name, ident)
            await self._invalidate(tags)
        logger.debug(f"Deleted {len(deleted)} {self.entity_name} entities")
        return len(deleted)
