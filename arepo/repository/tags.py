"""Invalidation tags for cached queries and written entities.

Query tags are value specific (``user:status:active``) while write tags
name whole fields (``user:field:status``): a write cannot know which
cached value bucket an entity left, so it invalidates every query that
constrained the field at all.
"""

from collections.abc import Iterable, Mapping

import typing as t

from ._base import Page
from .criteria import Criterion


def entity_tag(entity_type: str) -> str:
    return entity_type


def id_tag(entity_type: str, entity_id: t.Any) -> str:
    return f"{entity_type}:id:{_tag_value(entity_id)}"


def field_tag(entity_type: str, field: str) -> str:
    return f"{entity_type}:field:{field}"


def value_tag(entity_type: str, field: str, value: t.Any) -> str:
    return f"{entity_type}:{field}:{_tag_value(value)}"


def _tag_value(value: t.Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def tags_for_query(entity_type: str, criteria: Iterable[Criterion]) -> frozenset[str]:
    """Tags of a cached read: the entity tag, one tag per referenced field
    and one value tag per equality constraint."""
    tags = {entity_tag(entity_type)}
    for criterion in criteria:
        tags.update(field_tag(entity_type, name) for name in criterion.fields())
        tags.update(
            value_tag(entity_type, name, value) for name, value in criterion.equalities()
        )
    return frozenset(tags)


def tags_for_entity(
    entity_type: str,
    entity_id: t.Any,
    changed_fields: Iterable[str] | None = None,
) -> frozenset[str]:
    tags = {entity_tag(entity_type), id_tag(entity_type, entity_id)}
    if changed_fields is not None:
        tags.update(field_tag(entity_type, name) for name in changed_fields)
    return frozenset(tags)


def tags_for_values(entity_type: str, values: Mapping[str, t.Any]) -> frozenset[str]:
    return frozenset(value_tag(entity_type, name, value) for name, value in values.items())


def entity_id(entity: t.Any, key: str = "id") -> t.Any:
    if isinstance(entity, Mapping):
        return entity.get(key)
    return getattr(entity, key, None)


def tags_for_result(entity_type: str, result: t.Any) -> frozenset[str]:
    """Id tags for every entity contained in a read result."""
    if result is None or isinstance(result, int | float | str | bytes):
        return frozenset()
    if isinstance(result, Page):
        items: Iterable[t.Any] = result.items
    elif isinstance(result, list | tuple):
        items = result
    else:
        items = (result,)
    return frozenset(
        id_tag(entity_type, ident)
        for ident in (entity_id(item) for item in items)
        if ident is not None
    )
