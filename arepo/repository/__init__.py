"""Repository layer.

This package provides criteria-driven, tag-cached data access:
- Request criteria parser (search, filter, sort, include, group, having)
- Immutable criteria pipeline and query specification tree
- Deterministic cache keys and invalidation tags
- Single-flight cache coordinator over tag-aware cache stores
- Repository facade over an injected entity store
"""

from ._base import (
    CriteriaParams,
    DecodeError,
    DecodePolicy,
    EntityNotFoundError,
    FieldNotSearchableError,
    Page,
    PaginationInfo,
    ParseError,
    RepositoryError,
    RepositorySettings,
    SortCriteria,
    SortDirection,
)
from .coordinator import CacheCoordinator, CacheMetrics
from .core import Repository
from .criteria import (
    CriteriaPipeline,
    Criterion,
    CriterionIdentity,
    OrderBy,
    RequestCriterion,
    Scope,
    Where,
    WhereColumn,
    With,
    WithCount,
)
from .keys import derive_key
from .memory import EntityStoreProtocol, InMemoryEntityStore
from .parser import parse, serialize
from .query_builder import QueryBuilder, QueryState
from .query_spec import (
    FieldComparison,
    FilterSpec,
    IncludeSpec,
    JoinType,
    Operator,
    QuerySpec,
    SearchSpec,
    SortSpec,
)
from .specifications import (
    AndSpecification,
    NotSpecification,
    OrSpecification,
    Specification,
)
from .tags import tags_for_entity, tags_for_query, tags_for_result, tags_for_values
from .transcoder import IdTranscoder, PlainIdTranscoder

__all__ = [
    "AndSpecification",
    "CacheCoordinator",
    "CacheMetrics",
    "CriteriaParams",
    "CriteriaPipeline",
    "Criterion",
    "CriterionIdentity",
    "DecodeError",
    "DecodePolicy",
    "EntityNotFoundError",
    "EntityStoreProtocol",
    "FieldComparison",
    "FieldNotSearchableError",
    "FilterSpec",
    "IdTranscoder",
    "InMemoryEntityStore",
    "IncludeSpec",
    "JoinType",
    "NotSpecification",
    "Operator",
    "OrSpecification",
    "OrderBy",
    "Page",
    "PaginationInfo",
    "ParseError",
    "PlainIdTranscoder",
    "QueryBuilder",
    "QuerySpec",
    "QueryState",
    "Repository",
    "RepositoryError",
    "RepositorySettings",
    "RequestCriterion",
    "Scope",
    "SearchSpec",
    "SortCriteria",
    "SortDirection",
    "SortSpec",
    "Specification",
    "Where",
    "WhereColumn",
    "With",
    "WithCount",
    "derive_key",
    "parse",
    "serialize",
    "tags_for_entity",
    "tags_for_query",
    "tags_for_result",
    "tags_for_values",
]
