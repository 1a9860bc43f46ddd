"""Repository errors, settings and shared value types."""

from enum import Enum

import typing as t
from dataclasses import dataclass, field
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import SettingsConfigDict

from arepo.config import Settings


class RepositoryError(Exception):
    """Base exception for repository operations."""

    def __init__(
        self,
        message: str,
        entity_type: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.operation = operation
        super().__init__(message)


class EntityNotFoundError(RepositoryError):
    """Raised when an entity is not found."""

    def __init__(self, entity_type: str, entity_id: t.Any) -> None:
        super().__init__(
            f"{entity_type} with ID {entity_id} not found",
            entity_type=entity_type,
            operation="find",
        )
        self.entity_id = entity_id


class ParseError(RepositoryError):
    """Raised when a request parameter is not valid criteria syntax.

    ``param`` names the offending request parameter, ``token`` the raw
    fragment that could not be read.
    """

    def __init__(self, param: str, reason: str, token: str | None = None) -> None:
        self.param = param
        self.reason = reason
        self.token = token
        where = f" in {token!r}" if token is not None else ""
        super().__init__(f"Invalid {param!r} parameter: {reason}{where}", operation="parse")


class DecodeError(RepositoryError):
    """Raised when an opaque identifier cannot be decoded."""

    def __init__(self, field: str, token: str, entity_type: str | None = None) -> None:
        self.field = field
        self.token = token
        super().__init__(
            f"Could not decode identifier {token!r} for field {field!r}",
            entity_type=entity_type,
            operation="decode",
        )


class FieldNotSearchableError(RepositoryError):
    """Raised when a request references a field outside the searchable set."""

    def __init__(self, field: str, entity_type: str | None = None) -> None:
        self.field = field
        super().__init__(
            f"Field {field!r} is not searchable",
            entity_type=entity_type,
            operation="search",
        )


class SortDirection(Enum):
    """Sort direction enumeration."""

    ASC = "asc"
    DESC = "desc"


class DecodePolicy(Enum):
    """What to do with an id token the transcoder cannot decode."""

    NO_MATCH = "no_match"
    LITERAL = "literal"
    ERROR = "error"


@dataclass(frozen=True)
class SortCriteria:
    """Sort criteria specification."""

    field: str
    direction: SortDirection = SortDirection.ASC


@dataclass
class PaginationInfo:
    """Pagination information."""

    page: int = 1
    page_size: int = 15
    total_items: int | None = None
    total_pages: int | None = None

    def __post_init__(self) -> None:
        if self.total_items is not None and self.total_pages is None:
            self.total_pages = (self.total_items + self.page_size - 1) // self.page_size

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @property
    def has_next(self) -> bool:
        return self.total_pages is not None and self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1


@dataclass
class Page:
    """One page of results plus its pagination info."""

    items: list[t.Any] = field(default_factory=list)
    pagination: PaginationInfo = field(default_factory=PaginationInfo)

    def __iter__(self) -> t.Iterator[t.Any]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


class CriteriaParams(BaseModel):
    """Names of the request parameters read by the criteria parser."""

    model_config = ConfigDict(frozen=True)

    search: str = "search"
    search_fields: str = "searchFields"
    search_join: str = "searchJoin"
    filter: str = "filter"
    filter_join: str = "filterJoin"
    order_by: str = "orderBy"
    sorted_by: str = "sortedBy"
    include: str = "include"
    include_alias: str = "with"
    compare: str = "compare"
    having: str = "having"
    having_join: str = "havingJoin"
    group_by: str = "groupBy"


class RepositorySettings(Settings):
    """Repository configuration settings."""

    model_config = SettingsConfigDict(env_prefix="AREPO_REPOSITORY_")

    # Caching settings
    cache_enabled: bool = True
    cache_ttl: int = Field(default=1800, ge=1, description="Cache TTL in seconds")
    cache_prefix: str = Field(default="repo", description="Cache key prefix")
    cache_only: list[str] = Field(
        default_factory=list,
        description="Cache only these read methods",
    )
    cache_except: list[str] = Field(
        default_factory=list,
        description="Never cache these read methods",
    )
    clean_on_create: bool = True
    clean_on_update: bool = True
    clean_on_delete: bool = True
    skip_cache_param: str = "skipCache"

    # Invalidation retries
    invalidation_attempts: int = Field(default=3, ge=1)
    invalidation_delay: float = Field(
        default=0.05,
        ge=0.0,
        description="Initial retry delay in seconds, doubled per attempt",
    )

    # Query settings
    max_page_size: int = Field(default=1000, ge=1)
    page_size: int = Field(default=15, ge=1)
    params: CriteriaParams = Field(default_factory=CriteriaParams)
    enhanced_search: bool = True

    # Opaque identifiers
    decode_policy: DecodePolicy = DecodePolicy.NO_MATCH
    decode_search: bool = True
    decode_filters: bool = True

    @field_validator("page_size")
    @classmethod
    def validate_page_size(cls, v: int, info: t.Any) -> int:
        values: t.Any = info.data if hasattr(info, "data") else {}
        if "max_page_size" in values and v > values["max_page_size"]:
            msg = "page_size cannot exceed max_page_size"
            raise ValueError(msg)
        return v
