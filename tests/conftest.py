"""Configuration for pytest testing framework."""

import typing as t

import pytest

from arepo.adapters.cache import CacheSettings, MemoryCache
from arepo.repository import (
    CacheCoordinator,
    InMemoryEntityStore,
    Repository,
    RepositorySettings,
)

USERS: list[dict[str, t.Any]] = [
    {"id": 1, "name": "Ada", "email": "ada@example.com", "status": "active", "role_id": 3, "age": 36},
    {"id": 2, "name": "Grace", "email": "grace@example.org", "status": "active", "role_id": 7, "age": 45},
    {"id": 3, "name": "Linus", "email": "linus@example.com", "status": "banned", "role_id": 3, "age": 28},
    {"id": 4, "name": "Barbara", "email": None, "status": "inactive", "role_id": 5, "age": 52},
]


@pytest.fixture
def cache_settings() -> CacheSettings:
    return CacheSettings(namespace="test")


@pytest.fixture
def memory_cache(cache_settings: CacheSettings) -> MemoryCache:
    return MemoryCache(cache_settings)


@pytest.fixture
def coordinator(memory_cache: MemoryCache) -> CacheCoordinator:
    return CacheCoordinator(memory_cache, invalidation_delay=0.0)


@pytest.fixture
def user_store() -> InMemoryEntityStore:
    return InMemoryEntityStore(
        "user",
        USERS,
        relations={"posts": lambda user: [{"user_id": user["id"]}] * user["id"]},
    )


@pytest.fixture
def repository_settings() -> RepositorySettings:
    return RepositorySettings(invalidation_delay=0.0)


@pytest.fixture
def users(
    user_store: InMemoryEntityStore,
    coordinator: CacheCoordinator,
    repository_settings: RepositorySettings,
) -> Repository:
    return Repository(
        "user",
        user_store,
        coordinator,
        settings=repository_settings,
        fields_searchable={"name": "like", "email": None, "status": None, "role_id": None, "age": None, "id": None},
    )
