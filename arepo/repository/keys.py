"""Deterministic cache keys for repository reads."""

import hashlib
from collections.abc import Callable, Iterable, Sequence

import typing as t
from msgspec import json
from pydantic import BaseModel

from .criteria import CriterionIdentity

DIGEST_LENGTH = 32


def _enc_hook(obj: t.Any) -> t.Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if isinstance(obj, Callable):  # type: ignore[arg-type]
        return f"{obj.__module__}.{getattr(obj, '__qualname__', type(obj).__qualname__)}"
    msg = f"Cannot derive a cache key from {type(obj).__name__}"
    raise NotImplementedError(msg)


def content_hash(value: t.Any) -> str:
    """SHA-256 of the deterministic JSON encoding of ``value``.

    Sequences keep their order; mappings and sets are sorted, so the hash
    does not depend on insertion order, memory addresses or hash seeds.
    """
    encoded = json.encode(value, enc_hook=_enc_hook, order="deterministic")
    return hashlib.sha256(encoded).hexdigest()[:DIGEST_LENGTH]


def derive_key(
    entity_type: str,
    operation: str,
    args: Sequence[t.Any],
    criteria: Iterable[CriterionIdentity],
    prefix: str = "repo",
) -> str:
    """Build the cache key of one repository read.

    Criteria are hashed in order: pushing the same criteria in a
    different order yields a different key.
    """
    return ":".join(
        (
            prefix,
            entity_type,
            operation,
            content_hash(list(args)),
            content_hash([[c.tag, list(c.params)] for c in criteria]),
        ),
    )
