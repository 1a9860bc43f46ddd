"""Opaque identifier decoding for ``id`` and ``*_id`` request values."""

from collections.abc import Sequence

import typing as t

from ._base import DecodeError, DecodePolicy

__all__ = [
    "DecodePolicy",
    "IdTranscoder",
    "PlainIdTranscoder",
    "decode_values",
]


@t.runtime_checkable
class IdTranscoder(t.Protocol):
    """Maps public id tokens to internal integer ids and back."""

    def decode(self, token: str) -> int | None: ...

    def encode(self, value: int) -> str: ...


class PlainIdTranscoder:
    """Transcoder for stores whose public ids are plain decimal integers."""

    def decode(self, token: str) -> int | None:
        token = token.strip()
        return int(token) if token.isdecimal() else None

    def encode(self, value: int) -> str:
        return str(value)


def decode_values(
    field: str,
    values: Sequence[t.Any],
    transcoder: IdTranscoder | None,
    policy: DecodePolicy,
    entity_type: str | None = None,
) -> tuple[t.Any, ...] | None:
    """Decode every value of an id field.

    Decimal tokens are internal ids already and pass through as ints. A
    token the transcoder rejects is handled by ``policy``: ``NO_MATCH``
    returns ``None`` (the filter can never hold), ``LITERAL`` keeps the raw
    token and ``ERROR`` raises ``DecodeError``.
    """
    decoded: list[t.Any] = []
    for value in values:
        if not isinstance(value, str):
            decoded.append(value)
            continue
        if value.isdecimal():
            decoded.append(int(value))
            continue
        result = transcoder.decode(value) if transcoder is not None else None
        if result is not None:
            decoded.append(result)
            continue
        match policy:
            case DecodePolicy.NO_MATCH:
                return None
            case DecodePolicy.LITERAL:
                decoded.append(value)
            case DecodePolicy.ERROR:
                raise DecodeError(field, value, entity_type=entity_type)
    return tuple(decoded)
