"""Resource lifecycle for cache backends.

Backends register the clients they open; ``close()`` releases them once,
in reverse registration order, using whichever close-style method the
client exposes.
"""

import asyncio
import inspect

import typing as t

from .logger import get_logger

logger = get_logger(__name__)

_CLOSE_METHODS = ("aclose", "close", "disconnect", "shutdown")


class CleanupMixin:
    """Mixin tracking closable resources for an owning component."""

    def __init__(self) -> None:
        self._resources: list[t.Any] = []
        self._closed = False
        self._close_lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def register_resource(self, resource: t.Any) -> None:
        if resource is not None and resource not in self._resources:
            self._resources.append(resource)

    async def _release(self, resource: t.Any) -> None:
        for method_name in _CLOSE_METHODS:
            method = getattr(resource, method_name, None)
            if method is None:
                continue
            result = method()
            if inspect.isawaitable(result):
                await result
            logger.debug(f"Released {type(resource).__name__} using {method_name}()")
            return

    async def close(self) -> None:
        async with self._close_lock:
            if self._closed:
                return
            errors: list[str] = []
            for resource in reversed(self._resources):
                try:
                    await self._release(resource)
                except Exception as e:
                    errors.append(f"{type(resource).__name__}: {e}")
            self._resources.clear()
            self._closed = True
            if errors:
                logger.warning(f"Resource cleanup errors: {'; '.join(errors)}")

    async def __aenter__(self) -> t.Self:
        return self

    async def __aexit__(self, exc_type: t.Any, exc_val: t.Any, exc_tb: t.Any) -> None:
        await self.close()
