from __future__ import annotations

import asyncio
import time
from typing import Callable, Protocol

from agentcall.schemas.tasks import DeferredState


class DeferredTaskStore(Protocol):
    """Key/value persistence for deferred clarifications."""

    async def get(self, token: str) -> DeferredState | None:
        ...

    async def set(self, token: str, state: DeferredState) -> None:
        ...

    async def delete(self, token: str) -> None:
        ...


class InMemoryDeferredTaskStore:
    """Process-local deferred task store with optional per-entry expiry."""

    def __init__(
        self,
        *,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[DeferredState, float | None]] = {}
        self._lock = asyncio.Lock()

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    async def get(self, token: str) -> DeferredState | None:
        async with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return None
            state, expires_at = entry
            if self._expired(expires_at):
                del self._entries[token]
                return None
            return state

    async def set(self, token: str, state: DeferredState, *, ttl_seconds: float | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._ttl
        expires_at = self._clock() + ttl if ttl is not None else None
        async with self._lock:
            self._entries[token] = (state, expires_at)

    async def delete(self, token: str) -> None:
        async with self._lock:
            self._entries.pop(token, None)

    async def has(self, token: str) -> bool:
        return await self.get(token) is not None

    async def keys(self) -> list[str]:
        async with self._lock:
            self._purge()
            return list(self._entries)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def size(self) -> int:
        async with self._lock:
            self._purge()
            return len(self._entries)

    def _purge(self) -> None:
        expired = [token for token, (_, expires_at) in self._entries.items() if self._expired(expires_at)]
        for token in expired:
            del self._entries[token]


__all__ = ["DeferredTaskStore", "InMemoryDeferredTaskStore"]
