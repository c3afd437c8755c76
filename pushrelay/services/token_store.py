"""Process-wide cache of third-party access tokens.

Entries are keyed by credential identity (the concatenated credential
components), never by channel row, so every channel registered with the
same physical credential reads the same entry. Refreshes for one key are
serialized by a per-key lock; unrelated keys never contend.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol

from pushrelay.core.config import get_settings


logger = logging.getLogger(__name__)

REFRESH_POLICY_STALE = "stale"
REFRESH_POLICY_FAIL = "fail"


class TokenStoreItem(Protocol):
    def key(self) -> str:
        ...

    def is_filled(self) -> bool:
        ...

    def token(self) -> str:
        ...

    def clear(self) -> None:
        ...

    async def refresh(self) -> bool:
        ...

    async def is_shared(self) -> bool:
        ...


ItemFactory = Callable[[], TokenStoreItem]


class TokenStore:
    def __init__(self, *, failure_policy: str | None = None) -> None:
        self._items: dict[str, TokenStoreItem] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._failure_policy = (failure_policy or get_settings().token_refresh_failure_policy).lower()

    def _lock_for(self, key: str) -> asyncio.Lock:
        # setdefault is atomic between awaits, so concurrent callers share one lock per key.
        return self._locks.setdefault(key, asyncio.Lock())

    def peek(self, key: str) -> TokenStoreItem | None:
        return self._items.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    async def get_token(self, key: str, factory: ItemFactory | None = None) -> str:
        """Return the cached token for ``key``, creating and refreshing on first use.

        Concurrent first-time callers wait on the same per-key lock, so only
        one of them performs the refresh. The returned token may be empty when
        the refresh failed; the following send then fails on its own.
        """
        item = self._items.get(key)
        if item is not None:
            return item.token()
        async with self._lock_for(key):
            item = self._items.get(key)
            if item is None:
                if factory is None:
                    logger.error("token_store_missing_entry key=%s", _redact(key))
                    return ""
                item = factory()
                if item.is_filled():
                    await item.refresh()
                else:
                    logger.warning("token_store_incomplete_credential key=%s", _redact(key))
                self._items[key] = item
        return item.token()

    async def recover(self, key: str, stale_token: str, factory: ItemFactory | None = None) -> str:
        """Replace a token the third party rejected as expired.

        Shared credentials are refreshed in place, and skipped entirely when a
        concurrent sender already replaced ``stale_token``. Unshared entries
        are evicted and rebuilt. Either way at most one refresh runs per key.
        """
        async with self._lock_for(key):
            item = self._items.get(key)
            if item is not None and item.token() != stale_token:
                return item.token()
            if item is not None and await item.is_shared():
                refreshed = await item.refresh()
                if not refreshed and self._failure_policy == REFRESH_POLICY_FAIL:
                    item.clear()
                return item.token()
            self._items.pop(key, None)
            if factory is None:
                return ""
            item = factory()
            if item.is_filled():
                await item.refresh()
            self._items[key] = item
            return item.token()


def _redact(key: str) -> str:
    # Keys embed secrets; log only a short prefix.
    return f"{key[:6]}..." if len(key) > 6 else "***"


_token_store: TokenStore | None = None


def get_token_store() -> TokenStore:
    global _token_store
    if _token_store is None:
        _token_store = TokenStore()
    return _token_store


def reset_token_store() -> None:
    # Allow tests to start from an empty cache bound to the current event loop.
    global _token_store
    _token_store = None
