from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from marketplace_auth.models.credential import Credential
from marketplace_auth.models.enums import Environment, MarketplaceId

CacheKey = Tuple[int, MarketplaceId, Optional[Environment]]


class CredentialCache:
    """
    Bounded in-process TTL cache of resolved credentials.

    Entries hold decrypted material, so the cache never leaves process
    memory. Writers invalidate; a reader that resolved a value before an
    invalidation cannot repopulate the cache with it (generation check).
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, Tuple[float, Credential]]" = OrderedDict()
        self._generation = 0
        self._lock = threading.RLock()

    @staticmethod
    def _key(user_id: int, marketplace_id: MarketplaceId, environment: Optional[Environment]) -> CacheKey:
        return (
            int(user_id),
            MarketplaceId(marketplace_id),
            Environment(environment) if environment is not None else None,
        )

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(
        self,
        user_id: int,
        marketplace_id: MarketplaceId,
        environment: Optional[Environment],
    ) -> Optional[Credential]:
        key = self._key(user_id, marketplace_id, environment)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, credential = entry
            if self._clock() - stored_at > self._ttl_seconds:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return credential

    def set(
        self,
        user_id: int,
        marketplace_id: MarketplaceId,
        environment: Optional[Environment],
        credential: Credential,
        *,
        generation: Optional[int] = None,
    ) -> bool:
        """Store an entry; ignored if an invalidation happened after `generation`."""
        key = self._key(user_id, marketplace_id, environment)
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._entries[key] = (self._clock(), credential)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
            return True

    def invalidate(self, user_id: int, marketplace_id: MarketplaceId) -> int:
        """Drop every environment variant for one user and marketplace."""
        user_id = int(user_id)
        marketplace_id = MarketplaceId(marketplace_id)
        return self._drop(lambda key: key[0] == user_id and key[1] == marketplace_id)

    def invalidate_marketplace(self, marketplace_id: MarketplaceId) -> int:
        """Drop entries for every user of a marketplace (global credential changes)."""
        marketplace_id = MarketplaceId(marketplace_id)
        return self._drop(lambda key: key[1] == marketplace_id)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._generation += 1

    def _drop(self, predicate: Callable[[CacheKey], bool]) -> int:
        with self._lock:
            doomed = [key for key in self._entries if predicate(key)]
            for key in doomed:
                del self._entries[key]
            self._generation += 1
            return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
