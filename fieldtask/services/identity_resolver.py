from __future__ import annotations

import logging
import os
import uuid
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from threading import RLock
from typing import Any

from fieldtask.domain.actor import GlobalScope, OrgScope, SpecificScope

IDENTITY_CACHE_SIZE = int(os.getenv("IDENTITY_CACHE_SIZE", "1024"))
IDENTITY_LOOKUP_TIMEOUT_S = float(os.getenv("IDENTITY_LOOKUP_TIMEOUT_S", "2.0"))

ROOT_ORG_CLAIM = "root"
ID_SENTINELS = frozenset({"", "null", "undefined", "none"})
# claim fields holding a user id directly, in priority order
ID_CLAIM_FIELDS = ("user_id", "id", "sub")
# claim fields resolved through a user lookup, in priority order
LOOKUP_CLAIM_FIELDS = ("sub", "email", "username")

# (org_id or None for a global scope, claim field, claim value) -> user id
IdentityLookup = Callable[[str | None, str, str], str | None]
CacheKey = tuple[str, str, str]

GLOBAL_CACHE_ORG = "*"

logger = logging.getLogger(__name__)

_lookup_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="identity-lookup")


def normalize_id(raw: Any) -> str | None:
    """Canonical lowercase hyphenated form of a UUID, or None for anything else."""
    if raw is None:
        return None
    if isinstance(raw, uuid.UUID):
        return str(raw)
    if not isinstance(raw, str):
        return None
    value = raw.strip()
    if value.lower() in ID_SENTINELS:
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        return None


def normalize_ids(values: Iterable[Any] | None) -> frozenset[str]:
    if values is None:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    normalized = (normalize_id(item) for item in values)
    return frozenset(item for item in normalized if item is not None)


def resolve_org_scope(claim: Any) -> OrgScope | None:
    if isinstance(claim, str) and claim.strip().lower() == ROOT_ORG_CLAIM:
        return GlobalScope()
    org_id = normalize_id(claim)
    if org_id is None:
        return None
    return SpecificScope(org_id=org_id)


class IdentityResolver:
    """Resolves the editor id behind a set of identity claims.

    Direct id claims win; otherwise the alternate keys are looked up through
    ``lookup(org_id, field, value)`` inside the org named by the claims, and
    successful hits are memoized per org in a bounded LRU. A global scope looks
    up with ``org_id=None``; claims without a usable org scope never hit the lookup.
    """

    def __init__(
        self,
        lookup: IdentityLookup | None = None,
        *,
        cache_size: int = IDENTITY_CACHE_SIZE,
        timeout_s: float = IDENTITY_LOOKUP_TIMEOUT_S,
    ) -> None:
        self._lookup = lookup
        self._cache_size = max(1, cache_size)
        self._timeout_s = timeout_s
        self._cache: OrderedDict[CacheKey, str] = OrderedDict()
        self._lock = RLock()

    @staticmethod
    def _cache_key(org_id: str | None, field: str, value: str) -> CacheKey:
        return (org_id or GLOBAL_CACHE_ORG, field, value.strip().lower())

    def _cached(self, key: CacheKey) -> str | None:
        with self._lock:
            hit = self._cache.get(key)
            if hit is not None:
                self._cache.move_to_end(key)
            return hit

    def _remember(self, key: CacheKey, user_id: str) -> None:
        with self._lock:
            self._cache[key] = user_id
            self._cache.move_to_end(key)
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)

    def _run_lookup(self, org_id: str | None, field: str, value: str) -> str | None:
        if self._lookup is None:
            return None
        future = _lookup_pool.submit(self._lookup, org_id, field, value)
        try:
            return normalize_id(future.result(timeout=self._timeout_s))
        except FutureTimeoutError:
            future.cancel()
            logger.warning("identity lookup timed out", extra={"org_id": org_id, "action": f"lookup:{field}"})
            return None
        except Exception:
            logger.warning(
                "identity lookup failed",
                extra={"org_id": org_id, "action": f"lookup:{field}"},
                exc_info=True,
            )
            return None

    def resolve_actor_id(self, claims: Mapping[str, Any] | None) -> str | None:
        if not claims:
            return None
        for field in ID_CLAIM_FIELDS:
            direct = normalize_id(claims.get(field))
            if direct is not None:
                return direct

        scope = resolve_org_scope(claims.get("org_id"))
        if scope is None:
            return None
        org_id = scope.org_id if isinstance(scope, SpecificScope) else None
        for field in LOOKUP_CLAIM_FIELDS:
            raw = claims.get(field)
            if not isinstance(raw, str) or raw.strip().lower() in ID_SENTINELS:
                continue
            key = self._cache_key(org_id, field, raw)
            cached = self._cached(key)
            if cached is not None:
                return cached
            resolved = self._run_lookup(org_id, field, raw.strip())
            if resolved is not None:
                self._remember(key, resolved)
                return resolved
        return None

    def invalidate(self, value: str, field: str | None = None) -> None:
        """Forget a memoized claim value in every org, for one claim field or all of them."""
        fields = (field,) if field is not None else LOOKUP_CLAIM_FIELDS
        needle = value.strip().lower()
        with self._lock:
            for key in [key for key in self._cache if key[1] in fields and key[2] == needle]:
                del self._cache[key]

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)
