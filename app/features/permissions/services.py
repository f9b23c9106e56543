"""
Wiring for the access control services.

The app lifespan builds one ``AccessControl`` and installs it on
``app.state``; tests build their own against a throwaway database.
"""
from dataclasses import dataclass
from typing import Any, Optional
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import config
from app.features.permissions.audit import AuditRecorder
from app.features.permissions.cache import MemoryPermissionCache, PermissionCache
from app.features.permissions.hierarchy import RoleHierarchyGuard
from app.features.permissions.resolver import PermissionResolver
from app.features.permissions.store import PermissionStore


@dataclass
class AccessControl:
    store: PermissionStore
    resolver: PermissionResolver
    guard: RoleHierarchyGuard
    audit: AuditRecorder
    cache: PermissionCache

    @classmethod
    def build(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[PermissionCache] = None,
        timeout: float = config.STORE_TIMEOUT_SECONDS,
    ) -> "AccessControl":
        if cache is None:
            cache = MemoryPermissionCache(
                ttl_seconds=config.PERMISSION_CACHE_TTL_SECONDS,
                max_size=config.PERMISSION_CACHE_MAX_SIZE,
            )
        audit = AuditRecorder(session_factory, timeout=timeout)
        store = PermissionStore(session_factory, audit, timeout=timeout)
        resolver = PermissionResolver(store, cache)
        store.add_invalidation_listener(resolver.invalidate)
        return cls(
            store=store,
            resolver=resolver,
            guard=RoleHierarchyGuard(resolver),
            audit=audit,
            cache=cache,
        )

    def install(self, state: Any) -> None:
        state.store = self.store
        state.resolver = self.resolver
        state.guard = self.guard
        state.audit = self.audit
        state.cache = self.cache
