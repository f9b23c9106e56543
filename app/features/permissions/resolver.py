"""
Effective permission resolution.

A user's effective permission set is the union of the permissions granted to
every active role they hold (primary and secondary). Any role at or above
``SUPER_ADMIN_LEVEL`` short-circuits to AllPermissions without reading grants.
"""
import enum
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from app.core import config
from app.features.permissions.cache import PermissionCache
from app.features.permissions.store import PermissionStore, RoleGrant
from app.utils import get_logger


log = get_logger(__name__)


class PrivilegeTier(str, enum.Enum):
    """Canonical privilege tier, derived from role level only."""
    SUPER_ADMIN = "super_admin"
    STANDARD = "standard"

    @classmethod
    def for_level(cls, level: Optional[int], threshold: int) -> "PrivilegeTier":
        if level is not None and level >= threshold:
            return cls.SUPER_ADMIN
        return cls.STANDARD


@dataclass(frozen=True)
class EffectivePermissionSet:
    user_id: str
    role_names: List[str] = field(default_factory=list)
    max_level: Optional[int] = None
    tier: PrivilegeTier = PrivilegeTier.STANDARD
    grants: Dict[str, str] = field(default_factory=dict)

    @property
    def is_super_admin(self) -> bool:
        return self.tier is PrivilegeTier.SUPER_ADMIN

    @property
    def primary_role_name(self) -> Optional[str]:
        """Name of the highest-level role, used in denial details."""
        return self.role_names[0] if self.role_names else None

    def allows(self, permission_key: str) -> bool:
        return permission_key in self.grants

    def can_access_module(self, module_name: str) -> bool:
        return module_name in self.grants.values()

    def available_actions(self, module_name: str) -> List[str]:
        """Actions held inside one module. Never reveals other modules."""
        return sorted(
            key.rsplit(".", 1)[-1]
            for key, module in self.grants.items()
            if module == module_name
        )

    def permission_keys(self) -> List[str]:
        return sorted(self.grants)

    def modules(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for module in sorted(set(self.grants.values())):
            grouped[module] = self.available_actions(module)
        return grouped


@dataclass(frozen=True)
class AllPermissions(EffectivePermissionSet):
    """SuperAdmin sentinel: every check succeeds."""
    tier: PrivilegeTier = PrivilegeTier.SUPER_ADMIN

    def allows(self, permission_key: str) -> bool:
        return True

    def can_access_module(self, module_name: str) -> bool:
        return True

    def available_actions(self, module_name: str) -> List[str]:
        return ["*"]

    def permission_keys(self) -> List[str]:
        return ["*"]

    def modules(self) -> Dict[str, List[str]]:
        return {"*": ["*"]}


class PermissionResolver:
    """
    Computes and caches effective permission sets.

    Register ``invalidate`` as a store listener so every committed mutation
    drops the affected entries before the mutation returns:

        resolver = PermissionResolver(store, MemoryPermissionCache())
        store.add_invalidation_listener(resolver.invalidate)
    """

    def __init__(
        self,
        store: PermissionStore,
        cache: PermissionCache,
        super_admin_level: int = config.SUPER_ADMIN_LEVEL,
    ):
        self._store = store
        self._cache = cache
        self._super_admin_level = super_admin_level

    async def resolve(self, user_id: str) -> EffectivePermissionSet:
        cached = await self._cache.get(user_id)
        if cached is not None:
            return cached

        # Read before the store so a concurrent invalidation voids this result
        epoch = await self._cache.epoch()
        roles = await self._store.get_user_active_roles(user_id)
        result = await self._compute(user_id, roles)
        if not await self._cache.set(user_id, result, epoch):
            log.debug("Discarded stale permission set for user %s", user_id)
        return result

    async def _compute(self, user_id: str, roles: List[RoleGrant]) -> EffectivePermissionSet:
        role_names = [role.name for role in roles]
        max_level = max((role.level for role in roles), default=None)
        tier = PrivilegeTier.for_level(max_level, self._super_admin_level)

        if tier is PrivilegeTier.SUPER_ADMIN:
            return AllPermissions(user_id=user_id, role_names=role_names, max_level=max_level)

        grants = await self._store.get_permissions_for_roles(role.id for role in roles)
        return EffectivePermissionSet(
            user_id=user_id,
            role_names=role_names,
            max_level=max_level,
            tier=tier,
            grants=grants,
        )

    async def has_permission(self, user_id: str, permission_key: str) -> bool:
        return (await self.resolve(user_id)).allows(permission_key)

    async def has_module_access(self, user_id: str, module_name: str) -> bool:
        return (await self.resolve(user_id)).can_access_module(module_name)

    async def invalidate(self, user_ids: Optional[Iterable[str]]) -> None:
        await self._cache.invalidate(user_ids)
