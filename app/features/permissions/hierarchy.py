"""
Role hierarchy checks for user-management actions.
"""
from app.features.permissions.resolver import PermissionResolver


class RoleHierarchyGuard:
    """
    Decides whether one user may manage another.

    A user may always manage themselves. Otherwise the actor's highest active
    role level must be strictly greater than the target's. An actor without
    an active role manages nobody; a target without one is outranked by any
    actor that has one.
    """

    def __init__(self, resolver: PermissionResolver):
        self._resolver = resolver

    async def can_manage(self, actor_user_id: str, target_user_id: str) -> bool:
        if actor_user_id == target_user_id:
            return True

        actor = await self._resolver.resolve(actor_user_id)
        if actor.max_level is None:
            return False

        target = await self._resolver.resolve(target_user_id)
        if target.max_level is None:
            return True
        return actor.max_level > target.max_level
