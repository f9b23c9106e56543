"""
Persistence for the permission catalog, roles and assignments.

Every public method opens its own session and runs under the store
deadline (``bounded``). Mutations run in a single transaction; after the
commit and before returning they:

1. notify invalidation listeners with every user whose effective
   permissions may have changed (``None`` means "everyone")
2. append audit entries

A mutation that fails with StoreUnavailable may or may not have committed,
so listeners are notified with ``None`` before the error propagates.

Layer rule: no imports from routes or dependencies.
"""
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, Optional, TypeVar
from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import config
from app.core.database.engine import bounded
from app.core.errors import (
    DuplicateName,
    ModuleNotFound,
    PermissionNotFound,
    RoleInUse,
    RoleNotFound,
    StoreUnavailable,
    SystemRoleProtected,
    UserNotFound,
)
from app.features.permissions.audit import SYSTEM_CONTEXT, AuditContext, AuditLogEntry, AuditRecorder
from app.features.permissions.models import (
    AuditAction,
    Module,
    Permission,
    Role,
    UserRole,
    role_permissions,
)
from app.features.permissions.schemas import (
    ModuleCreate,
    ModuleUpdate,
    PermissionCreate,
    PermissionFilter,
    PermissionUpdate,
    RoleCreate,
    RoleFilter,
    RoleUpdate,
)
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)

T = TypeVar("T")

InvalidationListener = Callable[[Optional[set[str]]], Awaitable[None]]

# Role columns that change what a holder can do
_ACCESS_FIELDS = ("level", "is_active", "is_system_role")
_NON_NULLABLE_ROLE_FIELDS = {"name", "display_name", "level", "is_system_role", "is_active"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; every stored instant is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    expires_at = _as_utc(expires_at)
    return expires_at is not None and expires_at <= now


@dataclass(frozen=True)
class RoleGrant:
    """An active role held by a user, as seen by the resolver."""
    id: str
    name: str
    level: int


@dataclass
class UserRoleAssignments:
    user_id: str
    primary_role: Optional[Role]
    assignments: list[UserRole]


@dataclass
class RolePermissionChanges:
    granted: list[str] = field(default_factory=list)
    revoked: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.granted or self.revoked)


@dataclass
class _Change(Generic[T]):
    """Result of a transaction body: return value, users to invalidate, audit entries."""
    value: T
    affected_users: Optional[set[str]] = field(default_factory=set)
    audit: list[AuditLogEntry] = field(default_factory=list)


class PermissionStore:
    """
    Repository for modules, permissions, roles and role assignments.

    Usage:
        store = PermissionStore(AsyncSessionLocal, AuditRecorder(AsyncSessionLocal))
        store.add_invalidation_listener(resolver.invalidate)
        await store.grant_permission(role_id, permission_id, context)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditRecorder,
        timeout: float = config.STORE_TIMEOUT_SECONDS,
    ):
        self._session_factory = session_factory
        self._audit = audit
        self._timeout = timeout
        self._listeners: list[InvalidationListener] = []

    def add_invalidation_listener(self, listener: InvalidationListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _read(self, operation: str, body: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def run() -> T:
            async with self._session_factory() as session:
                return await body(session)

        return await bounded(operation, run(), self._timeout)

    async def _write(self, operation: str, body: Callable[[AsyncSession], Awaitable[_Change[T]]]) -> T:
        async def run() -> _Change[T]:
            async with self._session_factory() as session:
                async with session.begin():
                    return await body(session)

        try:
            change = await bounded(operation, run(), self._timeout)
        except StoreUnavailable:
            log.error("Store failure during %s; invalidating every cached permission set", operation)
            await self._notify(None)
            raise

        if change.affected_users is None or change.affected_users:
            await self._notify(change.affected_users)
        for entry in change.audit:
            await self._audit.record(entry)
        return change.value

    async def _notify(self, user_ids: Optional[set[str]]) -> None:
        for listener in self._listeners:
            await listener(user_ids)

    @staticmethod
    async def _load_role(session: AsyncSession, role_id: str) -> Role:
        result = await session.execute(select(Role).where(Role.id == role_id))
        role = result.scalars().first()
        if role is None:
            raise RoleNotFound()
        return role

    @staticmethod
    async def _require_user(session: AsyncSession, user_id: str) -> None:
        found = await session.execute(select(User.id).where(User.id == user_id))
        if found.first() is None:
            raise UserNotFound()

    @staticmethod
    async def _taken_user_value(session: AsyncSession, username: str, email: str) -> Optional[str]:
        """The username or email already held by another user, if any."""
        for column, value in ((User.username, username), (User.email, email)):
            if (await session.execute(select(User.id).where(column == value))).first() is not None:
                return value
        return None

    @staticmethod
    async def _ensure_unique_role_name(session: AsyncSession, name: str, exclude_id: Optional[str] = None) -> None:
        stmt = select(Role.id).where(func.lower(Role.name) == name.lower())
        if exclude_id:
            stmt = stmt.where(Role.id != exclude_id)
        if (await session.execute(stmt)).first() is not None:
            raise DuplicateName(name)

    @staticmethod
    async def _role_holder_ids(session: AsyncSession, role_ids: Iterable[str]) -> set[str]:
        """Every user referencing the roles, active or not. Used for invalidation."""
        role_ids = list(role_ids)
        if not role_ids:
            return set()
        primary = await session.execute(select(User.id).where(User.role_id.in_(role_ids)))
        secondary = await session.execute(
            select(UserRole.user_id).where(UserRole.role_id.in_(role_ids), UserRole.is_active.is_(True))
        )
        return set(primary.scalars().all()) | set(secondary.scalars().all())

    @staticmethod
    async def _active_reference_ids(session: AsyncSession, role_id: str) -> set[str]:
        """Active users holding the role as primary or through a live assignment."""
        now = _utcnow()
        primary = await session.execute(
            select(User.id).where(User.role_id == role_id, User.is_active.is_(True))
        )
        secondary = await session.execute(
            select(UserRole.user_id, UserRole.expires_at)
            .join(User, User.id == UserRole.user_id)
            .where(
                UserRole.role_id == role_id,
                UserRole.is_active.is_(True),
                User.is_active.is_(True),
            )
        )
        ids = set(primary.scalars().all())
        ids.update(user_id for user_id, expires_at in secondary.all() if not _is_expired(expires_at, now))
        return ids

    @staticmethod
    async def _permission_holder_ids(session: AsyncSession, permission_id: str) -> set[str]:
        role_ids = await session.execute(
            select(role_permissions.c.role_id).where(role_permissions.c.permission_id == permission_id)
        )
        return await PermissionStore._role_holder_ids(session, role_ids.scalars().all())

    # ------------------------------------------------------------------
    # Resolver reads
    # ------------------------------------------------------------------

    async def get_user_active_roles(self, user_id: str) -> list[RoleGrant]:
        """
        Active roles held by the user: the primary role if active, plus every
        active, unexpired secondary assignment whose role is active.
        Sorted by level, highest first.
        """
        async def body(session: AsyncSession) -> list[RoleGrant]:
            user = (await session.execute(select(User.id, User.role_id).where(User.id == user_id))).first()
            if user is None:
                raise UserNotFound()

            grants: dict[str, RoleGrant] = {}
            if user.role_id:
                primary = await session.execute(
                    select(Role.id, Role.name, Role.level).where(Role.id == user.role_id, Role.is_active.is_(True))
                )
                for row in primary.all():
                    grants[row.id] = RoleGrant(row.id, row.name, row.level)

            now = _utcnow()
            secondary = await session.execute(
                select(Role.id, Role.name, Role.level, UserRole.expires_at)
                .join(UserRole, UserRole.role_id == Role.id)
                .where(
                    UserRole.user_id == user_id,
                    UserRole.is_active.is_(True),
                    Role.is_active.is_(True),
                )
            )
            for row in secondary.all():
                if not _is_expired(row.expires_at, now):
                    grants[row.id] = RoleGrant(row.id, row.name, row.level)

            return sorted(grants.values(), key=lambda g: (-g.level, g.name))

        return await self._read("get_user_active_roles", body)

    async def get_permissions_for_roles(self, role_ids: Iterable[str]) -> dict[str, str]:
        """Map of permission key -> module name granted to any of the roles (active catalog only)."""
        role_ids = list(role_ids)
        if not role_ids:
            return {}

        async def body(session: AsyncSession) -> dict[str, str]:
            result = await session.execute(
                select(Permission.key, Module.name)
                .join(role_permissions, role_permissions.c.permission_id == Permission.id)
                .join(Module, Module.id == Permission.module_id)
                .where(
                    role_permissions.c.role_id.in_(role_ids),
                    Permission.is_active.is_(True),
                    Module.is_active.is_(True),
                )
                .distinct()
            )
            return {key: module_name for key, module_name in result.all()}

        return await self._read("get_permissions_for_roles", body)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[User]:
        async def body(session: AsyncSession) -> Optional[User]:
            return await session.get(User, user_id)

        return await self._read("get_user", body)

    async def create_user(
        self,
        username: str,
        email: str,
        role_id: Optional[str] = None,
        two_factor_enabled: bool = False,
        is_active: bool = True,
    ) -> User:
        """Insert a user record. Account provisioning proper belongs to the login service."""
        async def body(session: AsyncSession) -> _Change[User]:
            if role_id is not None:
                await self._load_role(session, role_id)
            taken = await self._taken_user_value(session, username, email)
            if taken is not None:
                raise DuplicateName(taken)
            user = User(
                username=username,
                email=email,
                role_id=role_id,
                two_factor_enabled=two_factor_enabled,
                is_active=is_active,
            )
            session.add(user)
            await session.flush()
            await session.refresh(user)
            return _Change(user)

        async def taken(session: AsyncSession) -> Optional[str]:
            return await self._taken_user_value(session, username, email)

        try:
            return await self._write("create_user", body)
        except IntegrityError:
            # A concurrent insert claimed the name between the check and the commit
            clash = await self._read("create_user", taken)
            if clash is None:
                raise
            raise DuplicateName(clash)

    async def set_primary_role(
        self,
        user_id: str,
        role_id: Optional[str],
        context: AuditContext = SYSTEM_CONTEXT,
    ) -> bool:
        """Point the user's primary role at ``role_id`` (None clears it)."""
        async def body(session: AsyncSession) -> _Change[bool]:
            user = await session.get(User, user_id)
            if user is None:
                raise UserNotFound()
            if role_id is not None:
                await self._load_role(session, role_id)
            if user.role_id == role_id:
                return _Change(False)

            previous = user.role_id
            user.role_id = role_id
            if role_id is None:
                entry = AuditLogEntry.build(
                    AuditAction.USER_ROLE_REMOVED, context,
                    target_user_id=user_id, role_id=previous, details={"primary": True},
                )
            else:
                entry = AuditLogEntry.build(
                    AuditAction.USER_ROLE_ASSIGNED, context,
                    target_user_id=user_id, role_id=role_id,
                    details={"primary": True, "previous_role_id": previous},
                )
            return _Change(True, {user_id}, [entry])

        return await self._write("set_primary_role", body)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def list_roles(self, filters: RoleFilter) -> list[Role]:
        async def body(session: AsyncSession) -> list[Role]:
            stmt = select(Role)
            if not filters.include_inactive:
                stmt = stmt.where(Role.is_active.is_(True))
            if filters.is_system_role is not None:
                stmt = stmt.where(Role.is_system_role.is_(filters.is_system_role))
            if filters.search:
                pattern = f"%{filters.search.lower()}%"
                stmt = stmt.where(or_(func.lower(Role.name).like(pattern), func.lower(Role.display_name).like(pattern)))
            stmt = stmt.order_by(Role.level.desc(), Role.name).offset(filters.skip).limit(filters.limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

        return await self._read("list_roles", body)

    async def get_role(self, role_id: str) -> Role:
        async def body(session: AsyncSession) -> Role:
            return await self._load_role(session, role_id)

        return await self._read("get_role", body)

    async def create_role(self, data: RoleCreate, context: AuditContext = SYSTEM_CONTEXT) -> Role:
        async def body(session: AsyncSession) -> _Change[Role]:
            await self._ensure_unique_role_name(session, data.name)
            role = Role(**data.model_dump())
            session.add(role)
            await session.flush()
            await session.refresh(role)
            entry = AuditLogEntry.build(
                AuditAction.ROLE_CREATED, context,
                role_id=role.id,
                details={"name": role.name, "level": role.level, "is_system_role": role.is_system_role},
            )
            return _Change(role, set(), [entry])

        try:
            return await self._write("create_role", body)
        except IntegrityError:
            raise DuplicateName(data.name)

    async def update_role(self, role_id: str, data: RoleUpdate, context: AuditContext = SYSTEM_CONTEXT) -> Role:
        changes = data.model_dump(exclude_unset=True)

        async def body(session: AsyncSession) -> _Change[Role]:
            role = await self._load_role(session, role_id)
            if changes.get("name") and changes["name"].lower() != role.name.lower():
                await self._ensure_unique_role_name(session, changes["name"], exclude_id=role.id)

            diff: dict[str, dict[str, Any]] = {}
            for key, value in changes.items():
                if value is None and key in _NON_NULLABLE_ROLE_FIELDS:
                    continue
                before = getattr(role, key)
                if before != value:
                    diff[key] = {"from": before, "to": value}
                    setattr(role, key, value)

            if not diff:
                return _Change(role)

            await session.flush()
            await session.refresh(role)

            affected: set[str] = set()
            if any(key in diff for key in _ACCESS_FIELDS):
                affected = await self._role_holder_ids(session, [role.id])
            entry = AuditLogEntry.build(
                AuditAction.ROLE_UPDATED, context, role_id=role.id, details={"name": role.name, "changes": diff},
            )
            return _Change(role, affected, [entry])

        try:
            return await self._write("update_role", body)
        except IntegrityError:
            raise DuplicateName(changes.get("name") or role_id)

    async def delete_role(self, role_id: str, hard: bool = False, context: AuditContext = SYSTEM_CONTEXT) -> None:
        """
        Soft delete (``is_active=False``) by default; ``hard`` removes the row
        together with its grants and assignments. Both refuse system roles
        and roles still referenced by an active user.
        """
        async def body(session: AsyncSession) -> _Change[None]:
            role = await self._load_role(session, role_id)
            if role.is_system_role:
                raise SystemRoleProtected()

            in_use = await self._active_reference_ids(session, role_id)
            if in_use:
                raise RoleInUse(len(in_use))

            holders = await self._role_holder_ids(session, [role_id])
            if hard:
                await session.execute(delete(role_permissions).where(role_permissions.c.role_id == role_id))
                await session.execute(delete(UserRole).where(UserRole.role_id == role_id))
                await session.execute(update(User).where(User.role_id == role_id).values(role_id=None))
                await session.execute(delete(Role).where(Role.id == role_id))
            else:
                role.is_active = False

            log.info("Deleted role %s (hard=%s)", role.name, hard)
            entry = AuditLogEntry.build(
                AuditAction.ROLE_DELETED, context,
                role_id=role_id, details={"name": role.name, "hard": hard},
            )
            return _Change(None, holders, [entry])

        await self._write("delete_role", body)

    # ------------------------------------------------------------------
    # Catalog: modules and permissions
    # ------------------------------------------------------------------

    async def list_modules(self, include_inactive: bool = False) -> list[Module]:
        async def body(session: AsyncSession) -> list[Module]:
            stmt = select(Module)
            if not include_inactive:
                stmt = stmt.where(Module.is_active.is_(True))
            result = await session.execute(stmt.order_by(Module.order_index, Module.name))
            return list(result.scalars().all())

        return await self._read("list_modules", body)

    async def get_module_by_name(self, name: str) -> Optional[Module]:
        async def body(session: AsyncSession) -> Optional[Module]:
            result = await session.execute(select(Module).where(Module.name == name))
            return result.scalars().first()

        return await self._read("get_module_by_name", body)

    async def create_module(self, data: ModuleCreate) -> Module:
        async def body(session: AsyncSession) -> _Change[Module]:
            existing = await session.execute(select(Module.id).where(Module.name == data.name))
            if existing.first() is not None:
                raise DuplicateName(data.name)
            module = Module(**data.model_dump())
            session.add(module)
            await session.flush()
            await session.refresh(module)
            return _Change(module)

        try:
            return await self._write("create_module", body)
        except IntegrityError:
            raise DuplicateName(data.name)

    async def update_module(self, module_id: str, data: ModuleUpdate) -> Module:
        """Toggling ``is_active`` changes every holder's effective set, so it invalidates all."""
        changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}

        async def body(session: AsyncSession) -> _Change[Module]:
            module = await session.get(Module, module_id)
            if module is None:
                raise ModuleNotFound()
            toggled = "is_active" in changes and changes["is_active"] != module.is_active
            for key, value in changes.items():
                setattr(module, key, value)
            await session.flush()
            await session.refresh(module)
            return _Change(module, None if toggled else set())

        return await self._write("update_module", body)

    async def list_permissions(self, filters: PermissionFilter) -> list[Permission]:
        async def body(session: AsyncSession) -> list[Permission]:
            stmt = select(Permission).join(Module, Module.id == Permission.module_id)
            if filters.module:
                stmt = stmt.where(Module.name == filters.module)
            if not filters.include_inactive:
                stmt = stmt.where(Permission.is_active.is_(True), Module.is_active.is_(True))
            if filters.search:
                pattern = f"%{filters.search.lower()}%"
                stmt = stmt.where(or_(
                    func.lower(Permission.key).like(pattern),
                    func.lower(Permission.display_name).like(pattern),
                ))
            stmt = stmt.order_by(Module.order_index, Permission.key).offset(filters.skip).limit(filters.limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

        return await self._read("list_permissions", body)

    async def get_permission_by_key(self, key: str) -> Optional[Permission]:
        async def body(session: AsyncSession) -> Optional[Permission]:
            result = await session.execute(select(Permission).where(Permission.key == key))
            return result.scalars().first()

        return await self._read("get_permission_by_key", body)

    async def create_permission(self, data: PermissionCreate) -> Permission:
        async def body(session: AsyncSession) -> _Change[Permission]:
            module = await session.get(Module, data.module_id)
            if module is None:
                raise ModuleNotFound()
            key = f"{module.name}.{data.action}"
            existing = await session.execute(select(Permission.id).where(Permission.key == key))
            if existing.first() is not None:
                raise DuplicateName(key)
            permission = Permission(
                key=key,
                module_id=module.id,
                display_name=data.display_name,
                description=data.description,
            )
            session.add(permission)
            await session.flush()
            await session.refresh(permission)
            await session.refresh(permission, ["module"])
            return _Change(permission)

        try:
            return await self._write("create_permission", body)
        except IntegrityError:
            raise DuplicateName(data.action)

    async def update_permission(self, permission_id: str, data: PermissionUpdate) -> Permission:
        changes = data.model_dump(exclude_unset=True)

        async def body(session: AsyncSession) -> _Change[Permission]:
            permission = await session.get(Permission, permission_id)
            if permission is None:
                raise PermissionNotFound()
            toggled = changes.get("is_active") is not None and changes["is_active"] != permission.is_active
            for key, value in changes.items():
                if value is None and key in ("display_name", "is_active"):
                    continue
                setattr(permission, key, value)
            await session.flush()
            await session.refresh(permission)
            await session.refresh(permission, ["module"])
            affected = await self._permission_holder_ids(session, permission.id) if toggled else set()
            return _Change(permission, affected)

        return await self._write("update_permission", body)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    async def get_role_permissions(self, role_id: str) -> list[Permission]:
        async def body(session: AsyncSession) -> list[Permission]:
            role = await self._load_role(session, role_id)
            return list(role.permissions)

        return await self._read("get_role_permissions", body)

    async def grant_permission(
        self,
        role_id: str,
        permission_id: str,
        context: AuditContext = SYSTEM_CONTEXT,
    ) -> bool:
        """Grant a permission to a role. Returns False if it was already granted."""
        async def body(session: AsyncSession) -> _Change[bool]:
            role = (await session.execute(select(Role.id, Role.name).where(Role.id == role_id))).first()
            if role is None:
                raise RoleNotFound()
            permission = (await session.execute(
                select(Permission.id, Permission.key).where(Permission.id == permission_id)
            )).first()
            if permission is None:
                raise PermissionNotFound()

            existing = await session.execute(
                select(role_permissions).where(
                    and_(
                        role_permissions.c.role_id == role_id,
                        role_permissions.c.permission_id == permission_id,
                    )
                )
            )
            if existing.first() is not None:
                return _Change(False)

            await session.execute(insert(role_permissions).values(role_id=role_id, permission_id=permission_id))
            entry = AuditLogEntry.build(
                AuditAction.PERMISSION_GRANTED, context,
                role_id=role_id, permission_id=permission_id,
                details={"role": role.name, "permission": permission.key},
            )
            return _Change(True, await self._role_holder_ids(session, [role_id]), [entry])

        async def granted(session: AsyncSession) -> bool:
            result = await session.execute(
                select(role_permissions.c.role_id).where(
                    role_permissions.c.role_id == role_id,
                    role_permissions.c.permission_id == permission_id,
                )
            )
            return result.first() is not None

        try:
            return await self._write("grant_permission", body)
        except IntegrityError:
            # Only an identical concurrent grant makes this a no-op
            if not await self._read("grant_permission", granted):
                raise
            log.debug("Grant %s -> %s raced with an identical grant", permission_id, role_id)
            return False

    async def revoke_permission(
        self,
        role_id: str,
        permission_id: str,
        context: AuditContext = SYSTEM_CONTEXT,
    ) -> bool:
        """Revoke a permission from a role. Revoking a pair that was never granted is a no-op."""
        async def body(session: AsyncSession) -> _Change[bool]:
            result = await session.execute(
                delete(role_permissions).where(
                    and_(
                        role_permissions.c.role_id == role_id,
                        role_permissions.c.permission_id == permission_id,
                    )
                )
            )
            if not result.rowcount:
                return _Change(False)

            entry = AuditLogEntry.build(
                AuditAction.PERMISSION_REVOKED, context, role_id=role_id, permission_id=permission_id,
            )
            return _Change(True, await self._role_holder_ids(session, [role_id]), [entry])

        return await self._write("revoke_permission", body)

    async def set_role_permissions(
        self,
        role_id: str,
        permission_ids: Iterable[str],
        context: AuditContext = SYSTEM_CONTEXT,
    ) -> RolePermissionChanges:
        """
        Replace a role's grants with exactly ``permission_ids``.

        All-or-nothing: an unknown permission id aborts the whole transaction.
        """
        wanted = set(permission_ids)

        async def body(session: AsyncSession) -> _Change[RolePermissionChanges]:
            await self._load_role(session, role_id)
            if wanted:
                found = await session.execute(select(Permission.id).where(Permission.id.in_(wanted)))
                missing = wanted - set(found.scalars().all())
                if missing:
                    raise PermissionNotFound(details={"missing": sorted(missing)})

            current_rows = await session.execute(
                select(role_permissions.c.permission_id).where(role_permissions.c.role_id == role_id)
            )
            current = set(current_rows.scalars().all())
            changes = RolePermissionChanges(granted=sorted(wanted - current), revoked=sorted(current - wanted))
            if not changes.changed:
                return _Change(changes)

            if changes.revoked:
                await session.execute(
                    delete(role_permissions).where(
                        role_permissions.c.role_id == role_id,
                        role_permissions.c.permission_id.in_(changes.revoked),
                    )
                )
            if changes.granted:
                await session.execute(
                    insert(role_permissions),
                    [{"role_id": role_id, "permission_id": pid} for pid in changes.granted],
                )

            audit = [
                AuditLogEntry.build(AuditAction.PERMISSION_GRANTED, context, role_id=role_id, permission_id=pid,
                                    details={"bulk": True})
                for pid in changes.granted
            ] + [
                AuditLogEntry.build(AuditAction.PERMISSION_REVOKED, context, role_id=role_id, permission_id=pid,
                                    details={"bulk": True})
                for pid in changes.revoked
            ]
            return _Change(changes, await self._role_holder_ids(session, [role_id]), audit)

        return await self._write("set_role_permissions", body)

    # ------------------------------------------------------------------
    # User role assignments
    # ------------------------------------------------------------------

    async def get_user_role_assignments(self, user_id: str) -> UserRoleAssignments:
        async def body(session: AsyncSession) -> UserRoleAssignments:
            user = await session.get(User, user_id)
            if user is None:
                raise UserNotFound()
            primary = await session.get(Role, user.role_id) if user.role_id else None
            result = await session.execute(
                select(UserRole).where(UserRole.user_id == user_id).order_by(UserRole.assigned_at)
            )
            return UserRoleAssignments(user_id, primary, list(result.scalars().all()))

        return await self._read("get_user_role_assignments", body)

    async def assign_user_role(
        self,
        user_id: str,
        role_id: str,
        assigned_by: Optional[str],
        expires_at: Optional[datetime] = None,
        context: AuditContext = SYSTEM_CONTEXT,
    ) -> bool:
        """
        Assign a secondary role. Re-assigning an active pair is a no-op;
        an inactive pair is reactivated in place.
        """
        expires_at = _as_utc(expires_at)

        async def body(session: AsyncSession) -> _Change[bool]:
            await self._require_user(session, user_id)
            if assigned_by is not None:
                await self._require_user(session, assigned_by)
            role = (await session.execute(select(Role.id, Role.name).where(Role.id == role_id))).first()
            if role is None:
                raise RoleNotFound()

            result = await session.execute(
                select(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
            )
            assignment = result.scalars().first()
            if assignment is not None and assignment.is_active and _as_utc(assignment.expires_at) == expires_at:
                return _Change(False)

            if assignment is None:
                session.add(UserRole(
                    user_id=user_id,
                    role_id=role_id,
                    assigned_by=assigned_by,
                    expires_at=expires_at,
                ))
            else:
                assignment.is_active = True
                assignment.assigned_by = assigned_by
                assignment.assigned_at = _utcnow()
                assignment.expires_at = expires_at

            entry = AuditLogEntry.build(
                AuditAction.USER_ROLE_ASSIGNED, context,
                target_user_id=user_id, role_id=role_id,
                details={"role": role.name, "expires_at": expires_at.isoformat() if expires_at else None},
            )
            return _Change(True, {user_id}, [entry])

        async def assigned(session: AsyncSession) -> bool:
            result = await session.execute(
                select(UserRole.id).where(
                    UserRole.user_id == user_id,
                    UserRole.role_id == role_id,
                    UserRole.is_active.is_(True),
                )
            )
            return result.first() is not None

        try:
            return await self._write("assign_user_role", body)
        except IntegrityError:
            # Only an identical concurrent assignment makes this a no-op
            if not await self._read("assign_user_role", assigned):
                raise
            log.debug("Assignment %s -> %s raced with an identical assignment", role_id, user_id)
            return False

    async def remove_user_role(
        self,
        user_id: str,
        role_id: str,
        context: AuditContext = SYSTEM_CONTEXT,
    ) -> bool:
        """Deactivate a secondary assignment. Missing or inactive pairs are a no-op."""
        async def body(session: AsyncSession) -> _Change[bool]:
            result = await session.execute(
                update(UserRole)
                .where(
                    UserRole.user_id == user_id,
                    UserRole.role_id == role_id,
                    UserRole.is_active.is_(True),
                )
                .values(is_active=False)
            )
            if not result.rowcount:
                return _Change(False)
            entry = AuditLogEntry.build(
                AuditAction.USER_ROLE_REMOVED, context, target_user_id=user_id, role_id=role_id,
            )
            return _Change(True, {user_id}, [entry])

        return await self._write("remove_user_role", body)

    async def deactivate_expired_assignments(self, context: AuditContext = SYSTEM_CONTEXT) -> int:
        """Flip active assignments past their ``expires_at`` to inactive. Returns how many."""
        async def body(session: AsyncSession) -> _Change[int]:
            now = _utcnow()
            result = await session.execute(
                select(UserRole).where(UserRole.is_active.is_(True), UserRole.expires_at.is_not(None))
            )
            expired = [a for a in result.scalars().all() if _is_expired(a.expires_at, now)]
            for assignment in expired:
                assignment.is_active = False
            audit = [
                AuditLogEntry.build(
                    AuditAction.USER_ROLE_REMOVED, context,
                    target_user_id=a.user_id, role_id=a.role_id, details={"reason": "expired"},
                )
                for a in expired
            ]
            return _Change(len(expired), {a.user_id for a in expired}, audit)

        return await self._write("deactivate_expired_assignments", body)
