"""Tests for app/features/permissions/resolver.py -- PermissionResolver.

Covers:
- effective set is the union across primary and secondary roles
- inactive modules, permissions and roles drop out
- SuperAdmin short-circuit (no grants needed, no grant lookup)
- grants and revokes are visible on the very next resolve
- the injected cache is the one the resolver fills
- a resolve racing with an invalidation never caches stale data
- store failures surface as StoreUnavailable and are not cached
"""

import asyncio

import pytest

from app.core.database.engine import build_engine, build_session_factory, init_db
from app.core.errors import StoreUnavailable, UserNotFound
from app.features.permissions.cache import MemoryPermissionCache
from app.features.permissions.resolver import AllPermissions, PrivilegeTier
from app.features.permissions.schemas import ModuleUpdate, PermissionUpdate, RoleUpdate
from app.features.permissions.services import AccessControl
from scripts.seed_permissions import seed_catalog, seed_roles


class TestUnion:
    async def test_primary_and_secondary_roles_are_combined(self, store, resolver, roles, make_user):
        user = await make_user(roles["viewer"])
        await store.assign_user_role(user.id, roles["advertiser"].id, assigned_by=None)

        permissions = await resolver.resolve(user.id)

        assert permissions.role_names == ["advertiser", "viewer"]
        assert permissions.max_level == 3
        assert permissions.tier is PrivilegeTier.STANDARD
        assert permissions.allows("campaigns.create")  # from advertiser
        assert permissions.allows("reports.read")  # from both
        assert not permissions.allows("users.read")

    async def test_user_without_roles_has_nothing(self, resolver, make_user):
        user = await make_user()

        permissions = await resolver.resolve(user.id)

        assert permissions.role_names == []
        assert permissions.max_level is None
        assert permissions.permission_keys() == []
        assert permissions.primary_role_name is None

    async def test_available_actions_are_scoped_to_module(self, resolver, roles, make_user):
        user = await make_user(roles["manager"])

        permissions = await resolver.resolve(user.id)

        assert permissions.available_actions("campaigns") == ["create", "read", "update"]
        assert permissions.available_actions("settings") == []
        assert permissions.can_access_module("reports")
        assert not permissions.can_access_module("settings")

    async def test_unknown_user(self, resolver):
        with pytest.raises(UserNotFound):
            await resolver.resolve("nobody")


class TestInactiveCatalog:
    async def test_inactive_module_hides_its_permissions(self, store, resolver, roles, make_user):
        user = await make_user(roles["viewer"])
        assert await resolver.has_module_access(user.id, "reports")

        module = await store.get_module_by_name("reports")
        await store.update_module(module.id, ModuleUpdate(is_active=False))

        assert not await resolver.has_module_access(user.id, "reports")
        assert not await resolver.has_permission(user.id, "reports.read")
        assert await resolver.has_permission(user.id, "campaigns.read")

    async def test_inactive_permission_is_excluded(self, store, resolver, roles, catalog, make_user):
        user = await make_user(roles["viewer"])
        assert await resolver.has_permission(user.id, "ads.read")

        await store.update_permission(catalog["ads.read"].id, PermissionUpdate(is_active=False))

        assert not await resolver.has_permission(user.id, "ads.read")

    async def test_deactivated_role_is_excluded(self, store, resolver, roles, make_user):
        user = await make_user(roles["viewer"])
        await store.assign_user_role(user.id, roles["advertiser"].id, assigned_by=None)

        await store.update_role(roles["advertiser"].id, RoleUpdate(is_active=False))

        permissions = await resolver.resolve(user.id)
        assert permissions.role_names == ["viewer"]
        assert not permissions.allows("campaigns.create")


class TestSuperAdmin:
    async def test_level_ten_role_allows_anything(self, resolver, roles, make_user, monkeypatch):
        """A role at the threshold with zero grants still passes every check."""
        user = await make_user(roles["super_admin"])

        async def no_grant_lookup(role_ids):
            raise AssertionError("grants must not be read for super admins")

        monkeypatch.setattr(resolver._store, "get_permissions_for_roles", no_grant_lookup)

        permissions = await resolver.resolve(user.id)

        assert isinstance(permissions, AllPermissions)
        assert permissions.is_super_admin
        assert permissions.allows("anything.whatsoever")
        assert permissions.can_access_module("nonexistent")
        assert permissions.permission_keys() == ["*"]
        assert await resolver.has_permission(user.id, "anything.whatsoever")

    async def test_secondary_super_admin_role_counts(self, store, resolver, roles, make_user):
        user = await make_user(roles["viewer"])
        await store.assign_user_role(user.id, roles["super_admin"].id, assigned_by=None)

        assert (await resolver.resolve(user.id)).is_super_admin

    async def test_level_below_threshold_is_standard(self, resolver, roles, make_user):
        user = await make_user(roles["admin"])

        permissions = await resolver.resolve(user.id)

        assert permissions.tier is PrivilegeTier.STANDARD
        assert not permissions.allows("anything.whatsoever")


class TestFreshness:
    async def test_grant_visible_on_next_resolve(self, store, resolver, roles, catalog, make_user):
        user = await make_user(roles["manager"])
        assert not await resolver.has_permission(user.id, "campaigns.delete")

        await store.grant_permission(roles["manager"].id, catalog["campaigns.delete"].id)

        assert await resolver.has_permission(user.id, "campaigns.delete")

    async def test_revoke_visible_on_next_resolve(self, store, resolver, roles, catalog, make_user):
        user = await make_user(roles["manager"])
        assert await resolver.has_permission(user.id, "campaigns.update")

        await store.revoke_permission(roles["manager"].id, catalog["campaigns.update"].id)

        assert not await resolver.has_permission(user.id, "campaigns.update")

    async def test_assignment_visible_on_next_resolve(self, store, resolver, roles, make_user):
        user = await make_user(roles["viewer"])
        assert not await resolver.has_permission(user.id, "users.read")

        await store.assign_user_role(user.id, roles["manager"].id, assigned_by=None)
        assert await resolver.has_permission(user.id, "users.read")

        await store.remove_user_role(user.id, roles["manager"].id)
        assert not await resolver.has_permission(user.id, "users.read")

    async def test_cache_hit_skips_store(self, store, resolver, roles, make_user, monkeypatch):
        user = await make_user(roles["viewer"])
        await resolver.resolve(user.id)

        calls = []
        original = store.get_user_active_roles

        async def counting(user_id):
            calls.append(user_id)
            return await original(user_id)

        monkeypatch.setattr(store, "get_user_active_roles", counting)
        await resolver.resolve(user.id)

        assert calls == []

    async def test_racing_resolve_does_not_cache_stale_set(
        self, store, resolver, cache, roles, catalog, make_user, monkeypatch
    ):
        """A revoke landing mid-resolve must not leave the pre-revoke set cached."""
        user = await make_user(roles["manager"])
        original = store.get_permissions_for_roles

        async def read_then_revoke(role_ids):
            grants = await original(role_ids)
            monkeypatch.setattr(store, "get_permissions_for_roles", original)
            await store.revoke_permission(roles["manager"].id, catalog["campaigns.update"].id)
            return grants

        monkeypatch.setattr(store, "get_permissions_for_roles", read_then_revoke)

        stale = await resolver.resolve(user.id)
        assert stale.allows("campaigns.update")
        assert await cache.get(user.id) is None

        assert not await resolver.has_permission(user.id, "campaigns.update")
        assert not (await cache.get(user.id)).allows("campaigns.update")


class TestStoreFailure:
    async def test_failure_surfaces_and_is_not_cached(self, store, resolver, cache, roles, make_user, monkeypatch):
        user = await make_user(roles["manager"])

        async def unavailable(user_id):
            raise StoreUnavailable("Permission store timed out during get_user_active_roles")

        monkeypatch.setattr(store, "get_user_active_roles", unavailable)

        with pytest.raises(StoreUnavailable):
            await resolver.resolve(user.id)
        assert await cache.get(user.id) is None

        monkeypatch.undo()
        await resolver.resolve(user.id)
        assert await cache.get(user.id) is not None


class TestCacheWiring:
    async def test_injected_cache_is_used(self, services, resolver, cache, roles, make_user):
        assert services.cache is cache
        assert resolver._cache is cache

        user = await make_user(roles["viewer"])
        await resolver.resolve(user.id)

        assert await cache.get(user.id) is not None


class TestConcurrentRevoke:
    async def test_gathered_resolve_and_revoke_leave_nothing_stale(self, tmp_path):
        # Separate connections so the revoke commits independently of the resolve
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
        try:
            await init_db(engine)
            cache = MemoryPermissionCache(ttl_seconds=30.0, max_size=100)
            services = AccessControl.build(build_session_factory(engine), cache=cache, timeout=5.0)
            catalog = await seed_catalog(services.store)
            roles = await seed_roles(services.store, catalog)
            user = await services.store.create_user(
                username="racer", email="racer@example.com", role_id=roles["manager"].id
            )
            manager_id = roles["manager"].id
            permission_id = catalog["campaigns.update"].id

            for _ in range(5):
                await services.store.grant_permission(manager_id, permission_id)
                await asyncio.gather(
                    services.resolver.resolve(user.id),
                    services.store.revoke_permission(manager_id, permission_id),
                )

                cached = await cache.get(user.id)
                assert cached is None or not cached.allows("campaigns.update")
                assert not await services.resolver.has_permission(user.id, "campaigns.update")
        finally:
            await engine.dispose()
