"""
Seed script to populate the default catalog and roles.

Run this script after database initialization to create:
- Default modules and permissions (from app.features.permissions.policy)
- Default roles with their permission sets
- Optionally a bootstrap super admin (SEED_ADMIN_USERNAME / SEED_ADMIN_EMAIL)

Safe to run repeatedly: existing rows are kept and only missing ones are added.

Usage:
    python -m scripts.seed_permissions
"""
import asyncio
from typing import Dict, List, Union

from app.core import config
from app.core.database.engine import AsyncSessionLocal, init_db
from app.core.errors import DuplicateName
from app.features.permissions.models import Permission, Role
from app.features.permissions.policy import DEFAULT_MODULES, permission_key
from app.features.permissions.schemas import ModuleCreate, PermissionCreate, RoleCreate, RoleFilter
from app.features.permissions.services import AccessControl
from app.features.permissions.store import PermissionStore
from app.utils import get_logger


log = get_logger(__name__)

ALL = "ALL"

DEFAULT_ROLES: Dict[str, Dict[str, Union[str, int, bool, List[str]]]] = {
    "super_admin": {
        "display_name": "Super Admin",
        "description": "Bypasses every permission check",
        "level": 10,
        "is_system_role": True,
        "permissions": [],
    },
    "admin": {
        "display_name": "Admin",
        "description": "Administrator with all catalog permissions",
        "level": 8,
        "is_system_role": True,
        "permissions": ALL,
    },
    "manager": {
        "display_name": "Manager",
        "description": "Manages campaigns, ads and reports",
        "level": 5,
        "is_system_role": False,
        "permissions": [
            "dashboard.read", "dashboard.analytics",
            "campaigns.read", "campaigns.create", "campaigns.update",
            "ads.read", "ads.create", "ads.update", "ads.delete",
            "brands.read", "brands.update",
            "cards.read",
            "reports.read", "reports.create", "reports.update", "reports.export",
            "users.read", "users.manage_roles",
            "roles.read",
        ],
    },
    "advertiser": {
        "display_name": "Advertiser",
        "description": "Runs own campaigns",
        "level": 3,
        "is_system_role": False,
        "permissions": [
            "dashboard.read",
            "campaigns.read", "campaigns.create", "campaigns.update",
            "ads.read", "ads.create", "ads.update",
            "cards.read",
            "reports.read",
        ],
    },
    "viewer": {
        "display_name": "Viewer",
        "description": "Read-only access",
        "level": 1,
        "is_system_role": False,
        "permissions": [
            "dashboard.read",
            "campaigns.read",
            "ads.read",
            "reports.read",
        ],
    },
}


async def seed_catalog(store: PermissionStore) -> Dict[str, Permission]:
    """
    Create default modules and permissions.

    Returns:
        Dictionary mapping permission keys to Permission objects
    """
    log.info("Creating default modules and permissions...")
    permissions_map: Dict[str, Permission] = {}

    for order_index, (module_name, display_name, actions) in enumerate(DEFAULT_MODULES):
        module = await store.get_module_by_name(module_name)
        if module is None:
            module = await store.create_module(
                ModuleCreate(name=module_name, display_name=display_name, order_index=order_index)
            )
            log.info("Created module: %s", module_name)

        for action in actions:
            key = permission_key(module_name, action)
            permission = await store.get_permission_by_key(key)
            if permission is None:
                permission = await store.create_permission(PermissionCreate(
                    module_id=module.id,
                    action=action,
                    display_name=f"{action.replace('_', ' ').title()} {display_name}",
                ))
                log.info("Created permission: %s", key)
            else:
                log.debug("Permission '%s' already exists, skipping", key)
            permissions_map[key] = permission

    log.info("Catalog holds %d permissions", len(permissions_map))
    return permissions_map


async def seed_roles(store: PermissionStore, permissions_map: Dict[str, Permission]) -> Dict[str, Role]:
    """
    Create default roles and grant their permissions. Existing roles keep
    their current grants.
    """
    log.info("Creating default roles...")
    existing = {role.name: role for role in await store.list_roles(RoleFilter(include_inactive=True, limit=500))}
    roles: Dict[str, Role] = {}

    for role_name, role_config in DEFAULT_ROLES.items():
        if role_name in existing:
            log.debug("Role '%s' already exists, skipping", role_name)
            roles[role_name] = existing[role_name]
            continue

        role = await store.create_role(RoleCreate(
            name=role_name,
            display_name=role_config["display_name"],
            description=role_config["description"],
            level=role_config["level"],
            is_system_role=role_config["is_system_role"],
        ))

        if role_config["permissions"] == ALL:
            keys = list(permissions_map)
        else:
            keys = []
            for key in role_config["permissions"]:
                if key in permissions_map:
                    keys.append(key)
                else:
                    log.warning("Permission '%s' not found for role '%s'", key, role_name)

        await store.set_role_permissions(role.id, [permissions_map[key].id for key in keys])
        log.info("Created role '%s' (level %d) with %d permissions", role_name, role.level, len(keys))
        roles[role_name] = role

    return roles


async def seed_admin(store: PermissionStore, super_admin: Role) -> None:
    """Create the bootstrap super admin if one is configured."""
    if not config.SEED_ADMIN_USERNAME or not config.SEED_ADMIN_EMAIL:
        log.info("SEED_ADMIN_USERNAME/SEED_ADMIN_EMAIL not set, skipping admin user")
        return
    try:
        user = await store.create_user(
            username=config.SEED_ADMIN_USERNAME,
            email=config.SEED_ADMIN_EMAIL,
            role_id=super_admin.id,
        )
        log.info("Created admin user '%s' (%s)", user.username, user.id)
    except DuplicateName:
        log.info("Admin user '%s' already exists, skipping", config.SEED_ADMIN_USERNAME)


async def main():
    """Main function to seed the catalog and roles."""
    log.info("Starting permission seeding...")

    log.info("Initializing database tables...")
    await init_db()

    store = AccessControl.build(AsyncSessionLocal).store
    permissions_map = await seed_catalog(store)
    roles = await seed_roles(store, permissions_map)
    await seed_admin(store, roles["super_admin"])

    log.info("Permission seeding completed successfully!")
    for role_name, role_config in DEFAULT_ROLES.items():
        log.info("  - %s (level %s): %s", role_name, role_config["level"], role_config["description"])


if __name__ == "__main__":
    asyncio.run(main())
