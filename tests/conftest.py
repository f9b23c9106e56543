"""
tests/conftest.py -- Shared fixtures for the access control tests.

This module provides:
  - engine / session_factory: a fresh in-memory aiosqlite database per test
  - services: AccessControl wired against that database
  - catalog / roles: the default catalog and roles from scripts.seed_permissions
  - make_user: factory for users holding a primary role
  - client: httpx AsyncClient over the real app with app.state pointing at
    the test services
  - guarded routes mounted under /_guarded that exercise each guard stage

Design: StaticPool keeps a single connection, so every session sees the same
in-memory schema. ASGITransport does not run the app lifespan; the fixture
installs services on app.state directly instead.
"""

import itertools
import os

# Must be set before app.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("RATE_LIMIT", "100000/minute")
os.environ.setdefault("JWT_SECRET", "test-secret")

import httpx
import pytest
from fastapi import APIRouter, Depends
from sqlalchemy.pool import StaticPool

from app.core.database.engine import build_engine, build_session_factory, init_db
from app.features.permissions.cache import MemoryPermissionCache
from app.features.permissions.dependencies import (
    expose_access_headers,
    require_all_permissions,
    require_any_permission,
    require_module_access,
    require_policy,
    require_role,
    require_user_management,
)
from app.features.permissions.services import AccessControl
from app.features.users.auth import create_access_token
from app.main import app
from scripts.seed_permissions import seed_catalog, seed_roles

# ---------------------------------------------------------------------------
# Guarded routes: one endpoint per guard stage
# ---------------------------------------------------------------------------

guarded_router = APIRouter()


@guarded_router.get("/campaigns", dependencies=[Depends(require_policy("campaigns"))])
async def guarded_list_campaigns():
    return {"ok": True}


@guarded_router.delete("/campaigns/{campaign_id}", dependencies=[Depends(require_policy("campaigns"))])
async def guarded_delete_campaign(campaign_id: str):
    return {"deleted": campaign_id}


@guarded_router.put(
    "/campaigns/{campaign_id}/archive",
    dependencies=[Depends(require_any_permission("campaigns.update", "campaigns.delete"))],
)
async def guarded_archive_campaign(campaign_id: str):
    return {"archived": campaign_id}


@guarded_router.post(
    "/campaigns/{campaign_id}/report",
    dependencies=[Depends(require_any_permission("campaigns.update", "reports.create"))],
)
async def guarded_campaign_report(campaign_id: str):
    return {"report": campaign_id}


@guarded_router.post(
    "/campaigns/{campaign_id}/publish",
    dependencies=[Depends(require_all_permissions("campaigns.update", "ads.update"))],
)
async def guarded_publish_campaign(campaign_id: str):
    return {"published": campaign_id}


@guarded_router.get("/reports", dependencies=[Depends(require_module_access("reports"))])
async def guarded_reports():
    return {"ok": True}


@guarded_router.get("/admin-only", dependencies=[Depends(require_role("admin"))])
async def guarded_admin_only():
    return {"ok": True}


@guarded_router.get("/users/{user_id}", dependencies=[Depends(require_user_management("user_id"))])
async def guarded_manage_user(user_id: str):
    return {"user_id": user_id}


@guarded_router.get("/whoami", dependencies=[Depends(expose_access_headers)])
async def guarded_whoami():
    return {"ok": True}


if not any(getattr(route, "path", "").startswith("/_guarded") for route in app.routes):
    app.include_router(guarded_router, prefix="/_guarded")


# ---------------------------------------------------------------------------
# Database and services
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine():
    """Fresh in-memory database with all tables created."""
    test_engine = build_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def cache():
    return MemoryPermissionCache(ttl_seconds=30.0, max_size=1000)


@pytest.fixture
def services(session_factory, cache) -> AccessControl:
    return AccessControl.build(session_factory, cache=cache, timeout=5.0)


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def resolver(services):
    return services.resolver


@pytest.fixture
def guard(services):
    return services.guard


@pytest.fixture
async def catalog(store):
    """Permission key -> Permission for the default catalog."""
    return await seed_catalog(store)


@pytest.fixture
async def roles(store, catalog):
    """Role name -> Role for the default roles (super_admin, admin, manager, advertiser, viewer)."""
    return await seed_roles(store, catalog)


@pytest.fixture
def make_user(store):
    """Create a user, optionally with a primary role.

    Usage:
        manager = await make_user(roles["manager"])
    """
    counter = itertools.count()

    async def _make(role=None, **kwargs):
        n = next(counter)
        return await store.create_user(
            username=kwargs.pop("username", f"user{n}"),
            email=kwargs.pop("email", f"user{n}@example.com"),
            role_id=role.id if role is not None else None,
            **kwargs,
        )

    return _make


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


def auth_headers(user_id: str, **kwargs) -> dict[str, str]:
    """Authorization header carrying a fresh access token for ``user_id``."""
    return {"Authorization": f"Bearer {create_access_token(user_id, **kwargs)}"}


@pytest.fixture
async def client(services):
    """httpx client against the real app, backed by the test services."""
    services.install(app.state)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def headers_for():
    """Callable building Authorization headers: ``headers_for(user.id)``."""
    return auth_headers
