"""Tests for app/features/permissions/audit.py -- AuditRecorder.

Covers:
- mutations append entries carrying actor and request metadata
- no-op mutations do not append entries
- an audit write failure is logged and does not fail the mutation
"""

import logging

import app.features.permissions.audit as audit_module
from app.core.errors import StoreUnavailable
from app.features.permissions.audit import AuditContext
from app.features.permissions.models import AuditAction
from app.features.permissions.schemas import AuditLogFilter, RoleCreate


async def test_grant_is_recorded(services, roles, catalog, make_user):
    actor = await make_user(roles["admin"])
    context = AuditContext(actor_user_id=actor.id, ip_address="10.0.0.1", user_agent="pytest")

    await services.store.grant_permission(roles["manager"].id, catalog["campaigns.delete"].id, context)

    entries, total = await services.audit.list_entries(
        AuditLogFilter(action=AuditAction.PERMISSION_GRANTED.value, actor_user_id=actor.id)
    )
    assert total == 1
    entry = entries[0]
    assert entry.role_id == roles["manager"].id
    assert entry.permission_id == catalog["campaigns.delete"].id
    assert entry.ip_address == "10.0.0.1"
    assert entry.details == {"role": "manager", "permission": "campaigns.delete"}


async def test_noop_is_not_recorded(services, roles, catalog):
    _, before = await services.audit.list_entries(AuditLogFilter())

    await services.store.revoke_permission(roles["viewer"].id, catalog["users.delete"].id)

    _, after = await services.audit.list_entries(AuditLogFilter())
    assert after == before


async def test_entries_are_newest_first(services, roles, make_user):
    user = await make_user()
    await services.store.assign_user_role(user.id, roles["viewer"].id, assigned_by=None)
    await services.store.remove_user_role(user.id, roles["viewer"].id)

    entries, _ = await services.audit.list_entries(AuditLogFilter(target_user_id=user.id))

    assert [e.action for e in entries] == ["user_role_removed", "user_role_assigned"]


async def test_audit_failure_does_not_fail_mutation(services, roles, catalog, make_user, monkeypatch, caplog):
    user = await make_user(roles["manager"])

    async def unavailable(operation, awaitable, timeout):
        awaitable.close()
        raise StoreUnavailable(f"Permission store unavailable during {operation}")

    monkeypatch.setattr(audit_module, "bounded", unavailable)

    with caplog.at_level(logging.WARNING, logger="app.features.permissions.audit"):
        granted = await services.store.grant_permission(roles["manager"].id, catalog["campaigns.delete"].id)
        role = await services.store.create_role(RoleCreate(name="analyst", display_name="Analyst", level=2))

    assert granted is True
    assert role.name == "analyst"
    assert await services.resolver.has_permission(user.id, "campaigns.delete")
    assert "Audit write failed action=permission_granted" in caplog.text
    assert "Audit write failed action=role_created" in caplog.text
