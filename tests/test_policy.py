"""Tests for app/features/permissions/policy.py -- catalog and method mapping."""

import pytest

from app.features.permissions.policy import (
    DEFAULT_MODULES,
    POLICY,
    action_for_method,
    permission_key_for,
)


@pytest.mark.parametrize("method, action", [
    ("GET", "read"),
    ("post", "create"),
    ("PUT", "update"),
    ("PATCH", "update"),
    ("DELETE", "delete"),
])
def test_method_maps_to_action(method, action):
    assert action_for_method(method) == action


def test_unmapped_method():
    assert action_for_method("OPTIONS") is None


def test_policy_covers_catalog():
    expected = sum(len(actions) for _name, _display, actions in DEFAULT_MODULES)
    assert len(POLICY) == expected
    assert POLICY[("campaigns", "delete")] == "campaigns.delete"


def test_unknown_pair_falls_back_to_key():
    assert permission_key_for("invoices", "approve") == "invoices.approve"


def test_module_names_are_unique():
    names = [name for name, _display, _actions in DEFAULT_MODULES]
    assert len(names) == len(set(names))
