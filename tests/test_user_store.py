"""Tests for the SQLite-backed user accounts and API keys."""

import pytest

from pdf2psd_backend.exceptions import NotFoundError, ValidationError
from pdf2psd_backend.user_store import UserStore


def test_create_user_uses_plan_allotment(users):
    raw_key, record = users.create_user("alice@example.com", plan="basic")

    assert raw_key.startswith("p2p_")
    assert record.prefix == raw_key[:8]
    assert record.plan == "basic"
    assert record.conversions_left == 20
    assert record.is_active is True


def test_create_user_with_explicit_allowance(users):
    _, record = users.create_user("bob@example.com", plan="PRO", conversions_left=3)
    assert record.plan == "pro"
    assert record.conversions_left == 3


def test_enterprise_users_start_at_zero(users):
    _, record = users.create_user("corp@example.com", plan="enterprise")
    assert record.conversions_left == 0


def test_unknown_plan_is_rejected(users):
    with pytest.raises(ValidationError):
        users.create_user("x@example.com", plan="platinum")


def test_duplicate_email_is_rejected(users):
    users.create_user("dup@example.com")
    with pytest.raises(ValidationError) as excinfo:
        users.create_user("dup@example.com")
    assert excinfo.value.code == "user_exists"


def test_authenticate(users):
    raw_key, record = users.create_user("carol@example.com")

    authenticated = users.authenticate(raw_key)
    assert authenticated is not None
    assert authenticated.id == record.id

    assert users.authenticate("p2p_wrong") is None
    assert users.authenticate("") is None
    assert users.authenticate(None) is None


def test_decrement_conversions(users):
    _, record = users.create_user("dave@example.com", plan="basic")
    assert users.decrement_conversions(record.id) == 19
    assert users.get_user(record.id).conversions_left == 19


def test_decrement_unknown_user(users):
    with pytest.raises(NotFoundError):
        users.decrement_conversions("missing")


def test_apply_plan_resets_allowance(users):
    _, record = users.create_user("erin@example.com", plan="free", conversions_left=0)

    updated = users.apply_plan(record.id, "premium")
    assert updated.plan == "premium"
    assert updated.conversions_left == 200


def test_apply_plan_errors(users):
    _, record = users.create_user("frank@example.com")
    with pytest.raises(ValidationError):
        users.apply_plan(record.id, "gold")
    with pytest.raises(NotFoundError):
        users.apply_plan("missing", "pro")


def test_accounts_survive_reopen(users, test_dirs):
    raw_key, record = users.create_user("grace@example.com", plan="pro")

    reopened = UserStore(str(test_dirs["database"]))
    assert reopened.authenticate(raw_key).id == record.id
