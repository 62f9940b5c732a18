from __future__ import annotations

from decimal import Decimal

import pytest
from botocore.exceptions import ClientError

from app.core.plans import PLANS, UnknownPlan, display_credits, get_plan, list_plans
from app.services.event_log import ProcessedEvents
from app.services.users import LedgerRecord, SubscriptionStatus, UserNotFound


def test_ensure_creates_record_once(users, users_table) -> None:
    rec = users.ensure("user-1", "a@example.com")
    assert rec.email == "a@example.com"
    assert rec.subscription_status is SubscriptionStatus.INACTIVE
    assert not rec.has_key

    users_table.items["user-1"]["credits"] = Decimal("12")
    again = users.ensure("user-1", "other@example.com")
    assert again.email == "a@example.com"
    assert again.credits == 12


def test_require_raises_for_missing_user(users) -> None:
    with pytest.raises(UserNotFound):
        users.require("nobody")


def test_find_by_customer_uses_index(users, users_table) -> None:
    users_table.seed("user-1", stripe_customer_id="cus_1", email="a@example.com")
    users_table.seed("user-2", stripe_customer_id="cus_2")

    rec = users.find_by_customer("cus_1")

    assert rec.user_sub == "user-1"
    assert rec.email == "a@example.com"
    assert users.find_by_customer("cus_missing") is None
    assert users.find_by_customer("") is None


def test_key_is_written_only_once(users, users_table) -> None:
    users_table.seed("user-1")
    users.set_key("user-1", "hash-a", "sk-or-a")

    with pytest.raises(ClientError):
        users.set_key("user-1", "hash-b", "sk-or-b")
    assert users_table.items["user-1"]["openrouter_key_hash"] == "hash-a"
    assert users_table.items["user-1"]["openrouter_key"] == "sk-or-a"


def test_update_subscription_merges_fields(users, users_table) -> None:
    users_table.seed("user-1")
    users.update_subscription("user-1", status=SubscriptionStatus.ACTIVE, plan_id="monthly-basic")
    users.set_subscription_credits("user-1", 300, 999)

    sub = users_table.items["user-1"]["subscription"]
    assert sub["status"] == "active"
    assert sub["plan_id"] == "monthly-basic"
    assert sub["openrouter_credits"] == Decimal("300")
    assert sub["user_credits"] == Decimal("999")
    assert "updated_at" in users_table.items["user-1"]


def test_numbers_are_stored_as_decimal(users, users_table) -> None:
    users_table.seed("user-1")
    users.add_one_time_credits(users.require("user-1"), 450, 1498.5)

    item = users_table.items["user-1"]
    assert item["one_time_credits"] == Decimal("450.0")
    assert item["credits"] == Decimal("1498.5")


def test_unknown_status_reads_as_inactive() -> None:
    rec = LedgerRecord.from_item({"user_sub": "u", "subscription": {"status": "incomplete"}})
    assert rec.subscription_status is SubscriptionStatus.INACTIVE
    assert not rec.subscription_active


def test_plan_catalog_is_consistent() -> None:
    for plan_id, plan in PLANS.items():
        assert plan.plan_id == plan_id
        assert plan.native_credits > 0
        assert plan.is_subscription == (plan.interval is not None)
        assert plan.price_env_var.startswith("STRIPE_PRICE_")

    assert get_plan("credits-1500").native_credits == 450
    assert get_plan("monthly-enterprise").native_credits == 900
    assert {p.plan_id for p in list_plans(subscription=True)} == {"monthly-basic", "monthly-pro", "monthly-enterprise"}
    assert len(list_plans(subscription=False)) == 3
    with pytest.raises(UnknownPlan):
        get_plan("credits-42")
    with pytest.raises(UnknownPlan):
        get_plan(None)


def test_price_id_comes_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("STRIPE_PRICE_MONTHLY_PRO", "price_pro")
    assert get_plan("monthly-pro").price_id == "price_pro"


def test_display_credits_uses_multiplier(settings_override) -> None:
    settings_override(credit_display_multiplier=2.0)
    assert display_credits(450) == 900


def test_processed_events_claim_and_release(events_table) -> None:
    events = ProcessedEvents(events_table, ttl_days=2)

    assert events.claim("evt_1", "invoice.paid") is True
    assert events.claim("evt_1", "invoice.paid") is False
    item = events_table.items["evt_1"]
    assert item["ttl_epoch"] == item["ts"] + 2 * 86400

    events.release("evt_1")
    assert events.claim("evt_1", "invoice.paid") is True
