from datetime import datetime, timedelta, timezone

import subscriptions
from subscriptions import activation_row, is_expired, plan_name_hint, resolve_plan

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

PLANS = [
    {"id": "p-free", "name": "Free", "amount": 0},
    {"id": "p-basic", "name": "Basic", "amount": 5},
    {"id": "p-growth", "name": "Growth", "amount": 12},
    {"id": "p-pro", "name": "Pro", "amount": 20},
]


class TestIsExpired:
    def test_no_subscription_is_free_tier(self):
        assert is_expired(None, NOW) is False

    def test_open_ended(self):
        assert is_expired({"status": "active"}, NOW) is False

    def test_past_period_end(self):
        assert is_expired({"current_period_end": "2026-02-28T00:00:00Z"}, NOW) is True

    def test_future_period_end(self):
        assert is_expired({"current_period_end": "2026-03-02T00:00:00+00:00"}, NOW) is False

    def test_expires_at_wins(self):
        sub = {"expires_at": "2026-02-01T00:00:00Z", "current_period_end": "2026-04-01T00:00:00Z"}
        assert is_expired(sub, NOW) is True

    def test_naive_timestamp_is_utc(self):
        assert is_expired({"current_period_end": "2026-03-01T11:59:00"}, NOW) is True


class TestResolvePlan:
    def test_name_from_payment_type(self):
        assert resolve_plan(PLANS, "DropPay growth subscription", 5)["id"] == "p-growth"

    def test_amount_match(self):
        assert resolve_plan(PLANS, "subscription", "20.001")["id"] == "p-pro"

    def test_falls_back_to_basic(self):
        assert resolve_plan(PLANS, None, 99)["id"] == "p-basic"

    def test_first_paid_plan_without_basic(self):
        plans = [p for p in PLANS if p["name"] != "Basic"]
        assert resolve_plan(plans)["id"] == "p-growth"

    def test_only_free(self):
        assert resolve_plan(PLANS[:1])["id"] == "p-free"

    def test_no_plans(self):
        assert resolve_plan([], "Pro", 20) is None


def test_plan_name_hint():
    assert plan_name_hint("Upgrade to ENTERPRISE") == "ENTERPRISE"
    assert plan_name_hint("Professional") is None
    assert plan_name_hint(None) is None


def test_activation_row_covers_one_period():
    row = activation_row("m1", PLANS[3], "alice", NOW)
    assert row["plan_id"] == "p-pro"
    assert row["status"] == "active"
    start = subscriptions.parse_ts(row["current_period_start"])
    end = subscriptions.parse_ts(row["current_period_end"])
    assert end - start == timedelta(days=subscriptions.PERIOD_DAYS)
    assert row["last_payment_at"] == row["current_period_start"]


def test_upsert_replaces_existing_subscription(st, seed):
    m = seed.merchant()
    basic = seed.plan("Basic", 5)
    pro = seed.plan("Pro", 20)
    st.upsert_subscription(activation_row(m["id"], basic, "alice", NOW - timedelta(days=40)))
    st.upsert_subscription(activation_row(m["id"], pro, "alice", NOW))
    sub = st.latest_active_subscription(m["id"])
    assert sub["plan_id"] == pro["id"]
    assert is_expired(sub, NOW) is False
