"""
Shared fixtures: a throwaway SQLite store, a Flask test client, and a fake
requests.Response for mocking the Pi Platform API.
"""
import json

import pytest

PI_KEY = "test-pi-key"
PI_BASE = "https://pi.test/v2"


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        if text is None:
            text = json.dumps(body) if body is not None else ""
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body


@pytest.fixture
def env(monkeypatch, tmp_path):
    monkeypatch.setenv("STORE_BACKEND", "sqlite")
    monkeypatch.setenv("SQLITE_DB_PATH", str(tmp_path / "droppay.sqlite"))
    monkeypatch.setenv("PI_API_KEY", PI_KEY)
    monkeypatch.setenv("PI_API_BASE", PI_BASE)
    monkeypatch.setenv("ALLOW_ORIGIN", "*")
    for name in ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY", "SMTP_HOST"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture
def client(env):
    from app import create_app
    app = create_app()
    app.testing = True
    return app.test_client()


@pytest.fixture
def st(env):
    from store import SqliteStore
    return SqliteStore()


@pytest.fixture
def seed(st):
    """Row factories that write straight into the test store."""
    from store import new_id, now_iso

    class Seed:
        def merchant(self, **kw):
            row = {
                "id": new_id(),
                "pi_user_id": "uid-" + new_id()[:8],
                "pi_username": "alice",
                "available_balance": 0,
                "total_revenue": 0,
                "created_at": now_iso(),
            }
            row.update(kw)
            st._insert("merchants", row)
            return st.get_merchant(row["id"])

        def link(self, merchant_id, table="payment_links", **kw):
            row = {
                "id": new_id(),
                "merchant_id": merchant_id,
                "title": "Coffee",
                "amount": 10,
                "is_active": True,
                "is_unlimited_stock": True,
                "created_at": now_iso(),
            }
            row.update(kw)
            st._insert(table, row)
            return st.get_link(table, row["id"])

        def transaction(self, **kw):
            row = {"status": "pending"}
            row.update(kw)
            return st.insert_transaction(row)

        def plan(self, name, amount, link_limit=None):
            row = {"id": new_id(), "name": name, "amount": amount, "link_limit": link_limit}
            st._insert("subscription_plans", row)
            return st.get_plan(row["id"])

        def subscription(self, merchant_id, **kw):
            row = {"merchant_id": merchant_id, "status": "active"}
            row.update(kw)
            return st.upsert_subscription(row)

    return Seed()


def tx_body(amount="10", to="GMERCHANTWALLET", successful=True, sender="GPAYERWALLET"):
    return {
        "hash": "tx-hash",
        "source_account": sender,
        "successful": successful,
        "ledger": 4242,
        "operations": [
            {"type": "create_account", "type_i": 0},
            {"type": "payment", "type_i": 1, "from": sender, "to": to, "amount": amount},
        ],
    }


def notifications(st, merchant_id):
    return st._all("SELECT * FROM notifications WHERE merchant_id=? ORDER BY created_at DESC",
                   (merchant_id,))
