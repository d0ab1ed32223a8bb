# store.py
"""
Query client over the DropPay tables.

Handlers get a store per request from get_store() and never touch a
connection or an HTTP client themselves. Both backends expose the same
methods and return plain dicts.

Balance changes are single atomic statements (or Postgres functions on
Supabase, see sql/droppay_functions.sql), and first-writer-wins inserts rely
on unique keys rather than a read-then-insert.
"""
import json
import logging
import uuid
from datetime import datetime, timezone

from postgrest.exceptions import APIError
from supabase import create_client

import config
import db
from config import ConfigError

log = logging.getLogger(__name__)

LINK_TABLES = ("payment_links", "checkout_links")

_BOOL_COLS = {"is_active", "is_unlimited_stock", "blockchain_verified", "is_admin", "is_read",
              "email_sent"}
_JSON_COLS = {"metadata"}

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

def new_id() -> str:
    return str(uuid.uuid4())

def link_table(is_checkout_link) -> str:
    return "checkout_links" if is_checkout_link else "payment_links"

def _check_table(table: str):
    if table not in LINK_TABLES:
        raise ValueError(f"not a link table: {table}")


# =====================================================================
# SQLite
# =====================================================================
def _row(r) -> dict | None:
    if r is None:
        return None
    out = dict(r)
    for k in out.keys() & _BOOL_COLS:
        if out[k] is not None:
            out[k] = bool(out[k])
    for k in out.keys() & _JSON_COLS:
        if isinstance(out[k], str):
            try:
                out[k] = json.loads(out[k])
            except ValueError:
                pass
    return out

def _db_value(k, v):
    if k in _JSON_COLS and v is not None and not isinstance(v, str):
        return json.dumps(v)
    if isinstance(v, bool):
        return int(v)
    return v


class SqliteStore:
    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or config.sqlite_path()
        db.ensure_schema(self.db_path)

    def _cx(self):
        return db.conn(self.db_path)

    def _one(self, sql, args=()):
        with self._cx() as cx:
            return _row(cx.execute(sql, args).fetchone())

    def _all(self, sql, args=()):
        with self._cx() as cx:
            return [_row(r) for r in cx.execute(sql, args).fetchall()]

    def _insert(self, table: str, row: dict, on_conflict: str | None = None) -> int:
        row = dict(row)
        row.setdefault("id", new_id())
        cols = list(row.keys())
        sql = (f"INSERT INTO {table}({', '.join(cols)}) "
               f"VALUES({', '.join('?' for _ in cols)})")
        if on_conflict:
            sql += f" ON CONFLICT({on_conflict}) DO NOTHING"
        with self._cx() as cx:
            cur = cx.execute(sql, [_db_value(c, row[c]) for c in cols])
            return cur.rowcount

    def _update(self, table: str, row_id: str, fields: dict) -> int:
        if not fields:
            return 0
        cols = list(fields.keys())
        sets = ", ".join(f"{c}=?" for c in cols)
        with self._cx() as cx:
            cur = cx.execute(f"UPDATE {table} SET {sets} WHERE id=?",
                             [_db_value(c, fields[c]) for c in cols] + [row_id])
            return cur.rowcount

    # ---------- links ----------
    def get_link(self, table: str, link_id: str):
        _check_table(table)
        return self._one(f"SELECT * FROM {table} WHERE id=?", (link_id,))

    def decrement_stock(self, table: str, link_id: str) -> bool:
        _check_table(table)
        with self._cx() as cx:
            cur = cx.execute(f"""
              UPDATE {table} SET stock = stock - 1
              WHERE id=? AND is_unlimited_stock=0 AND stock IS NOT NULL AND stock > 0
            """, (link_id,))
            return cur.rowcount > 0

    def increment_conversions(self, table: str, link_id: str):
        _check_table(table)
        with self._cx() as cx:
            cx.execute(f"UPDATE {table} SET conversions = conversions + 1 WHERE id=?", (link_id,))

    # ---------- subscriptions ----------
    def latest_active_subscription(self, merchant_id: str):
        return self._one("""
          SELECT * FROM user_subscriptions
          WHERE merchant_id=? AND status='active'
          ORDER BY current_period_end IS NULL, current_period_end DESC,
                   last_payment_at IS NULL, last_payment_at DESC
          LIMIT 1
        """, (merchant_id,))

    def list_plans(self):
        return self._all("SELECT * FROM subscription_plans ORDER BY amount ASC")

    def get_plan(self, plan_id: str):
        return self._one("SELECT * FROM subscription_plans WHERE id=?", (plan_id,))

    def upsert_subscription(self, row: dict):
        row = dict(row)
        row.setdefault("id", new_id())
        cols = list(row.keys())
        updates = ", ".join(f"{c}=excluded.{c}" for c in cols if c not in ("id", "merchant_id"))
        with self._cx() as cx:
            cx.execute(f"""
              INSERT INTO user_subscriptions({', '.join(cols)})
              VALUES({', '.join('?' for _ in cols)})
              ON CONFLICT(merchant_id) DO UPDATE SET {updates}
            """, [row[c] for c in cols])
        return self._one("SELECT * FROM user_subscriptions WHERE merchant_id=?", (row["merchant_id"],))

    # ---------- merchants ----------
    def get_merchant(self, merchant_id: str):
        return self._one("SELECT * FROM merchants WHERE id=?", (merchant_id,))

    def get_merchant_by_pi_user(self, pi_user_id: str):
        return self._one("SELECT * FROM merchants WHERE pi_user_id=?", (pi_user_id,))

    def get_merchant_by_username(self, pi_username: str):
        return self._one("SELECT * FROM merchants WHERE pi_username=? LIMIT 1", (pi_username,))

    def create_merchant(self, pi_user_id: str, pi_username: str,
                        wallet_address: str | None = None) -> tuple[dict, bool]:
        """Insert-if-absent keyed by pi_user_id. Returns (row, created)."""
        created = self._insert("merchants", {
            "pi_user_id": pi_user_id,
            "pi_username": pi_username,
            "wallet_address": wallet_address,
            "created_at": now_iso(),
        }, on_conflict="pi_user_id") > 0
        return self.get_merchant_by_pi_user(pi_user_id), created

    def credit_merchant(self, merchant_id: str, amount: float) -> bool:
        with self._cx() as cx:
            cur = cx.execute("""
              UPDATE merchants
              SET available_balance = available_balance + ?,
                  total_revenue     = total_revenue + ?
              WHERE id=?
            """, (amount, amount, merchant_id))
            return cur.rowcount > 0

    def debit_merchant(self, merchant_id: str, amount: float) -> bool:
        """Only debits while the balance still covers the amount."""
        with self._cx() as cx:
            cur = cx.execute("""
              UPDATE merchants
              SET available_balance = available_balance - ?,
                  total_withdrawn   = total_withdrawn + ?
              WHERE id=? AND available_balance >= ?
            """, (amount, amount, merchant_id, amount))
            return cur.rowcount > 0

    # ---------- transactions ----------
    def find_transactions_by_txid(self, txid: str, limit: int = 5):
        return self._all("""
          SELECT * FROM transactions WHERE txid=?
          ORDER BY created_at DESC, rowid DESC LIMIT ?
        """, (txid, int(limit)))

    def find_transaction_by_payment_id(self, pi_payment_id: str):
        return self._one("SELECT * FROM transactions WHERE pi_payment_id=? LIMIT 1", (pi_payment_id,))

    def insert_transaction(self, row: dict):
        row = dict(row)
        row.setdefault("id", new_id())
        row.setdefault("created_at", now_iso())
        self._insert("transactions", row)
        return self._one("SELECT * FROM transactions WHERE id=?", (row["id"],))

    def update_transaction(self, tx_id: str, fields: dict) -> bool:
        return self._update("transactions", tx_id, fields) > 0

    # ---------- ad rewards ----------
    def get_ad_reward(self, ad_id: str):
        return self._one("SELECT * FROM ad_rewards WHERE ad_id=?", (ad_id,))

    def insert_ad_reward(self, row: dict) -> tuple[dict, bool]:
        """Insert-if-absent keyed by ad_id. Returns (stored row, created)."""
        row = dict(row)
        row.setdefault("created_at", now_iso())
        created = self._insert("ad_rewards", row, on_conflict="ad_id") > 0
        return self.get_ad_reward(row["ad_id"]), created

    # ---------- notifications ----------
    def insert_notification(self, merchant_id: str, title: str, message: str, type: str = "success"):
        self._insert("notifications", {
            "merchant_id": merchant_id,
            "title": title,
            "message": message,
            "type": type,
            "is_read": False,
            "created_at": now_iso(),
        })

    # ---------- withdrawals ----------
    def get_withdrawal_by_txid(self, txid: str):
        return self._one("SELECT * FROM withdrawals WHERE txid=?", (txid,))

    def insert_withdrawal(self, row: dict) -> tuple[dict, bool]:
        """Insert-if-absent keyed by txid (rows without one never collide). Returns (row, created)."""
        row = dict(row)
        row.setdefault("id", new_id())
        row.setdefault("created_at", now_iso())
        created = self._insert("withdrawals", row, on_conflict="txid") > 0
        if not created:
            return self.get_withdrawal_by_txid(row["txid"]), False
        return self._one("SELECT * FROM withdrawals WHERE id=?", (row["id"],)), True

    def delete_withdrawal(self, withdrawal_id: str):
        with self._cx() as cx:
            cx.execute("DELETE FROM withdrawals WHERE id=?", (withdrawal_id,))

    def complete_withdrawal(self, withdrawal_id: str, txid: str):
        self._update("withdrawals", withdrawal_id, {
            "status": "completed", "txid": txid, "completed_at": now_iso(),
        })
        return self._one("SELECT * FROM withdrawals WHERE id=?", (withdrawal_id,))

    def mark_withdrawal_emailed(self, withdrawal_id: str) -> bool:
        return self._update("withdrawals", withdrawal_id, {
            "email_sent": True, "email_sent_at": now_iso(),
        }) > 0


# =====================================================================
# Supabase (service-role client, bypasses row-level security)
# =====================================================================
UNIQUE_VIOLATION = "23505"

class SupabaseStore:
    def __init__(self, client):
        self.db = client

    @classmethod
    def from_env(cls):
        url, key = config.supabase_credentials()
        return cls(create_client(url, key))

    @staticmethod
    def _first(resp):
        data = getattr(resp, "data", None) or []
        if isinstance(data, list):
            return data[0] if data else None
        return data

    def _one(self, table: str, **eq):
        q = self.db.table(table).select("*")
        for k, v in eq.items():
            q = q.eq(k, v)
        return self._first(q.limit(1).execute())

    def _insert_unique(self, table: str, row: dict, key: str) -> tuple[dict, bool]:
        try:
            resp = self.db.table(table).insert(row).execute()
        except APIError as e:
            if getattr(e, "code", None) != UNIQUE_VIOLATION:
                raise
            log.info("STORE_INSERT_CONFLICT table=%s %s=%s", table, key, row.get(key))
            return self._one(table, **{key: row[key]}), False
        return self._first(resp), True

    def _rpc(self, fn: str, params: dict):
        return self.db.rpc(fn, params).execute().data

    # ---------- links ----------
    def get_link(self, table: str, link_id: str):
        _check_table(table)
        return self._one(table, id=link_id)

    def decrement_stock(self, table: str, link_id: str) -> bool:
        _check_table(table)
        return bool(self._rpc("decrement_link_stock", {"link_table": table, "link_id": link_id}))

    def increment_conversions(self, table: str, link_id: str):
        _check_table(table)
        self._rpc("increment_link_conversions", {"link_table": table, "link_id": link_id})

    # ---------- subscriptions ----------
    def latest_active_subscription(self, merchant_id: str):
        resp = (self.db.table("user_subscriptions")
                .select("*")
                .eq("merchant_id", merchant_id)
                .eq("status", "active")
                .order("current_period_end", desc=True, nullsfirst=False)
                .order("last_payment_at", desc=True, nullsfirst=False)
                .limit(1)
                .execute())
        return self._first(resp)

    def list_plans(self):
        return self.db.table("subscription_plans").select("*").order("amount").execute().data or []

    def get_plan(self, plan_id: str):
        return self._one("subscription_plans", id=plan_id)

    def upsert_subscription(self, row: dict):
        resp = self.db.table("user_subscriptions").upsert(row, on_conflict="merchant_id").execute()
        return self._first(resp)

    # ---------- merchants ----------
    def get_merchant(self, merchant_id: str):
        return self._one("merchants", id=merchant_id)

    def get_merchant_by_pi_user(self, pi_user_id: str):
        return self._one("merchants", pi_user_id=pi_user_id)

    def get_merchant_by_username(self, pi_username: str):
        return self._one("merchants", pi_username=pi_username)

    def create_merchant(self, pi_user_id: str, pi_username: str,
                        wallet_address: str | None = None) -> tuple[dict, bool]:
        row = {"pi_user_id": pi_user_id, "pi_username": pi_username}
        if wallet_address:
            row["wallet_address"] = wallet_address
        return self._insert_unique("merchants", row, "pi_user_id")

    def credit_merchant(self, merchant_id: str, amount: float) -> bool:
        return bool(self._rpc("credit_merchant_balance",
                              {"merchant_id": merchant_id, "amount": amount}))

    def debit_merchant(self, merchant_id: str, amount: float) -> bool:
        return bool(self._rpc("debit_merchant_balance",
                              {"merchant_id": merchant_id, "amount": amount}))

    # ---------- transactions ----------
    def find_transactions_by_txid(self, txid: str, limit: int = 5):
        resp = (self.db.table("transactions")
                .select("*")
                .eq("txid", txid)
                .order("created_at", desc=True)
                .limit(limit)
                .execute())
        return resp.data or []

    def find_transaction_by_payment_id(self, pi_payment_id: str):
        return self._one("transactions", pi_payment_id=pi_payment_id)

    def insert_transaction(self, row: dict):
        return self._first(self.db.table("transactions").insert(row).execute())

    def update_transaction(self, tx_id: str, fields: dict) -> bool:
        resp = self.db.table("transactions").update(fields).eq("id", tx_id).execute()
        return bool(resp.data)

    # ---------- ad rewards ----------
    def get_ad_reward(self, ad_id: str):
        return self._one("ad_rewards", ad_id=ad_id)

    def insert_ad_reward(self, row: dict) -> tuple[dict, bool]:
        return self._insert_unique("ad_rewards", row, "ad_id")

    # ---------- notifications ----------
    def insert_notification(self, merchant_id: str, title: str, message: str, type: str = "success"):
        self.db.table("notifications").insert({
            "merchant_id": merchant_id,
            "title": title,
            "message": message,
            "type": type,
            "is_read": False,
        }).execute()

    # ---------- withdrawals ----------
    def get_withdrawal_by_txid(self, txid: str):
        return self._one("withdrawals", txid=txid)

    def insert_withdrawal(self, row: dict) -> tuple[dict, bool]:
        if row.get("txid"):
            return self._insert_unique("withdrawals", row, "txid")
        return self._first(self.db.table("withdrawals").insert(row).execute()), True

    def delete_withdrawal(self, withdrawal_id: str):
        self.db.table("withdrawals").delete().eq("id", withdrawal_id).execute()

    def complete_withdrawal(self, withdrawal_id: str, txid: str):
        resp = (self.db.table("withdrawals")
                .update({"status": "completed", "txid": txid, "completed_at": now_iso()})
                .eq("id", withdrawal_id)
                .execute())
        return self._first(resp)

    def mark_withdrawal_emailed(self, withdrawal_id: str) -> bool:
        resp = (self.db.table("withdrawals")
                .update({"email_sent": True, "email_sent_at": now_iso()})
                .eq("id", withdrawal_id)
                .execute())
        return bool(resp.data)


def get_store():
    """Build the configured store. Raises ConfigError when credentials are missing."""
    backend = config.store_backend()
    if backend == "sqlite":
        return SqliteStore(config.sqlite_path())
    if backend == "supabase":
        return SupabaseStore.from_env()
    raise ConfigError(f"Unknown STORE_BACKEND {backend!r} (expected 'supabase' or 'sqlite')")
