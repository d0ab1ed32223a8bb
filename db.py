import os, sqlite3, threading

import config

BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "3000"))  # 3s default

_lock = threading.Lock()
_ready: set[str] = set()

def _ensure_dirs(path: str):
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)

def conn(db_path: str | None = None):
    path = db_path or config.sqlite_path()
    _ensure_dirs(path)
    cx = sqlite3.connect(path, check_same_thread=False)
    cx.row_factory = sqlite3.Row
    cx.execute("PRAGMA foreign_keys=ON;")
    cx.execute("PRAGMA journal_mode=WAL;")
    cx.execute("PRAGMA synchronous=NORMAL;")
    cx.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS};")
    return cx

def init_db(db_path: str | None = None):
    path = db_path or config.sqlite_path()
    with _lock, conn(path) as cx:
        cx.executescript("""
        CREATE TABLE IF NOT EXISTS merchants(
          id TEXT PRIMARY KEY,
          pi_user_id TEXT NOT NULL UNIQUE,
          pi_username TEXT NOT NULL,
          wallet_address TEXT,
          available_balance REAL NOT NULL DEFAULT 0,
          total_revenue REAL NOT NULL DEFAULT 0,
          total_withdrawn REAL NOT NULL DEFAULT 0,
          is_admin INTEGER NOT NULL DEFAULT 0,
          created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_merchants_username ON merchants(pi_username);

        CREATE TABLE IF NOT EXISTS payment_links(
          id TEXT PRIMARY KEY,
          merchant_id TEXT NOT NULL,
          slug TEXT UNIQUE,
          title TEXT,
          amount REAL NOT NULL,
          stock INTEGER,
          is_unlimited_stock INTEGER NOT NULL DEFAULT 1,
          is_active INTEGER NOT NULL DEFAULT 1,
          conversions INTEGER NOT NULL DEFAULT 0,
          created_at TEXT NOT NULL,
          FOREIGN KEY(merchant_id) REFERENCES merchants(id)
        );

        CREATE TABLE IF NOT EXISTS checkout_links(
          id TEXT PRIMARY KEY,
          merchant_id TEXT NOT NULL,
          slug TEXT UNIQUE,
          title TEXT,
          amount REAL NOT NULL,
          stock INTEGER,
          is_unlimited_stock INTEGER NOT NULL DEFAULT 1,
          is_active INTEGER NOT NULL DEFAULT 1,
          conversions INTEGER NOT NULL DEFAULT 0,
          created_at TEXT NOT NULL,
          FOREIGN KEY(merchant_id) REFERENCES merchants(id)
        );

        -- txid is not unique: a payment link row and a checkout
        -- link row may carry the same txid
        CREATE TABLE IF NOT EXISTS transactions(
          id TEXT PRIMARY KEY,
          merchant_id TEXT,
          payment_link_id TEXT,
          pi_payment_id TEXT,
          payer_pi_username TEXT,
          amount REAL,
          status TEXT NOT NULL DEFAULT 'pending',
          txid TEXT,
          buyer_email TEXT,
          sender_address TEXT,
          receiver_address TEXT,
          blockchain_verified INTEGER NOT NULL DEFAULT 0,
          metadata TEXT,
          email_sent INTEGER NOT NULL DEFAULT 0,
          completed_at TEXT,
          created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_transactions_txid ON transactions(txid, created_at);
        CREATE INDEX IF NOT EXISTS idx_transactions_payment ON transactions(pi_payment_id);

        CREATE TABLE IF NOT EXISTS ad_rewards(
          id TEXT PRIMARY KEY,
          merchant_id TEXT NOT NULL,
          pi_username TEXT,
          ad_type TEXT NOT NULL DEFAULT 'rewarded',
          ad_id TEXT NOT NULL UNIQUE,
          reward_amount REAL NOT NULL,
          status TEXT NOT NULL DEFAULT 'pending',   -- pending | granted
          mediator_ack_status TEXT,
          mediator_granted_at TEXT,
          mediator_revoked_at TEXT,
          created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS notifications(
          id TEXT PRIMARY KEY,
          merchant_id TEXT NOT NULL,
          title TEXT NOT NULL,
          message TEXT NOT NULL,
          type TEXT NOT NULL DEFAULT 'info',
          is_read INTEGER NOT NULL DEFAULT 0,
          created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_notifications_merchant ON notifications(merchant_id, created_at);

        CREATE TABLE IF NOT EXISTS withdrawals(
          id TEXT PRIMARY KEY,
          merchant_id TEXT NOT NULL,
          amount REAL NOT NULL,
          status TEXT NOT NULL DEFAULT 'pending',   -- pending | completed
          pi_payment_id TEXT,
          txid TEXT,
          completed_at TEXT,
          email_sent INTEGER NOT NULL DEFAULT 0,
          email_sent_at TEXT,
          created_at TEXT NOT NULL,
          FOREIGN KEY(merchant_id) REFERENCES merchants(id)
        );
        -- one withdrawal per payout txid; NULLs (not yet paid) do not collide
        CREATE UNIQUE INDEX IF NOT EXISTS uniq_withdrawals_txid ON withdrawals(txid);

        CREATE TABLE IF NOT EXISTS subscription_plans(
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL UNIQUE,
          amount REAL NOT NULL DEFAULT 0,
          link_limit INTEGER
        );

        CREATE TABLE IF NOT EXISTS user_subscriptions(
          id TEXT PRIMARY KEY,
          merchant_id TEXT NOT NULL UNIQUE,
          pi_username TEXT,
          plan_id TEXT,
          status TEXT NOT NULL DEFAULT 'active',
          current_period_start TEXT,
          current_period_end TEXT,
          expires_at TEXT,
          last_payment_at TEXT,
          FOREIGN KEY(plan_id) REFERENCES subscription_plans(id)
        );
        """)

def ensure_schema(db_path: str | None = None):
    """Create tables once per database file and add columns missing from older files."""
    path = db_path or config.sqlite_path()
    if path in _ready:
        return
    init_db(path)
    with _lock, conn(path) as cx:
        # additive columns for databases created before these existed
        try: cx.execute("ALTER TABLE merchants ADD COLUMN total_withdrawn REAL NOT NULL DEFAULT 0")
        except Exception: pass
        try: cx.execute("ALTER TABLE transactions ADD COLUMN metadata TEXT")
        except Exception: pass
        try: cx.execute("ALTER TABLE user_subscriptions ADD COLUMN expires_at TEXT")
        except Exception: pass
        try: cx.execute("ALTER TABLE transactions ADD COLUMN email_sent INTEGER NOT NULL DEFAULT 0")
        except Exception: pass
        try: cx.execute("ALTER TABLE withdrawals ADD COLUMN email_sent INTEGER NOT NULL DEFAULT 0")
        except Exception: pass
        try: cx.execute("ALTER TABLE withdrawals ADD COLUMN email_sent_at TEXT")
        except Exception: pass
    _ready.add(path)
