# subscriptions.py
import re
from datetime import datetime, timedelta, timezone

PERIOD_DAYS = 30
PLAN_NAME_RE = re.compile(r"\b(Free|Basic|Growth|Pro|Scale|Enterprise)\b", re.IGNORECASE)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def iso(dt: datetime) -> str:
    return dt.isoformat()

def parse_ts(v) -> datetime | None:
    if not v:
        return None
    if isinstance(v, datetime):
        dt = v
    else:
        try:
            dt = datetime.fromisoformat(str(v).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt

def is_expired(sub: dict | None, now: datetime | None = None) -> bool:
    """No subscription row means free tier, which never expires."""
    if not sub:
        return False
    end = parse_ts(sub.get("expires_at") or sub.get("current_period_end"))
    if end is None:
        return False
    return end < (now or utcnow())

def plan_name_hint(payment_type: str | None) -> str | None:
    if not payment_type:
        return None
    m = PLAN_NAME_RE.search(payment_type)
    return m.group(1) if m else None

def resolve_plan(plans: list[dict], payment_type: str | None = None, amount=None) -> dict | None:
    """plans ordered by amount ascending."""
    if not plans:
        return None
    name = plan_name_hint(payment_type)
    if name:
        for p in plans:
            if (p.get("name") or "").lower() == name.lower():
                return p
    if amount:
        try:
            amt = float(amount)
        except (TypeError, ValueError):
            amt = None
        if amt is not None:
            for p in plans:
                if abs(float(p.get("amount") or 0) - amt) < 0.01:
                    return p
    for p in plans:
        if p.get("name") == "Basic":
            return p
    for p in plans:
        if float(p.get("amount") or 0) > 0:
            return p
    return plans[0]

def activation_row(merchant_id: str, plan: dict, pi_username: str | None,
                   now: datetime | None = None) -> dict:
    start = now or utcnow()
    return {
        "merchant_id": merchant_id,
        "pi_username": pi_username or None,
        "plan_id": plan["id"],
        "status": "active",
        "current_period_start": iso(start),
        "current_period_end": iso(start + timedelta(days=PERIOD_DAYS)),
        "last_payment_at": iso(start),
    }
