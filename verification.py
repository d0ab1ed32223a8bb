# verification.py
from decimal import Decimal, InvalidOperation

from pi_api import TxSuccess

AMOUNT_TOLERANCE = Decimal("0.0000001")   # Pi amounts carry 7 decimals
TX_LOOKUP_LIMIT  = 5

def _dec(v) -> Decimal | None:
    try:
        return Decimal(str(v))
    except (InvalidOperation, TypeError, ValueError):
        return None

def amount_matches(actual, expected) -> bool:
    a, e = _dec(actual), _dec(expected)
    if a is None or e is None:
        return False
    return abs(a - e) < AMOUNT_TOLERANCE

def receiver_matches(receiver: str | None, merchant_wallet: str | None) -> bool:
    # no wallet supplied means the check is skipped, not failed
    if not merchant_wallet:
        return True
    return (receiver or "").lower() == merchant_wallet.lower()

def run_checks(tx: TxSuccess, expected_amount, merchant_wallet: str | None) -> dict:
    return {
        "amountMatch": amount_matches(tx.amount, expected_amount),
        "receiverMatch": receiver_matches(tx.receiver, merchant_wallet),
        "transactionSuccess": tx.successful is True,
    }

def pick_transaction_row(rows: list[dict], payment_link_id: str | None) -> dict | None:
    """
    rows: most recent first, all sharing one txid.
    With a link id, match on payment_link_id or metadata.source_link_id
    (checkout-link rows only carry the latter).
    """
    if not rows:
        return None
    if not payment_link_id:
        return rows[0]
    for row in rows:
        if row.get("payment_link_id") == payment_link_id:
            return row
        meta = row.get("metadata") or {}
        if isinstance(meta, dict) and meta.get("source_link_id") == payment_link_id:
            return row
    return None

def verification_update(tx: TxSuccess, verified: bool) -> dict:
    update = {
        "blockchain_verified": verified,
        "sender_address": tx.sender,
        "receiver_address": tx.receiver,
    }
    # only ever upgrade; a lagging chain must not mark a payment failed
    if verified:
        update["status"] = "completed"
    return update
