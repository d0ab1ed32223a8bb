# merchants_api.py
import logging

from flask import Blueprint, jsonify
from stellar_sdk import StrKey

from api_helpers import json_body, text, error, mask
from store import get_store

log = logging.getLogger(__name__)

bp_merchants = Blueprint("merchants_api", __name__, url_prefix="/functions")

def is_valid_wallet(addr: str | None) -> bool:
    """Pi wallets are Stellar-style ed25519 public keys (G...)."""
    try:
        return bool(addr and StrKey.is_valid_ed25519_public_key(addr.strip()))
    except Exception:
        return False

def _amount(v) -> float | None:
    try:
        amt = float(v)
    except (TypeError, ValueError):
        return None
    return amt if amt > 0 else None


@bp_merchants.route("/create-merchant-profile", methods=["POST"])
def create_merchant_profile():
    """
    Body: { piUserId, piUsername, walletAddress? }
    Runs on service credentials: a brand-new user cannot pass the row-level
    policy on merchants until their merchant row exists.
    """
    st = get_store()

    data = json_body() or {}
    pi_user_id = text(data, "piUserId")
    pi_username = text(data, "piUsername")
    if not pi_user_id or not pi_username:
        return error("Missing required fields: piUserId, piUsername", 400)

    wallet = text(data, "walletAddress") or None
    if wallet and not is_valid_wallet(wallet):
        return error("Invalid wallet address", 400)

    existing = st.get_merchant_by_pi_user(pi_user_id)
    if existing:
        return jsonify(success=True, message="Merchant already exists", merchant=existing)

    try:
        merchant, created = st.create_merchant(pi_user_id, pi_username, wallet)
    except Exception as e:
        log.error("MERCHANT_CREATE_FAIL pi_user=%s err=%s", pi_user_id, e)
        return error("Failed to create merchant", 400, details=str(e))

    if created:
        log.info("MERCHANT_CREATED id=%s username=%s wallet=%s",
                 merchant["id"], pi_username, mask(wallet))
    return jsonify(
        success=True,
        message="Merchant created successfully" if created else "Merchant already exists",
        merchant=merchant,
    )


def _replayed_withdrawal(st, withdrawal: dict, merchant_id: str):
    if withdrawal.get("merchant_id") != merchant_id:
        return error("txid already belongs to another withdrawal", 409)
    fresh = st.get_merchant(merchant_id) or {}
    log.info("WITHDRAWAL_REPLAY id=%s txid=%s", withdrawal["id"], withdrawal.get("txid"))
    return jsonify(success=True, message="Withdrawal already processed", withdrawal=withdrawal,
                   newBalance=float(fresh.get("available_balance") or 0))


@bp_merchants.route("/process-withdrawal", methods=["POST"])
def process_withdrawal():
    """
    Body: { merchantId, amount, paymentId?, txid? }
    Records the withdrawal; with a txid the payout already happened, so the
    balance is debited and the withdrawal completed. One withdrawal per txid:
    a repeated request returns the stored row and debits nothing.
    """
    st = get_store()

    data = json_body() or {}
    merchant_id = text(data, "merchantId")
    amount = _amount(data.get("amount"))
    if not merchant_id:
        return error("merchantId is required", 400)
    if amount is None:
        return error("amount must be a positive number", 400)
    payment_id = text(data, "paymentId") or None
    txid = text(data, "txid") or None

    merchant = st.get_merchant(merchant_id)
    if not merchant:
        return error("Merchant not found", 404)

    if txid:
        existing = st.get_withdrawal_by_txid(txid)
        if existing:
            return _replayed_withdrawal(st, existing, merchant_id)

    available = float(merchant.get("available_balance") or 0)
    if amount > available:
        return error("Insufficient balance", 400, availableBalance=available)

    withdrawal, created = st.insert_withdrawal({
        "merchant_id": merchant_id,
        "amount": amount,
        "status": "pending",
        "pi_payment_id": payment_id,
        "txid": txid,
    })
    if not created:
        # a concurrent request recorded this txid first
        return _replayed_withdrawal(st, withdrawal, merchant_id)
    log.info("WITHDRAWAL_CREATED id=%s merchant=%s amount=%s", withdrawal["id"], merchant_id, amount)

    new_balance = available
    if txid:
        if not st.debit_merchant(merchant_id, amount):
            log.warning("WITHDRAWAL_DEBIT_REFUSED id=%s merchant=%s", withdrawal["id"], merchant_id)
            st.delete_withdrawal(withdrawal["id"])
            return error("Balance changed before the withdrawal could be applied", 409)
        withdrawal = st.complete_withdrawal(withdrawal["id"], txid)
        fresh = st.get_merchant(merchant_id) or {}
        new_balance = float(fresh.get("available_balance") or 0)
        log.info("WITHDRAWAL_COMPLETED id=%s txid=%s", withdrawal["id"], txid)

    return jsonify(success=True, withdrawal=withdrawal, newBalance=new_balance)
