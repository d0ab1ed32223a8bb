# payments_api.py
import logging
from decimal import Decimal, InvalidOperation

from flask import Blueprint, jsonify

import config
import pi_api
import subscriptions
from api_helpers import json_body, text, error, mask
from config import ConfigError
from pi_api import PiApiError, TxNotFound, UpstreamError
from store import get_store, link_table, now_iso
from verification import TX_LOOKUP_LIMIT, run_checks, pick_transaction_row, verification_update

log = logging.getLogger(__name__)

bp_payments = Blueprint("payments_api", __name__, url_prefix="/functions")

ALREADY_COMPLETED_HINTS = ("already", "completed", "duplicate")


# ---------- helpers ----------
def _check_link(st, link_id: str, is_checkout: bool, is_subscription: bool):
    """
    Returns (link, blocked_response). blocked_response is None when the
    payment may go ahead.
    """
    link = st.get_link(link_table(is_checkout), link_id)
    if not link:
        return None, error("Payment link not found", 404)
    if not link.get("is_active"):
        return link, error("Payment link is inactive", 400)

    # subscription purchases skip this so an expired merchant can renew
    if not is_subscription:
        try:
            sub = st.latest_active_subscription(link["merchant_id"])
        except Exception as e:
            log.error("SUBSCRIPTION_LOOKUP_FAIL merchant=%s err=%s", link["merchant_id"], e)
            return link, error("Subscription validation failed", 500)
        if subscriptions.is_expired(sub):
            return link, error("Merchant subscription expired. Please renew plan to accept payments.", 403)
    return link, None

def _already_completed(e: PiApiError) -> bool:
    body = (e.detail or "").lower()
    return e.status in (400, 409) and any(h in body for h in ALREADY_COMPLETED_HINTS)

def _first_amount(*candidates):
    for c in candidates:
        if c is None or c == "":
            continue
        try:
            return float(Decimal(str(c)))
        except (InvalidOperation, ValueError):
            continue
    return None

def _upstream_amount(result):
    if not isinstance(result, dict):
        return None
    return (result.get("payment") or {}).get("amount") or result.get("amount")

def _activate_subscription(st, data: dict, link: dict | None, result, payment_id: str, txid: str):
    """
    Best-effort. Returns the transaction recorded for a link-less subscription
    payment, else None.
    """
    payer = text(data, "payerUsername") or None
    merchant_id = text(data, "merchantId") or (link["merchant_id"] if link else None)
    if not merchant_id and payer:
        m = st.get_merchant_by_username(payer)
        merchant_id = m["id"] if m else None
    if not merchant_id:
        log.error("SUBSCRIPTION_NO_MERCHANT payment=%s payer=%s", payment_id, payer)
        return None

    plan_id = text(data, "planId")
    plan = st.get_plan(plan_id) if plan_id else None
    if not plan:
        plan = subscriptions.resolve_plan(st.list_plans(), data.get("paymentType"), data.get("amount"))
    if not plan:
        log.error("SUBSCRIPTION_NO_PLANS payment=%s", payment_id)
        return None

    st.upsert_subscription(subscriptions.activation_row(merchant_id, plan, payer))
    log.info("SUBSCRIPTION_ACTIVATED merchant=%s plan=%s", merchant_id, plan.get("name"))

    tx = None
    if not link:
        tx = st.insert_transaction({
            "merchant_id": merchant_id,
            "payment_link_id": None,
            "pi_payment_id": payment_id,
            "payer_pi_username": payer,
            "amount": _first_amount(data.get("amount"), plan.get("amount"), _upstream_amount(result)),
            "status": "completed",
            "completed_at": now_iso(),
            "txid": txid,
            "buyer_email": text(data, "buyerEmail") or None,
        })

    limit = plan.get("link_limit")
    st.insert_notification(
        merchant_id,
        "🎉 Subscription Activated!",
        f"Your {plan.get('name')} plan is now active. "
        f"Enjoy {limit if limit is not None else 'unlimited'} payment links!",
    )
    return tx


# ---------- routes ----------
@bp_payments.route("/approve-payment", methods=["POST"])
def approve_payment():
    """
    Body: { paymentId, paymentLinkId?, isCheckoutLink?, isSubscription? }
    Forwards the approve call to the Pi Platform once the link checks pass.
    """
    api_key = config.pi_api_key()
    st = get_store()

    data = json_body()
    if data is None:
        return error("Invalid JSON payload", 400)
    payment_id = text(data, "paymentId")
    if not payment_id:
        return error("paymentId is required", 400)

    link_id = text(data, "paymentLinkId")
    if link_id:
        _, blocked = _check_link(st, link_id, bool(data.get("isCheckoutLink")),
                                 bool(data.get("isSubscription")))
        if blocked:
            return blocked

    try:
        result = pi_api.approve_payment(payment_id, api_key)
    except PiApiError as e:
        return error("Pi API approve failed", 502, details=e.detail, piStatus=e.status)

    log.info("PAYMENT_APPROVED payment=%s link=%s", payment_id, link_id or "-")
    return jsonify(success=True, result=result)


@bp_payments.route("/complete-payment", methods=["POST"])
def complete_payment():
    """
    Body: { paymentId, txid, paymentLinkId?, isCheckoutLink?, isSubscription?,
            payerUsername?, buyerEmail?, amount?, paymentType?, merchantId?, planId? }
    """
    api_key = config.pi_api_key()
    st = get_store()

    data = json_body()
    if data is None:
        return error("Invalid JSON payload", 400)
    payment_id = text(data, "paymentId")
    txid = text(data, "txid")
    if not payment_id or not txid:
        return error("paymentId and txid are required", 400)

    is_checkout = bool(data.get("isCheckoutLink"))
    is_subscription = bool(data.get("isSubscription"))
    link_id = text(data, "paymentLinkId")

    existing = st.find_transaction_by_payment_id(payment_id)
    if existing:
        log.info("PAYMENT_ALREADY_RECORDED payment=%s tx=%s", payment_id, existing["id"])
        return jsonify(success=True, message="Payment already completed", transactionId=existing["id"])

    link = None
    if link_id:
        link, blocked = _check_link(st, link_id, is_checkout, is_subscription)
        if blocked:
            return blocked

    try:
        result = pi_api.complete_payment(payment_id, txid, api_key)
    except PiApiError as e:
        if not _already_completed(e):
            return error("Pi API complete failed", 502, details=e.detail, piStatus=e.status)
        log.warning("PI_COMPLETE_IDEMPOTENT payment=%s status=%s", payment_id, e.status)
        result = {"alreadyCompleted": True}

    tx = None
    if link:
        table = link_table(is_checkout)
        try:
            if st.decrement_stock(table, link_id):
                log.info("LINK_STOCK_DECREMENTED link=%s", link_id)
        except Exception as e:
            log.warning("LINK_STOCK_FAIL link=%s err=%s", link_id, e)

        try:
            tx = st.insert_transaction({
                "merchant_id": link["merchant_id"],
                "payment_link_id": None if is_checkout else link_id,
                "pi_payment_id": payment_id,
                "payer_pi_username": text(data, "payerUsername") or None,
                "amount": _first_amount(data.get("amount"), _upstream_amount(result), link.get("amount")),
                "status": "completed",
                "completed_at": now_iso(),
                "txid": txid,
                "buyer_email": text(data, "buyerEmail") or None,
                "metadata": {"source_link_table": table, "source_link_id": link_id},
            })
        except Exception as e:
            log.exception("TX_INSERT_FAIL payment=%s", payment_id)
            return error("Failed to record transaction", 500, details=str(e))
        if not tx or not tx.get("id"):
            return error("Transaction recorded but no ID returned", 500)

        try:
            st.increment_conversions(table, link_id)
        except Exception as e:
            log.warning("LINK_CONVERSIONS_FAIL link=%s err=%s", link_id, e)

    if is_subscription:
        try:
            sub_tx = _activate_subscription(st, data, link, result, payment_id, txid)
            tx = tx or sub_tx
        except Exception:
            log.exception("SUBSCRIPTION_ACTIVATION_FAIL payment=%s", payment_id)

    log.info("PAYMENT_COMPLETED payment=%s tx=%s", payment_id, tx["id"] if tx else "-")
    return jsonify(success=True, result=result, transactionId=(tx["id"] if tx else None))


@bp_payments.route("/verify-payment", methods=["POST"])
def verify_payment():
    """
    Body: { txid, expectedAmount, merchantWallet?, paymentLinkId? }
    Checks the on-chain transaction and records the outcome on the local row.
    Never downgrades a row; an unverified payment stays pending.
    """
    try:
        st = get_store()
    except ConfigError as e:
        return jsonify(verified=False, error=str(e)), 500

    data = json_body() or {}
    txid = text(data, "txid")
    if not txid:
        return jsonify(verified=False, error="txid is required"), 400
    expected = data.get("expectedAmount")
    wallet = text(data, "merchantWallet") or None
    link_id = text(data, "paymentLinkId") or None

    log.info("VERIFY_START txid=%s expected=%s wallet=%s", txid, expected, mask(wallet))

    lookup = pi_api.fetch_transaction(txid)
    if isinstance(lookup, TxNotFound):
        return jsonify(verified=False, error="Transaction not found on blockchain", details=lookup.detail)
    if isinstance(lookup, UpstreamError):
        return jsonify(verified=False, error="Blockchain lookup failed",
                       details=lookup.detail, upstreamStatus=lookup.status), 502

    checks = run_checks(lookup, expected, wallet)
    verified = all(checks.values())
    log.info("VERIFY_RESULT txid=%s verified=%s checks=%s amount=%s receiver=%s",
             txid, verified, checks, lookup.amount, mask(lookup.receiver))

    row = pick_transaction_row(st.find_transactions_by_txid(txid, TX_LOOKUP_LIMIT), link_id)
    if row:
        try:
            st.update_transaction(row["id"], verification_update(lookup, verified))
        except Exception as e:
            log.error("VERIFY_UPDATE_FAIL tx=%s err=%s", row["id"], e)
    else:
        log.info("VERIFY_NO_LOCAL_ROW txid=%s link=%s", txid, link_id or "-")

    return jsonify(
        verified=verified,
        transaction={
            "txid": txid,
            "sender": lookup.sender,
            "receiver": lookup.receiver,
            "amount": float(lookup.amount),
            "status": "confirmed" if lookup.successful else "pending",
            "blockHeight": lookup.ledger,
        },
        checks=checks,
    )
