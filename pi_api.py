# pi_api.py
"""
Thin client for the Pi Platform API.

Every call is a single attempt. Callers decide what an upstream failure means
for their response; nothing here retries or backs off.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import requests

import config

log = logging.getLogger(__name__)


class PiApiError(Exception):
    """Non-2xx answer (or no answer) from the Pi Platform API."""

    def __init__(self, status: int | None, detail: str):
        super().__init__(f"Pi API error status={status}: {detail[:200]}")
        self.status = status
        self.detail = detail


# ---------- transaction lookup result ----------
@dataclass(frozen=True)
class TxSuccess:
    txid: str
    sender: str
    receiver: str
    amount: Decimal
    successful: bool
    ledger: int | None = None

@dataclass(frozen=True)
class TxNotFound:
    txid: str
    detail: str = ""

@dataclass(frozen=True)
class UpstreamError:
    status: int | None
    detail: str

TxLookup = TxSuccess | TxNotFound | UpstreamError


# ---------- helpers ----------
def pi_headers(api_key: str | None = None) -> dict:
    key = api_key or config.pi_api_key()
    return {"Authorization": f"Key {key}", "Content-Type": "application/json"}

def safe_json(resp):
    try:
        return resp.json()
    except Exception:
        return {"text": resp.text[:4000], "status": resp.status_code}

def _url(path: str) -> str:
    return f"{config.pi_api_base()}/{path.lstrip('/')}"

def _to_amount(v) -> Decimal:
    try:
        return Decimal(str(v))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0")


# ---------- payments ----------
def approve_payment(payment_id: str, api_key: str | None = None):
    """POST /payments/{id}/approve. Returns the upstream JSON as-is."""
    headers = pi_headers(api_key)
    try:
        r = requests.post(_url(f"payments/{payment_id}/approve"),
                          headers=headers, timeout=config.pi_api_timeout())
    except requests.RequestException as e:
        raise PiApiError(None, str(e)) from e
    if not r.ok:
        log.warning("PI_APPROVE_FAIL payment=%s status=%s", payment_id, r.status_code)
        raise PiApiError(r.status_code, r.text)
    return safe_json(r)

def complete_payment(payment_id: str, txid: str, api_key: str | None = None):
    """POST /payments/{id}/complete with the blockchain txid."""
    headers = pi_headers(api_key)
    try:
        r = requests.post(_url(f"payments/{payment_id}/complete"),
                          headers=headers, json={"txid": txid},
                          timeout=config.pi_api_timeout())
    except requests.RequestException as e:
        raise PiApiError(None, str(e)) from e
    if not r.ok:
        log.warning("PI_COMPLETE_FAIL payment=%s status=%s", payment_id, r.status_code)
        raise PiApiError(r.status_code, r.text)
    return safe_json(r)


# ---------- blockchain ----------
def parse_transaction(txid: str, data: dict) -> TxSuccess:
    """
    Pull sender / receiver / amount out of a transaction body.
    Only the first payment operation counts.
    """
    sender = data.get("source_account") or ""
    receiver = ""
    amount = Decimal("0")
    for op in data.get("operations") or []:
        if not isinstance(op, dict):
            continue
        if op.get("type") == "payment" or op.get("type_i") == 1:
            sender = op.get("from") or op.get("source_account") or sender
            receiver = op.get("to") or op.get("destination") or ""
            amount = _to_amount(op.get("amount"))
            break
    ledger = data.get("ledger")
    return TxSuccess(
        txid=txid,
        sender=sender,
        receiver=receiver,
        amount=amount,
        successful=data.get("successful") is True,
        ledger=int(ledger) if isinstance(ledger, int) else None,
    )

def fetch_transaction(txid: str) -> TxLookup:
    """GET /transactions/{txid}. Public endpoint, sent without a key."""
    try:
        r = requests.get(_url(f"transactions/{txid}"),
                         headers={"Content-Type": "application/json"},
                         timeout=config.pi_api_timeout())
    except requests.RequestException as e:
        log.warning("PI_TX_FETCH_ERROR txid=%s err=%s", txid, e)
        return UpstreamError(None, str(e))

    if r.status_code == 404:
        return TxNotFound(txid, r.text[:4000])
    if not r.ok:
        log.warning("PI_TX_FETCH_FAIL txid=%s status=%s", txid, r.status_code)
        return UpstreamError(r.status_code, r.text[:4000])
    try:
        body = r.json()
    except ValueError:
        return UpstreamError(r.status_code, r.text[:4000])
    if not isinstance(body, dict):
        return UpstreamError(r.status_code, r.text[:4000])
    return parse_transaction(txid, body)


# ---------- ads network ----------
def fetch_ad_status(ad_id: str, api_key: str | None = None) -> dict:
    """GET /ads_network/status/{id}. Returns the mediator fields."""
    headers = pi_headers(api_key)
    try:
        r = requests.get(_url(f"ads_network/status/{ad_id}"),
                         headers=headers, timeout=config.pi_api_timeout())
    except requests.RequestException as e:
        raise PiApiError(None, str(e)) from e
    if not r.ok:
        raise PiApiError(r.status_code, r.text)
    data = safe_json(r)
    if not isinstance(data, dict):
        data = {}
    return {
        "mediator_ack_status": data.get("mediator_ack_status"),
        "mediator_granted_at": data.get("mediator_granted_at"),
        "mediator_revoked_at": data.get("mediator_revoked_at"),
    }
