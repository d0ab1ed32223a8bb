# receipts_api.py
import html
import logging
from datetime import datetime, timezone

from flask import Blueprint, jsonify

import emailer
from api_helpers import json_body, text, error
from store import get_store

log = logging.getLogger(__name__)

bp_receipts = Blueprint("receipts_api", __name__, url_prefix="/functions")

APP_NAME = "DropPay"
APP_URL  = "https://droppay.space"

def _money(amount, currency: str) -> str:
    symbol = "π" if currency in ("", "Pi", "PI", "π") else currency
    try:
        return f"{symbol} {float(amount):.2f}"
    except (TypeError, ValueError):
        return f"{symbol} -"

def build_receipt(data: dict) -> tuple[str, str]:
    """Returns (plain_text, html) for a payment receipt."""
    tx_id    = text(data, "transactionId")
    title    = text(data, "paymentLinkTitle") or "Payment"
    merchant = text(data, "merchantName") or APP_NAME
    payer    = text(data, "payerUsername").lstrip("@")
    email    = text(data, "buyerEmail")
    txid     = text(data, "txid")
    verified = bool(data.get("isBlockchainVerified"))
    amount   = _money(data.get("amount"), text(data, "currency") or "Pi")
    when     = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    status   = "VERIFIED" if verified else "Verifying..."

    lines = [
        f"TRANSACTION RECEIPT - {APP_NAME}",
        "",
        f"Receipt #: {tx_id}",
        f"Date: {when}",
        "",
        "PAYMENT DETAILS",
        f"Product/Service: {title}",
        f"Merchant: {merchant}",
        f"Amount: {amount}",
        "",
        "PAYER INFORMATION",
        f"Username: @{payer}" if payer else "Username: -",
        f"Email: {email}",
        "",
        "BLOCKCHAIN VERIFICATION",
        f"Transaction ID: {txid or 'Pending verification'}",
        f"Verification Status: {status}",
        "",
        "This receipt is proof of payment for both payer and merchant.",
        "",
        f"{APP_NAME} - Pi Payment Platform",
        APP_URL,
    ]
    plain = "\n".join(lines)

    e = html.escape
    rows = [
        ("Receipt #", tx_id), ("Date", when), ("Product/Service", title),
        ("Merchant", merchant), ("Amount", amount),
        ("Payer", f"@{payer}" if payer else "-"), ("Email", email),
        ("Transaction ID", txid or "Pending verification"),
        ("Verification", status),
    ]
    body = "".join(
        f"<tr><td style='padding:4px 12px 4px 0;color:#666'>{e(k)}</td>"
        f"<td style='padding:4px 0'><b>{e(v)}</b></td></tr>"
        for k, v in rows
    )
    page = (
        f"<div style='font-family:system-ui,Arial,sans-serif'>"
        f"<h2>{e(APP_NAME)} receipt</h2>"
        f"<table>{body}</table>"
        f"<p style='color:#666'>This receipt is proof of payment for both payer and merchant.</p>"
        f"<p><a href='{APP_URL}'>{e(APP_NAME)}</a></p></div>"
    )
    return plain, page


WITHDRAWAL_STATUSES = ("approved", "rejected", "completed")
SUPPORT_EMAIL = "support@droppay.space"

def _num(v) -> float | None:
    try:
        return float(v)
    except (TypeError, ValueError):
        return None

def _pi(v: float) -> str:
    return f"π{v:.4f}"

def _page(title: str, greeting: str, body: str) -> str:
    e = html.escape
    return (
        f"<div style='font-family:system-ui,Arial,sans-serif;max-width:600px'>"
        f"<h2>{e(title)}</h2>"
        f"<p style='color:#71717a'>{e(greeting)}</p>"
        f"{body}"
        f"<p style='color:#a1a1aa;font-size:12px'>Powered by {e(APP_NAME)} - Pi Network Payment Gateway</p>"
        f"</div>"
    )

def withdrawal_subject(status: str, amount: float, net: float) -> str:
    if status == "rejected":
        return f"Withdrawal Request Rejected ❌ - {_pi(amount)}"
    if status == "completed":
        return f"Withdrawal Complete ✅ - {_pi(net)} Received"
    return f"Withdrawal Approved ✅ - {_pi(amount)}"

def build_withdrawal_email(data: dict, amount: float, net: float, fee: float) -> tuple[str, str]:
    """Returns (plain_text, html) for a withdrawal status notice."""
    e = html.escape
    status      = text(data, "status").lower()
    name        = text(data, "merchantName")
    destination = text(data, "destination")
    tx_link     = text(data, "transactionLink")
    arrival     = text(data, "estimatedArrival")
    greeting    = f"Hi {name}," if name else "Hello,"

    if status == "rejected":
        title = "Withdrawal Request Rejected ❌"
        lines = [
            title, "", greeting, "",
            "Unfortunately, your withdrawal request has been rejected.",
            f"Amount: {_pi(amount)}",
            "",
            f"If you believe this is an error, please contact {SUPPORT_EMAIL}.",
        ]
        body = (
            f"<p>Unfortunately, your withdrawal request has been rejected. "
            f"Please contact support if you have questions.</p>"
            f"<p style='color:#991b1b'><b>Amount: {e(_pi(amount))}</b></p>"
            f"<p style='color:#a1a1aa'>If you believe this is an error, please contact {e(SUPPORT_EMAIL)}.</p>"
        )
        return "\n".join(lines), _page(title, greeting, body)

    title = "Withdrawal Complete ✅" if status == "completed" else "Withdrawal Approved ✅"
    lines = [
        title, "", greeting, "",
        f"Your withdrawal has been {status}.",
        f"Requested Amount: {_pi(amount)}",
        f"Platform Fee: -{_pi(fee)}",
        f"You Will Receive: {_pi(net)}",
        f"Destination: {destination}",
    ]
    if arrival:
        lines.append(f"Estimated Arrival: {arrival}")
    show_link = status == "completed" and tx_link.startswith(("https://", "http://"))
    if show_link:
        lines.append(f"View Transaction: {tx_link}")
    lines += ["", f"If you have any questions, please contact {SUPPORT_EMAIL}."]

    rows = [("Requested Amount", _pi(amount)), ("Platform Fee", f"-{_pi(fee)}"),
            ("You Will Receive", _pi(net)), ("Destination", destination)]
    if arrival:
        rows.append(("Estimated Arrival", arrival))
    body = (
        f"<p>Great news! Your withdrawal has been {e(status)}. Here are the details:</p>"
        f"<table>"
        + "".join(f"<tr><td style='padding:4px 12px 4px 0;color:#666'>{e(k)}</td>"
                  f"<td style='padding:4px 0'><b>{e(v)}</b></td></tr>" for k, v in rows)
        + "</table>"
    )
    if show_link:
        body += f"<p><a href='{e(tx_link, quote=True)}'>View Transaction</a></p>"
    body += f"<p style='color:#a1a1aa'>If you have any questions, please contact {e(SUPPORT_EMAIL)}.</p>"
    return "\n".join(lines), _page(title, greeting, body)

def build_download_email(title: str, url: str, recipient: str = "") -> tuple[str, str]:
    """Returns (plain_text, html) with the download link for a paid product."""
    e = html.escape
    greeting = f"Hi {recipient}," if recipient else "Hello,"
    lines = [
        "Your Download is Ready!", "", greeting, "",
        "Thank you for your purchase! Your payment has been confirmed and your content is ready for download.",
        "",
        f"Product: {title}",
        f"Download: {url}",
        "",
        "If you're using Pi Browser, the download may not work directly. "
        "Copy the link into another browser (Chrome, Safari, Firefox, etc.).",
        "This link will expire in 24 hours. If you have any issues, please contact the seller.",
    ]
    body = (
        f"<p>Thank you for your purchase! Your payment has been confirmed and your content is ready for download.</p>"
        f"<p style='color:#71717a'>Product</p><p><b>{e(title)}</b></p>"
        f"<p><a href='{e(url, quote=True)}'>Download Now</a></p>"
        f"<p style='color:#92400e'><b>Important:</b> If you're using Pi Browser, the download may not work "
        f"directly. Copy this link into another browser:</p>"
        f"<p style='font-family:monospace;word-break:break-all'>{e(url)}</p>"
        f"<p style='color:#a1a1aa;font-size:12px'>This link will expire in 24 hours. "
        f"If you have any issues, please contact the seller.</p>"
    )
    return "\n".join(lines), _page("Your Download is Ready!", greeting, body)

def _deliver(to: str, subject: str, page: str, plain: str, what: str):
    """Returns an error response, or None once the mail is handed to SMTP."""
    if not emailer.smtp_configured():
        return error("Email delivery not configured (SMTP_HOST)", 500)
    if not emailer.send_email(to, subject, page, text=plain):
        return error(f"Failed to send {what} email", 502)
    return None


@bp_receipts.route("/send-receipt-email", methods=["POST"])
def send_receipt_email():
    data = json_body() or {}
    buyer_email = text(data, "buyerEmail")
    tx_id = text(data, "transactionId")
    if not buyer_email or not tx_id:
        return error("Missing required fields", 400)

    plain, page = build_receipt(data)
    failed = _deliver(buyer_email, f"Your {APP_NAME} receipt #{tx_id[:8]}", page, plain, "receipt")
    if failed:
        return failed

    log.info("RECEIPT_SENT tx=%s", tx_id)
    return jsonify(success=True)


@bp_receipts.route("/send-withdrawal-email", methods=["POST"])
def send_withdrawal_email():
    """
    Body: { withdrawalId, merchantEmail, merchantName?, withdrawalAmount, netAmount,
            platformFee, status: approved|rejected|completed, destination,
            transactionLink?, estimatedArrival? }
    """
    data = json_body() or {}
    withdrawal_id = text(data, "withdrawalId")
    to = text(data, "merchantEmail")
    status = text(data, "status").lower()
    amount = _num(data.get("withdrawalAmount"))
    net = _num(data.get("netAmount"))
    fee = _num(data.get("platformFee"))
    if not withdrawal_id or not to or not text(data, "destination") or None in (amount, net, fee):
        return error("Missing required fields", 400)
    if status not in WITHDRAWAL_STATUSES:
        return error("status must be one of approved, rejected, completed", 400)

    plain, page = build_withdrawal_email(data, amount, net, fee)
    failed = _deliver(to, withdrawal_subject(status, amount, net), page, plain, "withdrawal")
    if failed:
        return failed
    log.info("WITHDRAWAL_EMAIL_SENT id=%s status=%s", withdrawal_id, status)

    try:
        if not get_store().mark_withdrawal_emailed(withdrawal_id):
            log.warning("WITHDRAWAL_EMAIL_MARK_MISSING id=%s", withdrawal_id)
    except Exception as e:
        log.error("WITHDRAWAL_EMAIL_MARK_FAIL id=%s err=%s", withdrawal_id, e)

    return jsonify(success=True, message="Withdrawal notification email sent")


@bp_receipts.route("/send-download-email", methods=["POST"])
def send_download_email():
    """Body: { buyerEmail, productTitle, downloadUrl, recipientName?, transactionId? }"""
    data = json_body() or {}
    to = text(data, "buyerEmail")
    title = text(data, "productTitle")
    url = text(data, "downloadUrl")
    tx_id = text(data, "transactionId")
    if not to or not title or not url:
        return error("Missing required fields", 400)
    if not url.startswith(("https://", "http://")):
        return error("downloadUrl must be an http(s) URL", 400)

    plain, page = build_download_email(title, url, text(data, "recipientName"))
    subject = f'🎉 Your purchase is ready! Download "{title}"'
    failed = _deliver(to, subject, page, plain, "download")
    if failed:
        return failed
    log.info("DOWNLOAD_EMAIL_SENT tx=%s", tx_id or "-")

    if tx_id:
        try:
            get_store().update_transaction(tx_id, {"buyer_email": to, "email_sent": True})
        except Exception as e:
            log.error("DOWNLOAD_EMAIL_MARK_FAIL tx=%s err=%s", tx_id, e)

    return jsonify(success=True, message="Email sent successfully")
