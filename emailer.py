# emailer.py
import logging, smtplib, ssl
from email.message import EmailMessage

import config

log = logging.getLogger(__name__)

def _smtp_settings():
    host = config.env("SMTP_HOST")                      # e.g. smtp.gmail.com
    try:
        port = int(config.env("SMTP_PORT", "587"))      # 587 STARTTLS, 465 SSL
    except ValueError:
        port = 587
    user = config.env("SMTP_USER")
    password = config.env("SMTP_PASS").replace(" ", "")  # app passwords are shown with spaces
    sender = config.env("FROM_EMAIL") or user or "no-reply@droppay.space"
    return host, port, user, password, sender

def smtp_configured() -> bool:
    return bool(config.env("SMTP_HOST"))

def _smtp_client(host, port, user, password):
    if port == 465:
        server = smtplib.SMTP_SSL(host, port, context=ssl.create_default_context(), timeout=20)
    else:
        server = smtplib.SMTP(host, port, timeout=20)
        server.ehlo()
        try:
            server.starttls(context=ssl.create_default_context())
            server.ehlo()
        except smtplib.SMTPException:
            # some providers negotiate TLS on their own
            pass
    if user:
        server.login(user, password)
    return server

def send_email(to: str, subject: str, html: str, text: str | None = None) -> bool:
    """
    Send an HTML email with a plain-text part.
    Returns True/False; failures are logged, not raised.
    """
    if not to:
        log.warning("EMAIL_NO_RECIPIENT subject=%r", subject)
        return False
    host, port, user, password, sender = _smtp_settings()
    if not host:
        log.warning("EMAIL_SMTP_NOT_CONFIGURED need SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASS")
        return False

    try:
        msg = EmailMessage()
        msg["From"] = sender
        msg["To"] = to
        msg["Subject"] = subject

        fallback = text or (html or "").replace("<br>", "\n").replace("<br/>", "\n")
        msg.set_content(fallback or " ")
        msg.add_alternative(html or "<p></p>", subtype="html")

        with _smtp_client(host, port, user, password) as s:
            s.send_message(msg)

        log.info("EMAIL_SENT to=%r subject=%r", to, subject)
        return True
    except Exception as e:
        log.error("EMAIL_SEND_FAIL to=%r err=%r host=%s port=%s user_set=%s",
                  to, e, host, port, bool(user))
        return False
