"""
Outbound email over an SMTP relay (Brevo by default).

Port 465 uses implicit TLS, anything else upgrades with STARTTLS.
"""

import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Any, Dict

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("SMTP_HOST", "smtp-relay.brevo.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
SMTP_SECURE = os.getenv("SMTP_SECURE", "true" if SMTP_PORT == 465 else "false").lower() == "true"
SMTP_TIMEOUT = 60
EMAIL_FROM = os.getenv("EMAIL_FROM", "no-reply@bakehub.com")


class EmailDeliveryError(Exception):
    pass


def is_configured() -> bool:
    return bool(SMTP_USER and SMTP_PASS)


def _send(to: str, subject: str, html: str, sender_name: str) -> None:
    if not is_configured():
        raise EmailDeliveryError("Email service not configured. Missing SMTP credentials.")

    msg = EmailMessage()
    msg["From"] = f"{sender_name} <{EMAIL_FROM}>"
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content("Please view this message in an HTML capable email client.")
    msg.add_alternative(html, subtype="html")

    try:
        if SMTP_SECURE:
            with smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT) as smtp:
                smtp.login(SMTP_USER, SMTP_PASS)
                smtp.send_message(msg)
        else:
            with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT) as smtp:
                smtp.starttls()
                smtp.login(SMTP_USER, SMTP_PASS)
                smtp.send_message(msg)
    except smtplib.SMTPAuthenticationError as e:
        raise EmailDeliveryError("Authentication failed. Check your SMTP username and password.") from e
    except (smtplib.SMTPException, OSError) as e:
        raise EmailDeliveryError(f"Could not send email via {SMTP_HOST}:{SMTP_PORT}: {e}") from e


def send_otp_email(email: str, otp: str) -> None:
    html = f"""
        <div style="font-family: Arial, sans-serif">
          <h2>Your OTP Code</h2>
          <p>Use the following OTP to login:</p>
          <h1 style="letter-spacing: 4px">{otp}</h1>
          <p>This OTP is valid for 5 minutes.</p>
        </div>
    """
    _send(email, "Your BakeHub OTP", html, "BakeHub OTP")


def send_order_confirmation(email: str, order: Dict[str, Any]) -> None:
    lines = "".join(
        f"<li>{it['name']} {it.get('weight', '')} × {it['quantity']} - ₹{it['price'] * it['quantity']:.2f}</li>"
        for it in order.get("items", [])
    )
    delivery = order.get("delivery_date")
    delivery_text = delivery.date().isoformat() if hasattr(delivery, "date") else str(delivery or "")
    html = f"""
        <div style="font-family: Arial, sans-serif">
          <h2>Order Confirmed!</h2>
          <p>Thank you for your order.</p>
          <p><strong>Order ID:</strong> {order['id']}</p>
          <ul>{lines}</ul>
          <p><strong>Total:</strong> ₹{order['total']:.2f}</p>
          <p><strong>Delivery:</strong> {delivery_text} {order.get('delivery_time', '')}</p>
        </div>
    """
    _send(email, "Your BakeHub Order Confirmation", html, "BakeHub Orders")
    logger.info("Order confirmation for %s sent to %s", order["id"], email)
