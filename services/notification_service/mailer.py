"""
Order confirmation e-mail. Disabled (logged and skipped) unless EMAIL_HOST is set.
"""
import asyncio
import os
import smtplib
from email.message import EmailMessage
from html import escape
from typing import Protocol, Sequence

import structlog
from dotenv import load_dotenv

from services.order_service.models import Order

load_dotenv()

logger = structlog.get_logger(__name__)


class EmailSender(Protocol):
    async def send(self, subject: str, html: str, text: str) -> bool:
        ...


def render_order_email(orders: Sequence[Order]) -> tuple[str, str, str]:
    """Subject, HTML and plain-text body for one checkout group."""
    first = orders[0]
    total = sum((o.total_amount for o in orders), 0)
    discount = sum((o.discount_amount or 0 for o in orders), 0)
    subject = f"New order {first.order_number} - {total} TL"

    rows, lines = [], []
    for order in orders:
        for item in order.items:
            rows.append(
                f"<tr><td>{escape(item.display_name)}</td><td>{item.quantity}</td>"
                f"<td>{item.product_price}</td><td>{item.subtotal}</td></tr>"
            )
            lines.append(f"{item.quantity} x {item.display_name} = {item.subtotal}")

    html = (
        f"<h2>Order {escape(first.order_number)}</h2>"
        f"<p>{escape(first.customer_name)}<br>{escape(first.customer_phone)}<br>"
        f"{escape(first.customer_address)}</p>"
        + (f"<p><b>Notes:</b> {escape(first.notes)}</p>" if first.notes else "")
        + "<table><tr><th>Item</th><th>Qty</th><th>Price</th><th>Subtotal</th></tr>"
        + "".join(rows)
        + "</table>"
        + (f"<p>Discount ({escape(first.coupon_code or '')}): -{discount}</p>" if discount else "")
        + f"<p><b>Total: {total} TL</b> ({escape(first.payment_method)})</p>"
    )
    text = "\n".join(
        [f"Order {first.order_number}", first.customer_name, first.customer_phone, first.customer_address, ""]
        + lines
        + ["", f"Total: {total} TL"]
    )
    return subject, html, text


class SmtpEmailSender:

    def __init__(self, host: str | None = None, port: int | None = None, user: str | None = None,
                 password: str | None = None, sender: str | None = None, recipient: str | None = None):
        self.host = host if host is not None else os.getenv("EMAIL_HOST", "")
        self.port = port or int(os.getenv("EMAIL_PORT", "587"))
        self.user = user if user is not None else os.getenv("EMAIL_USER", "")
        self.password = password if password is not None else os.getenv("EMAIL_PASSWORD", "")
        self.sender = sender or os.getenv("EMAIL_FROM", self.user)
        self.recipient = recipient or os.getenv("EMAIL_TO", self.user)
        self.use_tls = os.getenv("EMAIL_USE_TLS", "true").lower() == "true"

    @property
    def enabled(self) -> bool:
        return bool(self.host and self.recipient)

    async def send(self, subject: str, html: str, text: str) -> bool:
        if not self.enabled:
            logger.info("email_skipped", reason="smtp not configured")
            return False

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.sender
        message["To"] = self.recipient
        message.set_content(text)
        message.add_alternative(html, subtype="html")

        # smtplib blocks; keep it off the event loop
        await asyncio.to_thread(self._deliver, message)
        logger.info("email_sent", subject=subject)
        return True

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password)
            smtp.send_message(message)
