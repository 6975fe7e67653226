"""Order confirmation email.

Sending happens after the checkout transaction committed, from a FastAPI
background task. Failures are logged and never reach the caller.
"""
import logging
import smtplib
from email.message import EmailMessage

import config

logger = logging.getLogger(__name__)


def order_confirmation_message(user: dict, order: dict) -> EmailMessage:
    address = order["shipping_address"]
    msg = EmailMessage()
    msg["Subject"] = f"Order Confirmation - {order['order_number']}"
    msg["From"] = config.EMAIL_FROM
    msg["To"] = user["email"]
    lines = [
        f"Hi {address['full_name']},",
        "",
        f"Thanks for your order {order['order_number']}.",
        "",
    ]
    for item in order["items"]:
        lines.append(f"  {item['quantity']} x {item['name']} @ {item['price']:.2f}")
    lines += [
        "",
        f"Subtotal: {order['subtotal']:.2f}",
        f"Discount: {order['discount']:.2f}",
        f"Shipping: {order['shipping_fee']:.2f}",
        f"Total: {order['total_amount']:.2f}",
        f"Payment method: {order['payment_method']}",
        f"Status: {order['order_status']}",
        "",
        f"Shipping to: {address['street_address']}, {address['city']}, {address['country']}",
    ]
    msg.set_content("\n".join(lines))
    return msg


class SmtpNotifier:
    def __init__(self, host: str = None, port: int = None, username: str = None, password: str = None):
        self.host = host or config.SMTP_HOST
        self.port = port or config.SMTP_PORT
        self.username = username or config.SMTP_USERNAME
        self.password = password or config.SMTP_PASSWORD

    def send(self, message: EmailMessage):
        if not self.host:
            logger.info("SMTP_HOST not set, skipping email to %s", message["To"])
            return
        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(message)

    def order_confirmation(self, user: dict, order: dict):
        self.send(order_confirmation_message(user, order))


def send_order_confirmation(notifier, user: dict, order: dict):
    try:
        notifier.order_confirmation(user, order)
    except Exception:
        logger.exception("Order confirmation email failed for order %s", order.get("id"))


_notifier = None


def get_notifier():
    global _notifier
    if _notifier is None:
        _notifier = SmtpNotifier()
    return _notifier
