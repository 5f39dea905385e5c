"""
Purchase confirmation emails: sender adapters, templates and the service
that sends the buyer receipt and the admin alert after checkout.
"""
import html
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional
from uuid import uuid4

import httpx

from storefront.config import Config
from storefront.exceptions import EmailDeliveryError
from storefront.models import Cart

logger = logging.getLogger(__name__)


class EmailSender(ABC):
    """Abstract interface for email dispatch adapters"""

    @abstractmethod
    def send(self, to: str, subject: str, html_body: str, text_body: Optional[str] = None) -> Dict[str, Any]:
        """Send a message. Raises EmailDeliveryError on failure."""
        ...


class MailgunEmailSender(EmailSender):
    """Mailgun HTTP API adapter"""

    def __init__(
        self,
        api_key: str,
        domain: str,
        sender: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.domain = domain
        self.sender = sender or f"{Config.DOMAIN_NAME} <{Config.EMAIL_INFO}>"
        self.client = httpx.Client(
            base_url=base_url or Config.MAILGUN_API_URL,
            auth=("api", api_key),
            timeout=timeout or Config.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    def send(self, to: str, subject: str, html_body: str, text_body: Optional[str] = None) -> Dict[str, Any]:
        data = {"from": self.sender, "to": to, "subject": subject, "html": html_body}
        if text_body:
            data["text"] = text_body

        try:
            response = self.client.post(f"/{self.domain}/messages", data=data)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise EmailDeliveryError(f"Unable to send email to {to}: {e}")
        return response.json()


class FakeEmailSender(EmailSender):
    """Email adapter that records messages in memory"""

    def __init__(self):
        self.sent_emails: List[Dict[str, Any]] = []
        self.should_succeed = True
        self.failure_reason = "Email delivery failed"

    def configure(self, should_succeed: bool = True, failure_reason: str = "Email delivery failed"):
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def send(self, to: str, subject: str, html_body: str, text_body: Optional[str] = None) -> Dict[str, Any]:
        if not self.should_succeed:
            raise EmailDeliveryError(self.failure_reason)

        message_id = f"email-{uuid4().hex[:12]}"
        self.sent_emails.append({
            "message_id": message_id,
            "to": to,
            "subject": subject,
            "html_body": html_body,
            "text_body": text_body,
        })
        return {"id": message_id, "message": "Queued. Thank you."}


def substring_on_words(text: str, max_len: int = 25, suffix: Optional[str] = "...") -> str:
    """
    Shorten text to at most max_len characters without breaking words.

    A single word longer than max_len is cut mid-word. The suffix is
    appended only when something was removed.
    """
    clean = text.strip()
    end = suffix or ""
    words: List[str] = []
    length = 0

    for index, part in enumerate(clean.split(" ") if clean else []):
        needed = len(part) + (1 if index > 0 else 0)
        if length + needed > max_len:
            break
        words.append(part)
        length += needed

    if not words:
        return clean[:max_len] + end if len(clean) > max_len else clean

    done = " ".join(words)
    return done + end if len(clean) > len(done) else done


def purchase_description(cart: Cart) -> Optional[str]:
    """Short order title, e.g. '"Linen Apron" and 2 more items'"""
    if not cart.cart_items or cart.cart_items[0].product is None:
        return None

    first_item = substring_on_words(cart.cart_items[0].product.title)
    remaining = cart.num_items - 1
    if remaining <= 0:
        return f'"{first_item}"'

    noun = "item" if remaining == 1 else "items"
    return f'"{first_item}" and {remaining} more {noun}'


def _totals_rows(cart: Cart) -> str:
    rows = [
        ("Subtotal", cart.sub_total),
        ("Shipping", cart.shipping_total),
        ("Sales tax", cart.sales_tax),
        ("Total", cart.grand_total),
    ]
    return "".join(f"<tr><td>{label}</td><td>${value}</td></tr>" for label, value in rows)


class PurchaseReceiptTemplate:
    """Receipt sent to the buyer"""

    @staticmethod
    def render(cart: Cart, payment_id: str, order_title: str, base_url: str) -> Dict[str, str]:
        shipping = cart.shipping
        name = html.escape(shipping.full_name) if shipping else ""
        address = html.escape(shipping.street_address) if shipping else ""
        return {
            "subject": f"Your order from {Config.DOMAIN_NAME} - {order_title}",
            "html": (
                f"<h1>Thank you for your order</h1>"
                f"<p>Order {html.escape(order_title)}</p>"
                f"<p>Shipping to {name}, {address}</p>"
                f"<table>{_totals_rows(cart)}</table>"
                f'<p><a href="{base_url}/order/{payment_id}">View your order</a></p>'
            ),
        }


class AdminPurchaseAlertTemplate:
    """New order alert sent to the store admin"""

    @staticmethod
    def render(cart: Cart, payment_id: str, order_title: str, base_url: str) -> Dict[str, str]:
        shipping = cart.shipping
        lines = []
        if shipping:
            lines = [
                shipping.full_name,
                shipping.company,
                shipping.street_address,
                shipping.extended_address,
                f"{shipping.city}, {shipping.state} {shipping.postal_code}",
                shipping.country_code_alpha2,
                shipping.email,
            ]
        address = "<br>".join(html.escape(line) for line in lines if line)
        return {
            "subject": f"NEW ORDER: {order_title}",
            "html": (
                f"<h1>New order {html.escape(order_title)}</h1>"
                f"<p>{address}</p>"
                f"<table>{_totals_rows(cart)}</table>"
                f'<p><a href="{base_url}/admin/payments/{payment_id}">Open payment</a></p>'
            ),
        }


class PurchaseEmailService:
    """Sends the buyer receipt and the admin alert concurrently"""

    def __init__(
        self,
        email_sender: EmailSender,
        admin_email: Optional[str] = None,
        base_url: Optional[str] = None
    ):
        self.email_sender = email_sender
        self.admin_email = admin_email or Config.EMAIL_ADMIN
        self.base_url = (base_url or Config.SITE_URL).rstrip("/")

    def _send_receipt(self, cart: Cart, payment_id: str, order_title: str) -> Dict[str, Any]:
        message = PurchaseReceiptTemplate.render(cart, payment_id, order_title, self.base_url)
        return self.email_sender.send(cart.shipping.email, message["subject"], message["html"])

    def _send_admin_alert(self, cart: Cart, payment_id: str, order_title: str) -> Dict[str, Any]:
        message = AdminPurchaseAlertTemplate.render(cart, payment_id, order_title, self.base_url)
        return self.email_sender.send(self.admin_email, message["subject"], message["html"])

    def send_purchase_emails(self, cart: Cart, payment_id: str) -> None:
        """
        Send both emails. Raises EmailDeliveryError if either one fails,
        after both attempts have finished.
        """
        if cart.shipping is None:
            raise EmailDeliveryError("Cart has no shipping email address")

        order_title = purchase_description(cart) or "your order"
        with ThreadPoolExecutor(max_workers=2) as executor:
            futures = [
                executor.submit(self._send_receipt, cart, payment_id, order_title),
                executor.submit(self._send_admin_alert, cart, payment_id, order_title),
            ]
            errors = [future.exception() for future in futures]

        failures = [error for error in errors if error is not None]
        if failures:
            raise EmailDeliveryError(
                "; ".join(str(error) for error in failures)
            ) from failures[0]
