"""
Outbound customer messages over the Messenger Send API.

Fire-and-forget: a failed send is logged and reported as False, never
raised. Orders are final before anything is sent, so nothing here may undo
one.

Usage:
    from chatshop.services.messaging_service import notify, deliver_order

    notify(customer_id, "Your payment was received.")
    deliver_order(order)
"""

import logging

import requests
from flask import current_app

logger = logging.getLogger(__name__)


def notify(customer_id, text):
    """Send one text message to a customer. Returns True if it was accepted."""
    token = current_app.config.get("PAGE_ACCESS_TOKEN")
    if not token:
        logger.warning(f"Message to {customer_id} not sent — PAGE_ACCESS_TOKEN not configured.")
        return False

    try:
        resp = requests.post(
            current_app.config["GRAPH_API_URL"],
            params={"access_token": token},
            json={
                "recipient": {"id": customer_id},
                "message": {"text": text},
                "messaging_type": "RESPONSE",
            },
            timeout=current_app.config.get("MESSAGING_TIMEOUT", 10),
        )
    except requests.RequestException as e:
        logger.error(f"Failed to message {customer_id}: {e}")
        return False

    if resp.status_code >= 400:
        logger.error(f"Messenger rejected message to {customer_id}: HTTP {resp.status_code}")
        return False
    return True


def _format_payload(payload):
    if payload.startswith("http://") or payload.startswith("https://"):
        return f"🔗 {payload}"
    return f"🔑\n```\n{payload}\n```"


def format_delivery(order, contact_url=None):
    """Build the delivery messages for an order, in send order.

    A confirmation with the order code comes first, then one message per
    delivered unit (links as links, everything else as a code block), then
    a support line.
    """
    messages = [
        f"✅ Payment received. Order {order.code}, total {order.total_amount:.2f}."
    ]
    for item in order.items:
        for payload in item.payloads:
            messages.append(f"🎁 {item.name}\n{_format_payload(payload)}")
    if contact_url:
        messages.append(f"Problems with your order? Contact us: {contact_url}")
    else:
        messages.append("Problems with your order? Reply here and quote your order code.")
    return messages


def deliver_order(order):
    """Send an order's payloads to its customer. Returns the number of messages sent."""
    sent = 0
    for text in format_delivery(order, current_app.config.get("ADMIN_CONTACT_URL")):
        if notify(order.customer_id, text):
            sent += 1
    if sent == 0:
        logger.error(f"Order {order.code} delivered to nobody — customer {order.customer_id} must be contacted")
    else:
        logger.info(f"Delivered order {order.code}: {sent} message(s)")
    return sent
