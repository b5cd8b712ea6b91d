"""Order ledger — append-only record of completed orders."""

import logging
import secrets
from datetime import datetime, timezone
from decimal import Decimal

from chatshop.extensions import db
from chatshop.models.checkout import PaymentMethod
from chatshop.models.order import Order, OrderItem

logger = logging.getLogger(__name__)


def generate_order_code(customer_id: str) -> str:
    """e.g. "ORD-20260101120000-5678-9f3a"."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"ORD-{stamp}-{customer_id[-4:]}-{secrets.token_hex(2)}"


def append_order(customer_id, items, total, method, proof_reference=None, commit=False):
    """Append a completed order.

    Args:
        customer_id: The buyer.
        items: Iterable of dicts with product_id, name, unit_price, quantity
            and payloads (the exact stock units delivered), in cart order.
        total: The frozen checkout total.
        method: PaymentMethod used.
        proof_reference: Voucher hash, slip reference id or code.
        commit: Settlement leaves this False and commits the whole
            transaction itself; the order is only flushed here.

    Returns:
        The new Order.
    """
    order = Order(
        code=generate_order_code(customer_id),
        customer_id=customer_id,
        total_amount=Decimal(total),
        payment_method=PaymentMethod(method).value,
        proof_reference=proof_reference,
        status="completed",
    )
    for position, item in enumerate(items):
        payloads = list(item["payloads"])
        order.items.append(
            OrderItem(
                position=position,
                product_id=item["product_id"],
                name=item["name"],
                unit_price=Decimal(item["unit_price"]),
                quantity=len(payloads),
                payloads=payloads,
            )
        )
    db.session.add(order)
    if commit:
        db.session.commit()
    else:
        db.session.flush()

    logger.info(f"Appended order {order.code} for {customer_id} ({order.total_amount})")
    return order


def get_order(code: str):
    return Order.query.filter_by(code=code).first()


def orders_for_customer(customer_id: str) -> list:
    """Newest first."""
    return (
        Order.query.filter_by(customer_id=customer_id)
        .order_by(Order.created_at.desc(), Order.code.desc())
        .all()
    )
