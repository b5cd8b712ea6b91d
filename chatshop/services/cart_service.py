"""Cart service — per-customer cart lines with name/price snapshots.

Quantities are soft-checked against stock when added. Stock is checked
again, authoritatively, when checkout starts and at settlement.
"""

import logging
from decimal import Decimal

from chatshop.extensions import db
from chatshop.models.cart import CartItem
from chatshop.models.catalog import Product
from chatshop.services import inventory_service

logger = logging.getLogger(__name__)


class CartError(ValueError):
    """Rejected cart change (unknown product, bad quantity, not enough stock)."""


def get_cart(customer_id: str) -> list:
    """Cart lines in the order they were first added."""
    return (
        CartItem.query.filter_by(customer_id=customer_id)
        .order_by(CartItem.id)
        .all()
    )


def cart_total(customer_id: str) -> Decimal:
    return sum((item.line_total for item in get_cart(customer_id)), Decimal("0"))


def add_to_cart(customer_id: str, product_id: str, quantity: int = 1) -> CartItem:
    """Add units of a product, snapshotting its name and price on first add.

    Raises:
        CartError: unknown product, non-positive quantity, or the resulting
            quantity exceeds current stock.
    """
    if quantity is None or quantity < 1:
        raise CartError("Quantity must be at least 1")

    product = db.session.get(Product, product_id)
    if product is None:
        raise CartError("Product not found")

    item = CartItem.query.filter_by(
        customer_id=customer_id, product_id=product_id
    ).first()
    wanted = quantity + (item.quantity if item else 0)
    available = inventory_service.check_available(product_id)
    if wanted > available:
        logger.warning(
            f"Cart add rejected for {customer_id}: {product.name} "
            f"wanted {wanted}, available {available}"
        )
        raise CartError(f"Only {available} left in stock for {product.name}")

    if item is None:
        item = CartItem(
            customer_id=customer_id,
            product_id=product.id,
            quantity=quantity,
            product_name=product.name,
            unit_price=product.price,
        )
        db.session.add(item)
    else:
        item.quantity = wanted
    db.session.commit()

    logger.info(f"Cart {customer_id}: {product.name} x{item.quantity}")
    return item


def remove_from_cart(customer_id: str, product_id: str, quantity: int = None) -> bool:
    """Remove `quantity` units of a product, or the whole line when None.

    Returns False if the product was not in the cart.
    """
    item = CartItem.query.filter_by(
        customer_id=customer_id, product_id=product_id
    ).first()
    if item is None:
        return False

    if quantity is None or quantity >= item.quantity:
        db.session.delete(item)
    elif quantity < 1:
        raise CartError("Quantity must be at least 1")
    else:
        item.quantity -= quantity
    db.session.commit()
    return True


def clear_cart(customer_id: str, commit: bool = True) -> int:
    result = db.session.execute(
        db.delete(CartItem)
        .where(CartItem.customer_id == customer_id)
        .execution_options(synchronize_session=False)
    )
    if commit:
        db.session.commit()
    return result.rowcount
