"""Inventory service — per-product pools of one-time-use stock units.

A product's pool is its StockUnit rows; the count is always recomputed with
COUNT(*). Consumption removes units from the head of the pool (lowest id
first) and deletes their rows, so a unit can never be handed out twice.

Two guards make consumption linearizable per product:
- an in-process lock per product id (`hold`), taken in sorted id order and
  kept until the caller's transaction commits;
- SELECT ... FOR UPDATE on the chosen rows plus a rowcount check on the
  DELETE, which covers other worker processes on databases that lock rows.
"""

import logging
from contextlib import contextmanager

from chatshop.extensions import db
from chatshop.models.catalog import Product, StockUnit
from chatshop.services.locks import KeyedLocks

logger = logging.getLogger(__name__)

_product_locks = KeyedLocks("products")


class InsufficientStock(Exception):
    """Raised when a pool holds fewer units than requested."""

    def __init__(self, product_id, requested, available):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Product {product_id}: requested {requested}, available {available}"
        )

    def as_dict(self):
        return {
            "product_id": self.product_id,
            "requested": self.requested,
            "available": self.available,
        }


@contextmanager
def hold(product_ids):
    """Critical section over one or more product pools.

    Keep it open until the transaction that consumed from those pools has
    committed or rolled back. Never hold it across a network call.
    """
    with _product_locks.hold_many(product_ids):
        yield


def check_available(product_id: str) -> int:
    """Return the current pool size for a product. Read-only."""
    return db.session.scalar(
        db.select(db.func.count(StockUnit.id)).where(
            StockUnit.product_id == product_id
        )
    )


def _select_head(product_id, quantity):
    return db.session.execute(
        db.select(StockUnit.id, StockUnit.payload)
        .where(StockUnit.product_id == product_id)
        .order_by(StockUnit.id)
        .limit(quantity)
        .with_for_update()
    ).all()


def reserve_and_consume(product_id: str, quantity: int, commit: bool = True) -> list:
    """Atomically remove `quantity` units from the head of a product's pool.

    Args:
        product_id: The product whose pool is consumed.
        quantity: Number of units, must be positive.
        commit: Commit immediately. Pass False when the consumption is one
            step of a larger transaction; the caller must then hold the
            product lock (see `hold`) until it commits or rolls back.

    Returns:
        The removed payloads, oldest first.

    Raises:
        InsufficientStock: the pool holds fewer than `quantity` units. Nothing
            is removed by this call.
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    with hold([product_id]):
        rows = _select_head(product_id, quantity)
        if len(rows) < quantity:
            # Under READ COMMITTED a locking select that waited on rows another
            # worker deleted returns short; a new statement sees later units.
            rows = _select_head(product_id, quantity)

        if len(rows) < quantity:
            logger.warning(
                f"Insufficient stock for {product_id}: "
                f"requested {quantity}, available {len(rows)}"
            )
            if commit:
                db.session.rollback()
            raise InsufficientStock(product_id, quantity, len(rows))

        unit_ids = [row.id for row in rows]
        result = db.session.execute(
            db.delete(StockUnit)
            .where(StockUnit.id.in_(unit_ids))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(unit_ids):
            # Another process consumed some of these rows first.
            logger.warning(
                f"Stock race on {product_id}: deleted {result.rowcount} "
                f"of {len(unit_ids)} units"
            )
            if commit:
                db.session.rollback()
            raise InsufficientStock(product_id, quantity, result.rowcount)

        if commit:
            db.session.commit()

    logger.info(f"Consumed {quantity} unit(s) of {product_id}")
    return [row.payload for row in rows]


def add_stock(product_id: str, payloads, commit: bool = True) -> int:
    """Append payloads to the tail of a product's pool.

    Blank payloads are skipped. Returns the number of units added.

    Raises:
        ValueError: the product does not exist.
    """
    if db.session.get(Product, product_id) is None:
        raise ValueError(f"Unknown product: {product_id}")

    cleaned = [p.strip() for p in payloads if p and p.strip()]
    with hold([product_id]):
        for payload in cleaned:
            db.session.add(StockUnit(product_id=product_id, payload=payload))
        if commit:
            db.session.commit()

    logger.info(f"Added {len(cleaned)} unit(s) to {product_id}")
    return len(cleaned)
