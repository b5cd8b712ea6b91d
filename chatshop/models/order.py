"""Order ledger models.

Orders are appended only after stock consumption and proof recording have
both succeeded, in the same transaction. `OrderItem.payloads` holds the
exact stock units delivered and is never rewritten; `Order.status` is the
only field later touched, by operators.
"""

import uuid

from chatshop.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    STATUSES = [
        "completed",
        "refunded",
        "disputed",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    code = db.Column(db.String(64), unique=True, nullable=False)  # "ORD-20260101120000-1234-ab12"
    customer_id = db.Column(db.String(64), nullable=False, index=True)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    payment_method = db.Column(db.String(32), nullable=False)
    proof_reference = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(32), nullable=False, default="completed")
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    items = db.relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )

    def as_api(self):
        return {
            "code": self.code,
            "customer_id": self.customer_id,
            "total_amount": str(self.total_amount),
            "payment_method": self.payment_method,
            "status": self.status,
            "items": [item.as_api() for item in self.items],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Order {self.code} ({self.status})>"


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True
    )
    position = db.Column(db.Integer, nullable=False)  # cart line order
    product_id = db.Column(db.String(36), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    payloads = db.Column(db.JSON, nullable=False)  # delivered stock payloads

    # --- Relationships ---
    order = db.relationship("Order", back_populates="items")

    def as_api(self):
        return {
            "product_id": self.product_id,
            "name": self.name,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "payloads": list(self.payloads or []),
        }

    def __repr__(self):
        return f"<OrderItem {self.name} x{self.quantity}>"
