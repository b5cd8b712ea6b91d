"""Cart model.

One row per (customer, product). Name and unit price are snapshotted when
the product is first added; quantity is only soft-checked against stock at
add-time and re-validated when checkout starts.
"""

from decimal import Decimal

from chatshop.extensions import db


class CartItem(db.Model):
    __tablename__ = "cart_items"
    __table_args__ = (
        db.UniqueConstraint("customer_id", "product_id", name="uq_cart_customer_product"),
        db.CheckConstraint("quantity > 0", name="ck_cart_quantity_positive"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)  # line order
    customer_id = db.Column(db.String(64), nullable=False, index=True)
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id"), nullable=False
    )
    quantity = db.Column(db.Integer, nullable=False, default=1)
    product_name = db.Column(db.String(255), nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    @property
    def line_total(self):
        return Decimal(self.unit_price) * self.quantity

    def as_line(self):
        """Serializable snapshot stored on the checkout session."""
        return {
            "product_id": self.product_id,
            "name": self.product_name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
        }

    def __repr__(self):
        return f"<CartItem {self.product_name} x{self.quantity}>"
