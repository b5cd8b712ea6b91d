"""Catalog models.

- Category: grouping shown when browsing.
- Product: priced digital product.
- StockUnit: one opaque, one-time-use fulfillment payload (code, link, key).

A product's stock count is the number of its StockUnit rows, counted on
read. Consumed units are deleted in the transaction that writes the order
that received them.
"""

import uuid

from chatshop.extensions import db


class Category(db.Model):
    __tablename__ = "categories"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    image_url = db.Column(db.String(1024), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    products = db.relationship("Product", back_populates="category")

    def __repr__(self):
        return f"<Category {self.name}>"


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    description = db.Column(db.Text, nullable=True)
    image_url = db.Column(db.String(1024), nullable=True)
    category_id = db.Column(
        db.String(36), db.ForeignKey("categories.id"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    category = db.relationship("Category", back_populates="products")

    def __repr__(self):
        return f"<Product {self.name} ({self.price})>"


class StockUnit(db.Model):
    __tablename__ = "stock_units"

    # Integer key: ascending id is the pool's FIFO order.
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    product_id = db.Column(
        db.String(36),
        db.ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    payload = db.Column(db.Text, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<StockUnit #{self.id} product={self.product_id}>"
