# Import all models here so Alembic can discover them.

from chatshop.models.catalog import Category, Product, StockUnit  # noqa: F401
from chatshop.models.cart import CartItem  # noqa: F401
from chatshop.models.checkout import (  # noqa: F401
    CheckoutSession,
    CheckoutState,
    PaymentMethod,
)
from chatshop.models.ledger import RedemptionCode, UsedProof  # noqa: F401
from chatshop.models.order import Order, OrderItem  # noqa: F401
from chatshop.models.audit import AuditEvent  # noqa: F401
