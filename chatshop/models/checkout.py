"""Checkout session model.

One row per customer. The row is never deleted: "resetting" a session moves
it back to state "none" and bumps `generation`, so a verifier callback
spawned under an older generation can never settle.

States:
    none             -> no checkout in progress
    selecting_method -> total frozen, waiting for a payment method
    awaiting_proof   -> method chosen, waiting for voucher link / slip / code

`frozen_total` and `lines` are written once on entry to selecting_method and
are the only amounts and quantities used for verification and settlement.
"""

import enum
from decimal import Decimal

from chatshop.extensions import db


class CheckoutState(str, enum.Enum):
    NONE = "none"
    SELECTING_METHOD = "selecting_method"
    AWAITING_PROOF = "awaiting_proof"


class PaymentMethod(str, enum.Enum):
    VOUCHER = "voucher"                  # TrueMoney gift voucher link
    BANK_SLIP = "bank_slip"              # bank transfer slip image
    REDEMPTION_CODE = "redemption_code"  # prepaid 32-char code


class CheckoutSession(db.Model):
    __tablename__ = "checkout_sessions"

    customer_id = db.Column(db.String(64), primary_key=True)
    state = db.Column(
        db.String(32), nullable=False, default=CheckoutState.NONE.value
    )
    payment_method = db.Column(db.String(32), nullable=True)
    frozen_total = db.Column(db.Numeric(12, 2), nullable=True)
    lines = db.Column(db.JSON, nullable=True)  # [{product_id, name, quantity, unit_price}]
    generation = db.Column(db.Integer, nullable=False, default=0)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_failure = db.Column(db.String(64), nullable=True)
    needs_reconciliation = db.Column(db.Boolean, nullable=False, default=False)
    reconciliation_note = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def checkout_state(self):
        return CheckoutState(self.state)

    @property
    def method(self):
        return PaymentMethod(self.payment_method) if self.payment_method else None

    @property
    def total(self):
        return Decimal(self.frozen_total) if self.frozen_total is not None else None

    def __repr__(self):
        return f"<CheckoutSession {self.customer_id} {self.state} gen={self.generation}>"
