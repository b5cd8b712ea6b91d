"""Checkout service — the per-customer checkout state machine.

    none --start_checkout--> selecting_method --select_method--> awaiting_proof
    awaiting_proof --submit_proof (verified, settled)--> none
    awaiting_proof --submit_proof (rejected)--> awaiting_proof
    selecting_method | awaiting_proof --cancel--> none

Every entry point runs under a per-customer lock, and every state change is
a compare-and-swap on (generation, state) that bumps the generation, so a
duplicate or late event can never act on a session that has moved on.

Settlement is one transaction: claim the session, consume stock for each
line in cart order, record the proof, append the order, clear the cart,
commit. If anything fails, all of it rolls back. The one case that cannot
be undone is money already taken by a network verifier (voucher or slip)
when stock then runs out; the session is pinned with needs_reconciliation
and escalated to an operator.

Network verification never runs while product locks are held or a database
transaction is open.
"""

import enum
import logging
from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from chatshop.extensions import db
from chatshop.models.audit import AuditEvent
from chatshop.models.checkout import CheckoutSession, CheckoutState, PaymentMethod
from chatshop.services import (
    cart_service,
    inventory_service,
    messaging_service,
    order_service,
    proof_ledger,
    verifiers,
)
from chatshop.services.inventory_service import InsufficientStock
from chatshop.services.locks import KeyedLocks
from chatshop.services.verifiers import FailureReason, VerificationResult, VerifierConfigError

logger = logging.getLogger(__name__)

_customer_locks = KeyedLocks("customers")

ACTIVE_STATES = [CheckoutState.SELECTING_METHOD, CheckoutState.AWAITING_PROOF]


class CheckoutResult(str, enum.Enum):
    METHOD_SELECTION = "method_selection"
    ALREADY_IN_CHECKOUT = "already_in_checkout"
    EMPTY_CART = "empty_cart"
    INSUFFICIENT_STOCK = "insufficient_stock"
    INVALID_METHOD = "invalid_method"
    INVALID_STATE = "invalid_state"
    AWAITING_PROOF = "awaiting_proof"
    NOT_IN_CHECKOUT = "not_in_checkout"
    INVALID_PROOF = "invalid_proof"
    VERIFICATION_FAILED = "verification_failed"
    DUPLICATE_PROOF = "duplicate_proof"
    SETTLED = "settled"
    SETTLEMENT_FAILED = "settlement_failed"
    STALE_SESSION = "stale_session"
    CHECKOUT_ABORTED = "checkout_aborted"
    CANCELLED = "cancelled"
    RECONCILIATION_REQUIRED = "reconciliation_required"


SUCCESS_RESULTS = {
    CheckoutResult.METHOD_SELECTION,
    CheckoutResult.AWAITING_PROOF,
    CheckoutResult.SETTLED,
    CheckoutResult.CANCELLED,
}


@dataclass
class CheckoutOutcome:
    result: CheckoutResult
    data: dict = field(default_factory=dict)

    @property
    def ok(self):
        return self.result in SUCCESS_RESULTS

    def as_dict(self):
        return {"result": self.result.value, **self.data}


# ──────────────────────────────────────────────
# Session persistence helpers
# ──────────────────────────────────────────────

def _load(customer_id, create=False):
    """Fetch the session row fresh from the database."""
    session = db.session.execute(
        db.select(CheckoutSession)
        .where(CheckoutSession.customer_id == customer_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if session is None and create:
        session = CheckoutSession(
            customer_id=customer_id,
            state=CheckoutState.NONE.value,
            generation=0,
            attempts=0,
            needs_reconciliation=False,
        )
        db.session.add(session)
        try:
            db.session.commit()
        except IntegrityError:
            # Created by another worker in the meantime.
            db.session.rollback()
            return _load(customer_id)
    return session


def _transition(customer_id, generation, from_states, bump=True, **values):
    """Compare-and-swap update of a session row.

    Applies `values` only if the row is still at `generation` and in one of
    `from_states`. Bumps the generation unless bump=False. Does not commit.

    Returns:
        True if the row was updated.
    """
    if bump:
        values["generation"] = CheckoutSession.generation + 1
    for key, value in list(values.items()):
        if isinstance(value, enum.Enum):
            values[key] = value.value
    result = db.session.execute(
        db.update(CheckoutSession)
        .where(
            CheckoutSession.customer_id == customer_id,
            CheckoutSession.generation == generation,
            CheckoutSession.state.in_([CheckoutState(s).value for s in from_states]),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _reset_values():
    return dict(
        state=CheckoutState.NONE,
        payment_method=None,
        frozen_total=None,
        lines=None,
        attempts=0,
        last_failure=None,
    )


def _audit(customer_id, action, **metadata):
    db.session.add(AuditEvent(customer_id=customer_id, action=action, metadata_=metadata))


def _shortfalls(lines):
    """Per-line stock shortfalls for cart lines or frozen session lines."""
    shortfalls = []
    for line in lines:
        available = inventory_service.check_available(line["product_id"])
        if line["quantity"] > available:
            shortfalls.append(
                {
                    "product_id": line["product_id"],
                    "name": line["name"],
                    "requested": line["quantity"],
                    "available": available,
                }
            )
    return shortfalls


def _contact_message():
    contact = current_app.config.get("ADMIN_CONTACT_URL")
    if contact:
        return f"Please contact us: {contact}"
    return "Please contact us."


# ──────────────────────────────────────────────
# Entry points
# ──────────────────────────────────────────────

def start_checkout(customer_id: str) -> CheckoutOutcome:
    """Re-validate stock for the cart and freeze its total.

    Returns METHOD_SELECTION with the frozen total and lines, or
    EMPTY_CART / INSUFFICIENT_STOCK (with per-line shortfalls) /
    ALREADY_IN_CHECKOUT / RECONCILIATION_REQUIRED without changing state.
    """
    with _customer_locks.hold(customer_id):
        session = _load(customer_id, create=True)
        if session.needs_reconciliation:
            return CheckoutOutcome(
                CheckoutResult.RECONCILIATION_REQUIRED, {"message": _contact_message()}
            )
        if session.checkout_state != CheckoutState.NONE:
            return CheckoutOutcome(
                CheckoutResult.ALREADY_IN_CHECKOUT,
                {"state": session.state, "total": str(session.total)},
            )

        items = cart_service.get_cart(customer_id)
        if not items:
            return CheckoutOutcome(CheckoutResult.EMPTY_CART)

        lines = [item.as_line() for item in items]
        shortfalls = _shortfalls(lines)
        if shortfalls:
            logger.warning(f"Checkout blocked for {customer_id}: {len(shortfalls)} line(s) short")
            db.session.rollback()
            return CheckoutOutcome(CheckoutResult.INSUFFICIENT_STOCK, {"shortfalls": shortfalls})

        total = sum((item.line_total for item in items), Decimal("0"))
        swapped = _transition(
            customer_id,
            session.generation,
            [CheckoutState.NONE],
            state=CheckoutState.SELECTING_METHOD,
            payment_method=None,
            frozen_total=total,
            lines=lines,
            attempts=0,
            last_failure=None,
        )
        if not swapped:
            db.session.rollback()
            return CheckoutOutcome(CheckoutResult.STALE_SESSION)
        db.session.commit()

    logger.info(f"Checkout started for {customer_id}: total {total}")
    return CheckoutOutcome(
        CheckoutResult.METHOD_SELECTION,
        {
            "total": str(total),
            "lines": lines,
            "methods": [m.value for m in PaymentMethod],
        },
    )


def select_method(customer_id: str, method) -> CheckoutOutcome:
    """Choose how the frozen total will be paid."""
    with _customer_locks.hold(customer_id):
        session = _load(customer_id)
        if session is None or session.checkout_state == CheckoutState.NONE:
            return CheckoutOutcome(CheckoutResult.NOT_IN_CHECKOUT)
        if session.needs_reconciliation:
            return CheckoutOutcome(
                CheckoutResult.RECONCILIATION_REQUIRED, {"message": _contact_message()}
            )
        if session.checkout_state != CheckoutState.SELECTING_METHOD:
            return CheckoutOutcome(CheckoutResult.INVALID_STATE, {"state": session.state})

        try:
            method = PaymentMethod(method)
        except ValueError:
            return CheckoutOutcome(
                CheckoutResult.INVALID_METHOD, {"methods": [m.value for m in PaymentMethod]}
            )

        total = session.total
        swapped = _transition(
            customer_id,
            session.generation,
            [CheckoutState.SELECTING_METHOD],
            state=CheckoutState.AWAITING_PROOF,
            payment_method=method,
        )
        if not swapped:
            db.session.rollback()
            return CheckoutOutcome(CheckoutResult.STALE_SESSION)
        db.session.commit()

    logger.info(f"{customer_id} chose {method.value} for {total}")
    data = {"method": method.value, "total": str(total)}
    if method == PaymentMethod.BANK_SLIP:
        data["bank_account"] = current_app.config.get("BANK_ACCOUNT_DETAILS") or ""
    elif method == PaymentMethod.REDEMPTION_CODE:
        data["code_length"] = current_app.config.get("REDEMPTION_CODE_LENGTH", 32)
    return CheckoutOutcome(CheckoutResult.AWAITING_PROOF, data)


def submit_proof(customer_id: str, proof: str) -> CheckoutOutcome:
    """Verify a payment proof against the frozen total and settle.

    Args:
        customer_id: The customer whose session is awaiting proof.
        proof: Voucher link, slip image URL or redemption code, matching
            the method chosen in select_method.

    Returns:
        SETTLED with the order on success. Otherwise one of INVALID_PROOF,
        VERIFICATION_FAILED, DUPLICATE_PROOF, INSUFFICIENT_STOCK,
        SETTLEMENT_FAILED, STALE_SESSION, CHECKOUT_ABORTED, NOT_IN_CHECKOUT,
        INVALID_STATE or RECONCILIATION_REQUIRED.
    """
    with _customer_locks.hold(customer_id):
        session = _load(customer_id)
        if session is None or session.checkout_state == CheckoutState.NONE:
            return CheckoutOutcome(CheckoutResult.NOT_IN_CHECKOUT)
        if session.needs_reconciliation:
            return CheckoutOutcome(
                CheckoutResult.RECONCILIATION_REQUIRED, {"message": _contact_message()}
            )
        if session.checkout_state != CheckoutState.AWAITING_PROOF:
            return CheckoutOutcome(CheckoutResult.INVALID_STATE, {"state": session.state})

        method = session.method
        generation = session.generation
        total = session.total
        lines = list(session.lines or [])
        verifier = verifiers.get_verifier(method)

        if verifier.parse(proof) is None:
            logger.warning(f"Malformed {method.value} proof from {customer_id}")
            return CheckoutOutcome(
                CheckoutResult.INVALID_PROOF,
                {"reason": FailureReason.INVALID_FORMAT.value, "method": method.value},
            )

        try:
            verifier.check_config()
        except VerifierConfigError as e:
            return _abort(customer_id, generation, method, e)

        product_ids = [line["product_id"] for line in lines]

        if verifier.requires_network:
            shortfalls = _shortfalls(lines)
            if shortfalls:
                db.session.rollback()
                return CheckoutOutcome(CheckoutResult.INSUFFICIENT_STOCK, {"shortfalls": shortfalls})
            # End the read transaction before the network round-trip.
            db.session.commit()
            try:
                result = verifier.verify(total, proof)
            except VerifierConfigError as e:
                return _abort(customer_id, generation, method, e)
            if not result.ok:
                return _record_failure(customer_id, generation, method, result)
            with inventory_service.hold(product_ids):
                outcome, order = _settle(customer_id, generation, method, total, lines, result, network=True)
        else:
            with inventory_service.hold(product_ids):
                shortfalls = _shortfalls(lines)
                if shortfalls:
                    db.session.rollback()
                    return CheckoutOutcome(CheckoutResult.INSUFFICIENT_STOCK, {"shortfalls": shortfalls})
                result = verifier.verify(total, proof)
                if not result.ok:
                    db.session.rollback()
                    return _record_failure(customer_id, generation, method, result)
                outcome, order = _settle(customer_id, generation, method, total, lines, result, network=False)

    if order is not None:
        try:
            messaging_service.deliver_order(order)
        except Exception as e:
            # The order is final; delivery can be retried by an operator.
            logger.error(f"Delivery of {order.code} failed: {e}", exc_info=True)
    return outcome


def cancel(customer_id: str) -> CheckoutOutcome:
    """Abandon checkout. Never touches stock or the proof ledger."""
    with _customer_locks.hold(customer_id):
        session = _load(customer_id)
        if session is None or session.checkout_state == CheckoutState.NONE:
            return CheckoutOutcome(CheckoutResult.NOT_IN_CHECKOUT)
        if session.needs_reconciliation:
            return CheckoutOutcome(
                CheckoutResult.RECONCILIATION_REQUIRED, {"message": _contact_message()}
            )
        swapped = _transition(customer_id, session.generation, ACTIVE_STATES, **_reset_values())
        if not swapped:
            db.session.rollback()
            return CheckoutOutcome(CheckoutResult.STALE_SESSION)
        db.session.commit()

    logger.info(f"Checkout cancelled for {customer_id}")
    return CheckoutOutcome(CheckoutResult.CANCELLED)


# ──────────────────────────────────────────────
# Operator actions
# ──────────────────────────────────────────────

def pending_reconciliations() -> list:
    """Sessions pinned for manual resolution, oldest first."""
    return (
        CheckoutSession.query.filter_by(needs_reconciliation=True)
        .order_by(CheckoutSession.updated_at, CheckoutSession.customer_id)
        .all()
    )


def resolve_reconciliation(customer_id: str, note: str) -> bool:
    """Release a pinned session back to none after an operator settled it by hand.

    Returns False if the session is not pinned.
    """
    with _customer_locks.hold(customer_id):
        session = _load(customer_id)
        if session is None or not session.needs_reconciliation:
            return False
        swapped = _transition(
            customer_id,
            session.generation,
            list(CheckoutState),
            needs_reconciliation=False,
            reconciliation_note=note,
            **_reset_values(),
        )
        if not swapped:
            db.session.rollback()
            return False
        _audit(customer_id, "settlement.reconciliation_resolved", note=note)
        db.session.commit()

    logger.info(f"Reconciliation resolved for {customer_id}: {note}")
    return True


# ──────────────────────────────────────────────
# Settlement internals
# ──────────────────────────────────────────────

def _abort(customer_id, generation, method, error):
    """Payment channel unusable: end the checkout so the customer can start over."""
    logger.error(f"Checkout aborted for {customer_id} ({method.value}): {error}")
    db.session.rollback()
    _transition(customer_id, generation, ACTIVE_STATES, **_reset_values())
    _audit(customer_id, "checkout.aborted", method=method.value, error=str(error))
    db.session.commit()
    return CheckoutOutcome(
        CheckoutResult.CHECKOUT_ABORTED,
        {"message": f"This payment method is unavailable right now. {_contact_message()}"},
    )


def _record_failure(customer_id, generation, method, result: VerificationResult):
    """Count a rejected proof. The session stays in awaiting_proof for a retry."""
    _transition(
        customer_id,
        generation,
        [CheckoutState.AWAITING_PROOF],
        bump=False,
        attempts=CheckoutSession.attempts + 1,
        last_failure=result.reason.value,
    )
    db.session.commit()
    logger.warning(
        f"{method.value} proof rejected for {customer_id}: {result.reason.value}"
    )
    outcome = (
        CheckoutResult.DUPLICATE_PROOF
        if result.reason == FailureReason.DUPLICATE_PROOF
        else CheckoutResult.VERIFICATION_FAILED
    )
    return CheckoutOutcome(outcome, {"reason": result.reason.value, "message": result.message})


def _pin(customer_id, generation, method, verification, reason, **details):
    """Leave the session in awaiting_proof flagged for an operator."""
    note = (
        f"{method.value} proof {verification.settlement_ref} verified "
        f"({verification.settled_amount}) but settlement failed: {reason}"
    )
    _transition(
        customer_id,
        generation,
        [CheckoutState.AWAITING_PROOF],
        needs_reconciliation=True,
        reconciliation_note=note,
        last_failure=reason,
    )
    _audit(
        customer_id,
        "settlement.reconciliation_required",
        method=method.value,
        proof_id=verification.proof_id,
        settlement_ref=verification.settlement_ref,
        settled_amount=str(verification.settled_amount),
        reason=reason,
        **details,
    )
    db.session.commit()
    logger.error(f"Reconciliation required for {customer_id}: {note}")


def _settle(customer_id, generation, method, total, lines, verification, network):
    """Run the settlement transaction. Caller holds the product locks.

    Returns:
        (CheckoutOutcome, Order or None)
    """
    try:
        claimed = _transition(
            customer_id, generation, [CheckoutState.AWAITING_PROOF], **_reset_values()
        )
        if not claimed:
            db.session.rollback()
            logger.warning(f"Stale proof for {customer_id} at generation {generation}")
            if network:
                _audit(
                    customer_id,
                    "settlement.stale_proof",
                    method=method.value,
                    proof_id=verification.proof_id,
                    settlement_ref=verification.settlement_ref,
                    generation=generation,
                )
                db.session.commit()
            return CheckoutOutcome(CheckoutResult.STALE_SESSION), None

        delivered = []
        for line in lines:
            payloads = inventory_service.reserve_and_consume(
                line["product_id"], line["quantity"], commit=False
            )
            delivered.append({**line, "payloads": payloads})

        if not verification.proof_recorded:
            if not proof_ledger.try_record(verification.proof_id, method, commit=False):
                db.session.rollback()
                duplicate = VerificationResult.failure(
                    FailureReason.DUPLICATE_PROOF,
                    "This payment proof has already been used.",
                    proof_id=verification.proof_id,
                )
                return _record_failure(customer_id, generation, method, duplicate), None

        order = order_service.append_order(
            customer_id, delivered, total, method, verification.settlement_ref
        )
        cart_service.clear_cart(customer_id, commit=False)
        db.session.commit()

    except InsufficientStock as e:
        db.session.rollback()
        if not network:
            # Code claim rolled back with everything else; the customer keeps it.
            return CheckoutOutcome(
                CheckoutResult.INSUFFICIENT_STOCK,
                {"shortfalls": [e.as_dict()]},
            ), None
        _pin(customer_id, generation, method, verification, "insufficient_stock", shortfall=e.as_dict())
        return CheckoutOutcome(
            CheckoutResult.SETTLEMENT_FAILED,
            {"reason": "insufficient_stock", "message": _contact_message()},
        ), None

    except Exception as e:
        db.session.rollback()
        logger.error(f"Settlement error for {customer_id}: {e}", exc_info=True)
        if network:
            _pin(customer_id, generation, method, verification, "internal_error")
        return CheckoutOutcome(
            CheckoutResult.SETTLEMENT_FAILED,
            {"reason": "internal_error", "message": _contact_message()},
        ), None

    logger.info(
        f"Settled {order.code} for {customer_id}: {method.value} {total}, "
        f"{sum(len(d['payloads']) for d in delivered)} unit(s)"
    )
    return CheckoutOutcome(CheckoutResult.SETTLED, {"order": order.as_api()}), order
