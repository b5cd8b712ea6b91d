"""Checkout blueprint — /api/*

Internal JSON API called by the chat webhook front end. Every route needs
the X-Internal-Token header. Responses carry `ok`, `result` (a checkout
result value) and result-specific fields; the front end turns them into
chat messages.

Route Map:
  POST   /api/checkout/<customer_id>/start             — freeze total, list methods
  POST   /api/checkout/<customer_id>/method            — choose payment method
  POST   /api/checkout/<customer_id>/proof             — submit voucher link / slip URL / code
  POST   /api/checkout/<customer_id>/cancel            — abandon checkout
  GET    /api/cart/<customer_id>                       — cart lines and total
  POST   /api/cart/<customer_id>/items                 — add units of a product
  DELETE /api/cart/<customer_id>/items/<product_id>    — remove units (or the line)
  DELETE /api/cart/<customer_id>                       — empty the cart
  GET    /api/customers/<customer_id>/orders           — order history
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from chatshop.decorators import internal_token_required
from chatshop.extensions import limiter
from chatshop.services import cart_service, checkout_service, order_service
from chatshop.services.cart_service import CartError
from chatshop.services.checkout_service import CheckoutResult

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api")

logger = logging.getLogger(__name__)

CONFLICT_RESULTS = {
    CheckoutResult.ALREADY_IN_CHECKOUT,
    CheckoutResult.INSUFFICIENT_STOCK,
    CheckoutResult.INVALID_STATE,
    CheckoutResult.NOT_IN_CHECKOUT,
    CheckoutResult.DUPLICATE_PROOF,
    CheckoutResult.SETTLEMENT_FAILED,
    CheckoutResult.STALE_SESSION,
    CheckoutResult.CHECKOUT_ABORTED,
    CheckoutResult.RECONCILIATION_REQUIRED,
}


def _respond(outcome):
    if outcome.ok:
        status = 200
    elif outcome.result in CONFLICT_RESULTS:
        status = 409
    else:
        status = 422
    return jsonify(ok=outcome.ok, **outcome.as_dict()), status


def _body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _text(data, key):
    """A stripped string field, or "" when missing or not a string."""
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


def _proof_rate_limit():
    return current_app.config.get("PROOF_RATE_LIMIT", "20 per minute")


def _customer_key():
    return request.view_args.get("customer_id", "")


# ──────────────────────────────────────────────
# Checkout
# ──────────────────────────────────────────────

@checkout_bp.route("/checkout/<customer_id>/start", methods=["POST"])
@internal_token_required
def start(customer_id):
    return _respond(checkout_service.start_checkout(customer_id))


@checkout_bp.route("/checkout/<customer_id>/method", methods=["POST"])
@internal_token_required
def method(customer_id):
    """Body: {"method": "voucher" | "bank_slip" | "redemption_code"}"""
    chosen = _text(_body(), "method")
    return _respond(checkout_service.select_method(customer_id, chosen))


@checkout_bp.route("/checkout/<customer_id>/proof", methods=["POST"])
@internal_token_required
@limiter.limit(_proof_rate_limit, key_func=_customer_key)
def proof(customer_id):
    """Body: {"proof": "<voucher link | slip image URL | code>"}"""
    material = _body().get("proof")
    if not isinstance(material, str) or not material.strip():
        return jsonify(ok=False, result=CheckoutResult.INVALID_PROOF.value, reason="missing_proof"), 422
    return _respond(checkout_service.submit_proof(customer_id, material))


@checkout_bp.route("/checkout/<customer_id>/cancel", methods=["POST"])
@internal_token_required
def cancel(customer_id):
    return _respond(checkout_service.cancel(customer_id))


# ──────────────────────────────────────────────
# Cart
# ──────────────────────────────────────────────

def _cart_payload(customer_id):
    items = cart_service.get_cart(customer_id)
    return {
        "items": [item.as_line() for item in items],
        "total": str(cart_service.cart_total(customer_id)),
    }


@checkout_bp.route("/cart/<customer_id>", methods=["GET"])
@internal_token_required
def view_cart(customer_id):
    return jsonify(ok=True, **_cart_payload(customer_id)), 200


@checkout_bp.route("/cart/<customer_id>/items", methods=["POST"])
@internal_token_required
def add_item(customer_id):
    """Body: {"product_id": "...", "quantity": 1}"""
    data = _body()
    product_id = _text(data, "product_id")
    try:
        quantity = int(data.get("quantity", 1))
    except (TypeError, ValueError):
        return jsonify(ok=False, error="Quantity must be a number."), 422

    try:
        cart_service.add_to_cart(customer_id, product_id, quantity)
    except CartError as e:
        return jsonify(ok=False, error=str(e)), 422
    return jsonify(ok=True, **_cart_payload(customer_id)), 200


@checkout_bp.route("/cart/<customer_id>/items/<product_id>", methods=["DELETE"])
@internal_token_required
def remove_item(customer_id, product_id):
    quantity = request.args.get("quantity", type=int)
    try:
        removed = cart_service.remove_from_cart(customer_id, product_id, quantity)
    except CartError as e:
        return jsonify(ok=False, error=str(e)), 422
    if not removed:
        return jsonify(ok=False, error="Product is not in the cart."), 404
    return jsonify(ok=True, **_cart_payload(customer_id)), 200


@checkout_bp.route("/cart/<customer_id>", methods=["DELETE"])
@internal_token_required
def empty_cart(customer_id):
    cart_service.clear_cart(customer_id)
    return jsonify(ok=True, **_cart_payload(customer_id)), 200


# ──────────────────────────────────────────────
# Orders
# ──────────────────────────────────────────────

@checkout_bp.route("/customers/<customer_id>/orders", methods=["GET"])
@internal_token_required
def order_history(customer_id):
    orders = order_service.orders_for_customer(customer_id)
    return jsonify(ok=True, orders=[order.as_api() for order in orders]), 200
