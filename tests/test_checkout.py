"""Tests for the checkout state machine.

Covers:
- start_checkout: empty cart, stock re-validation with per-line shortfall,
  frozen total, re-entry
- select_method: state guards, invalid methods, bank instructions
- submit_proof: malformed proof, rejected proof with retry, settlement via
  each payment method
- cancel: idempotent, never touches stock or the ledger
- Frozen total: cart changes after checkout starts do not move the amount
- Unconfigured payment channel aborts checkout
"""

from decimal import Decimal
from unittest.mock import MagicMock, patch

from chatshop.extensions import db
from chatshop.models.checkout import CheckoutSession, CheckoutState
from chatshop.models.ledger import RedemptionCode, UsedProof
from chatshop.models.order import Order
from chatshop.services import cart_service, checkout_service, order_service
from chatshop.services.checkout_service import CheckoutResult

from conftest import SLIP_URL, VOUCHER_HASH, VOUCHER_LINK, pool

CUSTOMER = "cust-0001"


def _session(customer_id=CUSTOMER):
    return db.session.execute(
        db.select(CheckoutSession)
        .where(CheckoutSession.customer_id == customer_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _to_awaiting_proof(customer_id, product_id, quantity, method):
    cart_service.add_to_cart(customer_id, product_id, quantity)
    assert checkout_service.start_checkout(customer_id).result == CheckoutResult.METHOD_SELECTION
    assert checkout_service.select_method(customer_id, method).result == CheckoutResult.AWAITING_PROOF


def _voucher_response(amount):
    resp = MagicMock(status_code=200)
    resp.json.return_value = {
        "status": {"code": "SUCCESS"},
        "data": {"my_ticket": {"amount_baht": amount}},
    }
    return resp


class TestStartCheckout:
    """Tests for start_checkout."""

    def test_empty_cart(self, seed_data):
        outcome = checkout_service.start_checkout(CUSTOMER)
        assert outcome.result == CheckoutResult.EMPTY_CART
        assert _session().state == CheckoutState.NONE.value

    def test_freezes_total_and_lines(self, seed_data):
        cart_service.add_to_cart(CUSTOMER, seed_data["p1"], 2)
        cart_service.add_to_cart(CUSTOMER, seed_data["p2"], 1)

        outcome = checkout_service.start_checkout(CUSTOMER)

        assert outcome.ok
        assert outcome.result == CheckoutResult.METHOD_SELECTION
        assert Decimal(outcome.data["total"]) == Decimal("120")
        assert set(outcome.data["methods"]) == {"voucher", "bank_slip", "redemption_code"}

        session = _session()
        assert session.state == CheckoutState.SELECTING_METHOD.value
        assert session.total == Decimal("120")
        assert [line["product_id"] for line in session.lines] == [seed_data["p1"], seed_data["p2"]]
        assert [line["quantity"] for line in session.lines] == [2, 1]
        assert session.generation == 1

    def test_shortfall_reported_per_line(self, seed_data):
        cart_service.add_to_cart(CUSTOMER, seed_data["p1"], 3)
        cart_service.add_to_cart(CUSTOMER, seed_data["p2"], 2)
        # Someone else buys two of p1 in the meantime.
        from chatshop.services import inventory_service
        inventory_service.reserve_and_consume(seed_data["p1"], 2)

        outcome = checkout_service.start_checkout(CUSTOMER)

        assert outcome.result == CheckoutResult.INSUFFICIENT_STOCK
        assert outcome.data["shortfalls"] == [
            {"product_id": seed_data["p1"], "name": "Steam Key", "requested": 3, "available": 1}
        ]
        assert _session().state == CheckoutState.NONE.value

    def test_already_in_checkout(self, seed_data):
        cart_service.add_to_cart(CUSTOMER, seed_data["p1"], 1)
        checkout_service.start_checkout(CUSTOMER)

        outcome = checkout_service.start_checkout(CUSTOMER)

        assert outcome.result == CheckoutResult.ALREADY_IN_CHECKOUT
        assert _session().generation == 1


class TestSelectMethod:
    """Tests for select_method."""

    def test_not_in_checkout(self, seed_data):
        assert checkout_service.select_method(CUSTOMER, "voucher").result == CheckoutResult.NOT_IN_CHECKOUT

    def test_invalid_method_keeps_state(self, seed_data):
        cart_service.add_to_cart(CUSTOMER, seed_data["p1"], 1)
        checkout_service.start_checkout(CUSTOMER)

        outcome = checkout_service.select_method(CUSTOMER, "paypal")

        assert outcome.result == CheckoutResult.INVALID_METHOD
        assert _session().state == CheckoutState.SELECTING_METHOD.value

    def test_bank_slip_returns_account_details(self, seed_data, app):
        cart_service.add_to_cart(CUSTOMER, seed_data["p1"], 1)
        checkout_service.start_checkout(CUSTOMER)

        outcome = checkout_service.select_method(CUSTOMER, "bank_slip")

        assert outcome.result == CheckoutResult.AWAITING_PROOF
        assert outcome.data["bank_account"] == app.config["BANK_ACCOUNT_DETAILS"]
        assert Decimal(outcome.data["total"]) == Decimal("50")
        session = _session()
        assert session.state == CheckoutState.AWAITING_PROOF.value
        assert session.payment_method == "bank_slip"

    def test_cannot_switch_after_choosing(self, seed_data):
        _to_awaiting_proof(CUSTOMER, seed_data["p1"], 1, "voucher")
        outcome = checkout_service.select_method(CUSTOMER, "bank_slip")
        assert outcome.result == CheckoutResult.INVALID_STATE
        assert _session().payment_method == "voucher"


class TestSubmitProof:
    """Tests for submit_proof outside the settlement failure paths."""

    def test_not_in_checkout(self, seed_data):
        outcome = checkout_service.submit_proof(CUSTOMER, seed_data["code"])
        assert outcome.result == CheckoutResult.NOT_IN_CHECKOUT

    def test_before_method_chosen(self, seed_data):
        cart_service.add_to_cart(CUSTOMER, seed_data["p1"], 1)
        checkout_service.start_checkout(CUSTOMER)
        outcome = checkout_service.submit_proof(CUSTOMER, seed_data["code"])
        assert outcome.result == CheckoutResult.INVALID_STATE

    def test_malformed_proof_keeps_session(self, seed_data):
        _to_awaiting_proof(CUSTOMER, seed_data["p1"], 1, "redemption_code")

        outcome = checkout_service.submit_proof(CUSTOMER, "too-short")

        assert outcome.result == CheckoutResult.INVALID_PROOF
        session = _session()
        assert session.state == CheckoutState.AWAITING_PROOF.value
        assert session.attempts == 0

    def test_rejected_code_allows_retry(self, seed_data):
        _to_awaiting_proof(CUSTOMER, seed_data["p1"], 1, "redemption_code")

        outcome = checkout_service.submit_proof(CUSTOMER, "Z" * 32)
        assert outcome.result == CheckoutResult.VERIFICATION_FAILED
        assert outcome.data["reason"] == "invalid_code"
        session = _session()
        assert session.state == CheckoutState.AWAITING_PROOF.value
        assert session.attempts == 1
        assert session.last_failure == "invalid_code"

        outcome = checkout_service.submit_proof(CUSTOMER, seed_data["code"])
        assert outcome.result == CheckoutResult.SETTLED

    def test_redemption_code_scenario(self, seed_data):
        """Pool [A, B, C], buy 2 with a code: A and B delivered, C left, code gone."""
        _to_awaiting_proof(CUSTOMER, seed_data["p1"], 2, "redemption_code")

        outcome = checkout_service.submit_proof(CUSTOMER, seed_data["code"])

        assert outcome.ok
        assert outcome.result == CheckoutResult.SETTLED
        order_data = outcome.data["order"]
        assert order_data["items"][0]["payloads"] == ["A", "B"]
        assert order_data["payment_method"] == "redemption_code"
        assert Decimal(order_data["total_amount"]) == Decimal("100")
        assert order_data["status"] == "completed"

        assert pool(seed_data["p1"]) == ["C"]
        assert db.session.get(RedemptionCode, seed_data["code"]) is None
        assert UsedProof.query.filter_by(proof_id=f"redemption_code:{seed_data['code']}").count() == 1

        order = order_service.get_order(order_data["code"])
        assert order.customer_id == CUSTOMER
        assert order.proof_reference == seed_data["code"]
        assert cart_service.get_cart(CUSTOMER) == []
        session = _session()
        assert session.state == CheckoutState.NONE.value
        assert session.frozen_total is None

    def test_resubmitting_accepted_proof(self, seed_data):
        _to_awaiting_proof(CUSTOMER, seed_data["p1"], 1, "redemption_code")
        checkout_service.submit_proof(CUSTOMER, seed_data["code"])

        outcome = checkout_service.submit_proof(CUSTOMER, seed_data["code"])

        assert outcome.result == CheckoutResult.NOT_IN_CHECKOUT
        assert Order.query.count() == 1

    @patch("chatshop.services.verifiers.requests.post")
    def test_voucher_settlement(self, mock_post, seed_data):
        mock_post.return_value = _voucher_response("70.00")
        cart_service.add_to_cart(CUSTOMER, seed_data["p1"], 1)
        _to_awaiting_proof(CUSTOMER, seed_data["p2"], 1, "voucher")

        outcome = checkout_service.submit_proof(CUSTOMER, VOUCHER_LINK)

        assert outcome.result == CheckoutResult.SETTLED
        items = outcome.data["order"]["items"]
        assert [i["payloads"] for i in items] == [["A"], ["https://example.test/k/1"]]
        assert UsedProof.query.filter_by(proof_id=f"voucher:{VOUCHER_HASH}").count() == 1

    @patch("chatshop.services.verifiers.requests.post")
    @patch("chatshop.services.verifiers.requests.get")
    def test_bank_slip_settlement(self, mock_get, mock_post, seed_data):
        image = MagicMock(status_code=200)
        image.iter_content.return_value = [b"jpeg"]
        mock_get.return_value = image
        slip = MagicMock(status_code=200)
        slip.json.return_value = {"status": True, "result": {"amount": 50, "reference_id": "REF-1"}}
        mock_post.return_value = slip
        _to_awaiting_proof(CUSTOMER, seed_data["p1"], 1, "bank_slip")

        outcome = checkout_service.submit_proof(CUSTOMER, SLIP_URL)

        assert outcome.result == CheckoutResult.SETTLED
        assert outcome.data["order"]["items"][0]["payloads"] == ["A"]
        assert UsedProof.query.filter_by(proof_id="bank_slip:REF-1").count() == 1

    @patch("chatshop.services.verifiers.requests.post")
    def test_stock_gone_before_verification(self, mock_post, seed_data):
        """Shortfall found before the verifier runs leaves the proof untouched."""
        _to_awaiting_proof(CUSTOMER, seed_data["p1"], 2, "voucher")
        from chatshop.services import inventory_service
        inventory_service.reserve_and_consume(seed_data["p1"], 2)

        outcome = checkout_service.submit_proof(CUSTOMER, VOUCHER_LINK)

        assert outcome.result == CheckoutResult.INSUFFICIENT_STOCK
        mock_post.assert_not_called()
        assert _session().state == CheckoutState.AWAITING_PROOF.value


class TestFrozenTotal:
    """The amount verified is the one frozen when checkout started."""

    @patch("chatshop.services.verifiers.requests.post")
    def test_cart_change_does_not_move_amount(self, mock_post, seed_data):
        _to_awaiting_proof(CUSTOMER, seed_data["p1"], 1, "voucher")
        cart_service.add_to_cart(CUSTOMER, seed_data["p2"], 2)  # cart now worth 90
        mock_post.return_value = _voucher_response("90.00")

        outcome = checkout_service.submit_proof(CUSTOMER, VOUCHER_LINK)

        assert outcome.result == CheckoutResult.VERIFICATION_FAILED
        assert outcome.data["reason"] == "amount_mismatch"

    @patch("chatshop.services.verifiers.requests.post")
    def test_settles_frozen_lines_only(self, mock_post, seed_data):
        _to_awaiting_proof(CUSTOMER, seed_data["p1"], 1, "voucher")
        cart_service.add_to_cart(CUSTOMER, seed_data["p2"], 2)
        mock_post.return_value = _voucher_response("50.00")

        outcome = checkout_service.submit_proof(CUSTOMER, VOUCHER_LINK)

        assert outcome.result == CheckoutResult.SETTLED
        assert Decimal(outcome.data["order"]["total_amount"]) == Decimal("50")
        assert len(outcome.data["order"]["items"]) == 1
        assert pool(seed_data["p2"]) == ["https://example.test/k/1", "https://example.test/k/2"]


class TestCancel:
    """Tests for cancel."""

    def test_cancel_awaiting_proof(self, seed_data):
        _to_awaiting_proof(CUSTOMER, seed_data["p1"], 2, "redemption_code")

        outcome = checkout_service.cancel(CUSTOMER)

        assert outcome.result == CheckoutResult.CANCELLED
        assert _session().state == CheckoutState.NONE.value
        assert pool(seed_data["p1"]) == ["A", "B", "C"]
        assert UsedProof.query.count() == 0
        assert db.session.get(RedemptionCode, seed_data["code"]) is not None
        # Cart is kept so the customer can try again.
        assert len(cart_service.get_cart(CUSTOMER)) == 1

    def test_cancel_is_idempotent(self, seed_data):
        cart_service.add_to_cart(CUSTOMER, seed_data["p1"], 1)
        checkout_service.start_checkout(CUSTOMER)

        assert checkout_service.cancel(CUSTOMER).result == CheckoutResult.CANCELLED
        assert checkout_service.cancel(CUSTOMER).result == CheckoutResult.NOT_IN_CHECKOUT
        assert pool(seed_data["p1"]) == ["A", "B", "C"]
        assert UsedProof.query.count() == 0

    def test_cancel_without_session(self, seed_data):
        assert checkout_service.cancel("nobody").result == CheckoutResult.NOT_IN_CHECKOUT

    def test_cancel_invalidates_generation(self, seed_data):
        _to_awaiting_proof(CUSTOMER, seed_data["p1"], 1, "voucher")
        before = _session().generation
        checkout_service.cancel(CUSTOMER)
        assert _session().generation == before + 1


class TestConfigFaults:
    """An unconfigured payment channel ends the checkout."""

    @patch("chatshop.services.verifiers.requests.post")
    def test_missing_wallet_phone_aborts(self, mock_post, seed_data, app, monkeypatch):
        monkeypatch.setitem(app.config, "TRUEMONEY_WALLET_PHONE", None)
        _to_awaiting_proof(CUSTOMER, seed_data["p1"], 1, "voucher")

        outcome = checkout_service.submit_proof(CUSTOMER, VOUCHER_LINK)

        assert outcome.result == CheckoutResult.CHECKOUT_ABORTED
        assert _session().state == CheckoutState.NONE.value
        mock_post.assert_not_called()
        assert pool(seed_data["p1"]) == ["A", "B", "C"]

    def test_missing_slip_secret_aborts(self, seed_data, app, monkeypatch):
        monkeypatch.setitem(app.config, "SLIP_CHECK_CLIENT_SECRET", "")
        _to_awaiting_proof(CUSTOMER, seed_data["p1"], 1, "bank_slip")

        outcome = checkout_service.submit_proof(CUSTOMER, SLIP_URL)

        assert outcome.result == CheckoutResult.CHECKOUT_ABORTED
        assert _session().state == CheckoutState.NONE.value
