"""Tests for the operator CLI commands.

Covers:
- seed-shop (idempotent)
- add-stock from a payload file
- add-codes (random and manual) and delete-code
- pending-reconciliations and resolve-session
"""

from chatshop.extensions import db
from chatshop.models.catalog import Product
from chatshop.models.checkout import CheckoutSession, CheckoutState
from chatshop.models.ledger import RedemptionCode
from chatshop.services import proof_ledger

from conftest import pool


def _pin_session(customer_id):
    db.session.add(
        CheckoutSession(
            customer_id=customer_id,
            state=CheckoutState.AWAITING_PROOF.value,
            payment_method="voucher",
            frozen_total=50,
            lines=[],
            generation=3,
            attempts=0,
            needs_reconciliation=True,
            reconciliation_note="voucher abc verified (50) but settlement failed",
        )
    )
    db.session.commit()


class TestSeedShop:
    """Tests for flask seed-shop."""

    def test_seeds_once(self, app):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["seed-shop"])
        assert result.exit_code == 0
        assert "Demo shop created successfully!" in result.output
        assert Product.query.count() == 2
        assert proof_ledger.valid_code_count() == 3

        result = runner.invoke(args=["seed-shop"])
        assert "already seeded" in result.output
        assert Product.query.count() == 2


class TestAddStock:
    """Tests for flask add-stock."""

    def test_adds_lines(self, app, seed_data, tmp_path):
        payload_file = tmp_path / "keys.txt"
        payload_file.write_text("D\n\nE\n   \nF\n", encoding="utf-8")

        result = app.test_cli_runner().invoke(args=["add-stock", seed_data["p1"], str(payload_file)])

        assert result.exit_code == 0
        assert "Added 3 unit(s). 6 now in stock." in result.output
        assert pool(seed_data["p1"]) == ["A", "B", "C", "D", "E", "F"]

    def test_unknown_product(self, app, db_session, tmp_path):
        payload_file = tmp_path / "keys.txt"
        payload_file.write_text("X\n", encoding="utf-8")

        result = app.test_cli_runner().invoke(args=["add-stock", "missing", str(payload_file)])

        assert result.exit_code != 0
        assert "Unknown product" in result.output


class TestCodeCommands:
    """Tests for flask add-codes and flask delete-code."""

    def test_generate(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["add-codes", "--count", "4"])
        assert result.exit_code == 0
        assert "Added 4 code(s). 4 valid in total." in result.output
        assert RedemptionCode.query.count() == 4

    def test_manual_code(self, app, db_session):
        code = "M" * 32
        result = app.test_cli_runner().invoke(args=["add-codes", "--code", code])
        assert result.exit_code == 0
        assert db.session.get(RedemptionCode, code) is not None

    def test_count_out_of_range(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["add-codes", "--count", "1001"])
        assert result.exit_code != 0
        assert RedemptionCode.query.count() == 0

    def test_delete(self, app, seed_data):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["delete-code", seed_data["code"]])
        assert result.exit_code == 0
        assert proof_ledger.valid_code_count() == 0

        result = runner.invoke(args=["delete-code", seed_data["code"]])
        assert result.exit_code != 0


class TestReconciliationCommands:
    """Tests for flask pending-reconciliations and flask resolve-session."""

    def test_list_and_resolve(self, app, seed_data):
        _pin_session("cust-9999")
        runner = app.test_cli_runner()

        result = runner.invoke(args=["pending-reconciliations"])
        assert "cust-9999" in result.output
        assert "settlement failed" in result.output

        result = runner.invoke(args=["resolve-session", "cust-9999", "--note", "refunded"])
        assert result.exit_code == 0
        assert "released" in result.output

        result = runner.invoke(args=["pending-reconciliations"])
        assert "No sessions need reconciliation." in result.output

    def test_resolve_unknown(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["resolve-session", "nobody", "--note", "x"])
        assert result.exit_code != 0
