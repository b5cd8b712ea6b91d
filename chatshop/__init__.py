import os
import logging

import click
from flask import Flask, jsonify

from chatshop.config import config_by_name
from chatshop.extensions import db, migrate, limiter


def create_app(config_name=None, overrides=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])
    if overrides:
        app.config.update(overrides)

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Local fallback database ---
    if not app.config.get("SQLALCHEMY_DATABASE_URI"):
        os.makedirs(app.instance_path, exist_ok=True)
        app.config["SQLALCHEMY_DATABASE_URI"] = (
            "sqlite:///" + os.path.join(app.instance_path, "chatshop.db")
        )

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from chatshop import models  # noqa: F401

    # --- Register blueprints ---
    from chatshop.blueprints.checkout import checkout_bp

    app.register_blueprint(checkout_bp)

    # --- Error handlers ---
    @app.errorhandler(401)
    def unauthorized(e):
        return jsonify(ok=False, error="Unauthorized."), 401

    @app.errorhandler(404)
    def not_found(e):
        return jsonify(ok=False, error="Not found."), 404

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify(ok=False, error="Too many requests. Please slow down."), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify(ok=False, error="Internal server error."), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Responses carry delivered codes; never cache them
        response.headers["Cache-Control"] = "no-store"
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-shop")
    def seed_shop():
        """Create a demo category, two products with stock, and a few codes.

        Usage:
            flask seed-shop
        """
        from chatshop.models.catalog import Category, Product
        from chatshop.services import inventory_service, proof_ledger

        category = Category.query.filter_by(name="Game Keys").first()
        if category:
            click.echo("Demo shop already seeded.")
            return

        category = Category(name="Game Keys", description="Digital game keys")
        db.session.add(category)
        db.session.flush()

        steam = Product(name="Steam Wallet 100", price=100, category=category)
        netflix = Product(name="Netflix 1 Month", price=169, category=category)
        db.session.add_all([steam, netflix])
        db.session.commit()

        inventory_service.add_stock(
            steam.id, [f"STEAM-DEMO-{i:04d}" for i in range(1, 6)]
        )
        inventory_service.add_stock(
            netflix.id, [f"https://example.com/redeem/netflix-{i}" for i in range(1, 4)]
        )
        codes = proof_ledger.add_redemption_codes(count=3)

        click.echo("")
        click.echo("=" * 60)
        click.echo("Demo shop created successfully!")
        click.echo("=" * 60)
        click.echo(f"  Category:  {category.name} (id: {category.id})")
        click.echo(f"  Product:   {steam.name} (id: {steam.id}), 5 units")
        click.echo(f"  Product:   {netflix.name} (id: {netflix.id}), 3 units")
        for code in codes:
            click.echo(f"  Code:      {code}")
        click.echo("=" * 60)

    @app.cli.command("add-stock")
    @click.argument("product_id")
    @click.argument("payload_file", type=click.File("r", encoding="utf-8"))
    def add_stock(product_id, payload_file):
        """Append one stock unit per non-blank line of PAYLOAD_FILE.

        Usage:
            flask add-stock <product-id> keys.txt
        """
        from chatshop.services import inventory_service

        try:
            added = inventory_service.add_stock(product_id, payload_file.read().splitlines())
        except ValueError as e:
            raise click.ClickException(str(e))
        available = inventory_service.check_available(product_id)
        click.echo(f"Added {added} unit(s). {available} now in stock.")

    @app.cli.command("add-codes")
    @click.option("--count", default=1, show_default=True, help="Random codes to generate (1-1000).")
    @click.option("--code", default=None, help="Add this specific 32-character code instead.")
    def add_codes(count, code):
        """Add prepaid redemption codes.

        Usage:
            flask add-codes --count 50
            flask add-codes --code ABCDEF0123456789ABCDEF0123456789
        """
        from chatshop.services import proof_ledger

        try:
            codes = proof_ledger.add_redemption_codes(count=count, code=code)
        except ValueError as e:
            raise click.ClickException(str(e))
        for value in codes:
            click.echo(value)
        click.echo(f"Added {len(codes)} code(s). {proof_ledger.valid_code_count()} valid in total.")

    @app.cli.command("delete-code")
    @click.argument("code")
    def delete_code(code):
        """Remove a still-valid redemption code."""
        from chatshop.services import proof_ledger

        if not proof_ledger.delete_redemption_code(code):
            raise click.ClickException("Code not found among valid codes.")
        click.echo("Code deleted.")

    @app.cli.command("pending-reconciliations")
    def pending_reconciliations():
        """List checkout sessions waiting for manual reconciliation."""
        from chatshop.services import checkout_service

        sessions = checkout_service.pending_reconciliations()
        if not sessions:
            click.echo("No sessions need reconciliation.")
            return
        for session in sessions:
            click.echo(f"{session.customer_id}  {session.payment_method}  {session.frozen_total}")
            click.echo(f"    {session.reconciliation_note}")

    @app.cli.command("resolve-session")
    @click.argument("customer_id")
    @click.option("--note", required=True, help="What was done to settle it (refund, manual delivery).")
    def resolve_session(customer_id, note):
        """Release a pinned checkout session after manual resolution.

        Usage:
            flask resolve-session 1234567890 --note "refunded via wallet"
        """
        from chatshop.services import checkout_service

        if not checkout_service.resolve_reconciliation(customer_id, note):
            raise click.ClickException("Session is not awaiting reconciliation.")
        click.echo(f"Session {customer_id} released.")
