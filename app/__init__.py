import os
import logging

import click
from flask import Flask
from werkzeug.security import generate_password_hash

from app.config import config_by_name
from app.errors import register_error_handlers
from app.extensions import db, migrate, login_manager, csrf, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            if config_name == "production":
                raise
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from app import models  # noqa: F401

    # --- Register blueprints ---
    from app.blueprints.auth import auth_bp
    from app.blueprints.checkout import checkout_bp
    from app.blueprints.payments import payments_bp
    from app.blueprints.entitlements import entitlements_bp
    from app.blueprints.webhooks import webhooks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(entitlements_bp)
    app.register_blueprint(webhooks_bp)

    # Exempt webhooks from CSRF — raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)

    # --- Error handlers ---
    register_error_handlers(app)

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
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Billing responses are per-user
        if response.mimetype == "application/json":
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

    @app.cli.command("seed-demo")
    @click.option("--email", default="demo@example.com", help="Demo user email")
    @click.option("--password", default="demo12345", help="Demo user password")
    def seed_demo(email, password):
        """Create a demo user and a paid course.

        Usage:
            flask seed-demo
            flask seed-demo --email me@example.com --password s3cret
        """
        from app.models.course import Course
        from app.models.user import User

        # --- 1. Demo user ---
        user = User.query.filter_by(email=email).first()
        if user:
            click.echo(f"Demo user already exists: {email}")
        else:
            user = User(
                email=email,
                password_hash=generate_password_hash(password),
                full_name="Demo Learner",
            )
            db.session.add(user)
            db.session.flush()
            click.echo(f"Created demo user: {email}")

        # --- 2. Paid course ---
        course = Course.query.filter_by(title="Demo Course").first()
        if course is None:
            course = Course(title="Demo Course", price_cents=4900, days_of_access=365)
            db.session.add(course)
            db.session.flush()

        db.session.commit()

        click.echo("")
        click.echo("=" * 60)
        click.echo("Seed data created successfully!")
        click.echo("=" * 60)
        click.echo(f"  User:    {email} / {password} (id: {user.id})")
        click.echo(f"  Course:  {course.title} ${course.price_cents / 100:.2f} (id: {course.id})")
        click.echo("=" * 60)

    @app.cli.command("verify-stripe-prices")
    def verify_stripe_prices():
        """Verify configured tier price IDs exist and are usable (same mode as key).

        Run with prod env vars to confirm Live prices; run with test vars for Test mode.
        """
        import stripe as _stripe

        from app.services.entitlement_service import get_price_id, INTERVALS, TIERS

        api_key = app.config.get("STRIPE_SECRET_KEY")
        if not api_key:
            click.echo("ERROR: STRIPE_SECRET_KEY is not set.")
            return
        key_mode = "Live" if api_key.startswith("sk_live_") else "Test"
        click.echo(f"Stripe key mode: {key_mode}")
        click.echo("")

        _stripe.api_key = api_key

        def check_price(label: str, price_id: str, interval: str) -> None:
            if not price_id:
                click.echo(f"  {label}: (not set)")
                return
            try:
                price = _stripe.Price.retrieve(price_id)
                livemode = getattr(price, "livemode", "?")
                recurring = getattr(price, "recurring", None)
                price_interval = recurring.get("interval") if recurring else None
                click.echo(f"  {label}: {price_id}")
                click.echo(f"    exists=True, livemode={livemode}, interval={price_interval}")
                if livemode is True and key_mode != "Live":
                    click.echo("    WARNING: This price is Live but your key is Test.")
                elif livemode is False and key_mode == "Live":
                    click.echo("    WARNING: This price is Test but your key is Live.")
                if price_interval != interval:
                    click.echo(f"    WARNING: Expected a recurring {interval}ly price.")
            except _stripe.InvalidRequestError as e:
                click.echo(f"  {label}: {price_id}")
                click.echo(f"    ERROR: {e}")

        for tier in TIERS:
            for interval in INTERVALS:
                check_price(f"{tier}/{interval}", get_price_id(tier, interval, app.config), interval)
        click.echo("")
