import os
import logging

import click
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash

from app.config import config_by_name
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
    from app.blueprints.subscriptions import subscriptions_bp
    from app.blueprints.admin import admin_bp
    from app.blueprints.webhooks import webhooks_bp
    from app.blueprints.cron import cron_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(subscriptions_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(cron_bp)

    # Webhooks are signed with the raw body, not a CSRF token
    csrf.exempt(webhooks_bp)
    # Cron is bearer-authenticated and has no session
    csrf.exempt(cron_bp)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    # --- Error handlers (JSON everywhere) ---
    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify({"error": e.description or e.name}), e.code

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

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
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON API: nothing to load, nothing to frame
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
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

    @app.cli.command("seed-admin")
    @click.option("--email", default="admin@subscriptions.local", help="Admin email")
    @click.option("--password", default="admin123", help="Admin password")
    def seed_admin(email, password):
        """Create the admin user.

        Usage:
            flask seed-admin
            flask seed-admin --email admin@example.com --password s3cret
        """
        from app.models.user import User

        existing = User.query.filter_by(email=email).first()
        if existing:
            click.echo(f"Admin user already exists: {email}")
            return

        admin = User(
            email=email,
            password_hash=generate_password_hash(password),
            full_name="Admin",
            is_admin=True,
        )
        db.session.add(admin)
        db.session.commit()
        click.echo(f"Created admin user: {email}")

    @app.cli.command("reconcile-pending")
    def reconcile_pending():
        """Run one reconciliation sweep over stuck pending subscriptions.

        Usage (Railway cron, every 5 minutes):
            flask reconcile-pending
        """
        from app.services.reconciliation_service import run_sweep

        report = run_sweep()
        _echo_sweep(report)

    @app.cli.command("run-sweeper")
    @click.option("--interval", type=int, default=None,
                  help="Seconds between sweeps (default SWEEP_INTERVAL_SECONDS).")
    @click.option("--max-runs", type=int, default=0, help="Stop after N sweeps (0 = forever).")
    def run_sweeper(interval, max_runs):
        """Run sweeps back to back as a long-lived worker process."""
        import time

        from app.services.reconciliation_service import run_sweep

        interval = interval or app.config["SWEEP_INTERVAL_SECONDS"]
        runs = 0
        click.echo(f"Sweeper started (interval={interval}s)")
        while True:
            try:
                _echo_sweep(run_sweep())
            except Exception:
                db.session.rollback()
                logging.getLogger(__name__).error("Sweep failed", exc_info=True)
            runs += 1
            if max_runs and runs >= max_runs:
                break
            time.sleep(interval)

    @app.cli.command("reconcile")
    @click.option("--external-reference", default=None)
    @click.option("--subscription-id", default=None)
    @click.option("--payment-id", default=None)
    @click.option("--user-id", default=None)
    @click.option("--force", is_flag=True, help="Activate without provider approval.")
    @click.option("--reason", default=None, help="Required with --force.")
    def reconcile(external_reference, subscription_id, payment_id, user_id, force, reason):
        """Reconcile a single subscription against the provider."""
        from app.services.reconciliation_service import reconcile as run_reconcile

        try:
            result = run_reconcile(
                external_reference=external_reference,
                subscription_id=subscription_id,
                payment_id=payment_id,
                user_id=user_id,
                force=force,
                reason=reason,
                source="manual",
            )
        except ValueError as e:
            raise click.UsageError(str(e))
        sub_id = result.subscription.id if result.subscription else "-"
        click.echo(f"{result.outcome}: subscription={sub_id} {result.detail or ''}")

    @app.cli.command("integrity-report")
    @click.option("--user-id", default=None, help="Check a single user.")
    @click.option("--external-reference", default=None)
    @click.option("--limit", type=int, default=50, help="Batch size when no user is given.")
    def integrity_report(user_id, external_reference, limit):
        """Print subscription integrity reports.

        Usage:
            flask integrity-report --user-id <id>
            flask integrity-report --limit 100
        """
        from app.services import integrity_service

        if user_id:
            result = integrity_service.check_user(user_id, external_reference)
            click.echo(integrity_service.render_text_report(result))
            return

        batch = integrity_service.check_batch(limit=limit)
        summary = batch["summary"]
        click.echo("=" * 60)
        click.echo(f"  Users checked: {batch['total_users']}")
        click.echo(f"  Healthy:       {batch['healthy_count']}")
        click.echo(f"  Warning:       {batch['warning_count']}")
        click.echo(f"  Critical:      {batch['critical_count']}")
        click.echo(f"  Avg score:     {summary['avg_integrity_score']}")
        click.echo("=" * 60)
        for item in summary["common_issues"]:
            click.echo(f"  {item['count']:>4}  {item['issue']}")
        for rec in summary["recommendations"]:
            click.echo(f"  -> {rec}")

    @app.cli.command("replay-webhook")
    @click.argument("log_id")
    def replay_webhook(log_id):
        """Re-run processing for a stored webhook receipt."""
        from app.services.webhook_service import replay_webhook as run_replay

        try:
            result = run_replay(log_id)
        except ValueError as e:
            raise click.UsageError(str(e))
        click.echo(
            f"{result.outcome}: subscription={result.subscription_id or '-'} "
            f"strategy={result.strategy or '-'} {result.error or ''}"
        )


def _echo_sweep(report):
    if report.skipped:
        click.echo("Sweep skipped: another sweep is running.")
        return
    click.echo(
        f"Sweep: checked={report.checked} outcomes={report.outcomes} "
        f"timed_out={report.timed_out} webhooks_retried={report.webhooks_retried} "
        f"sync_retried={report.sync_retried} "
        f"divergences={len(report.divergences)} "
        f"({report.duration_seconds:.1f}s)"
    )
