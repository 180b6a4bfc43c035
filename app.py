import os
import click
from flask import Flask, jsonify
from config import Config
from extensions import db, login_manager, init_extensions
from logger import init_logging
from accrual.config import AccrualConfig
from accrual.notifications import init_notifier



# --------------------------------------------------------------------------------------------------------
#       Application factory
# --------------------------------------------------------------------------------------------------------
def create_app(config_class=Config, notifier=None):
    app = Flask(__name__)
    app.config.from_object(config_class)

    if not app.debug and not app.testing:
        app.config.update(
            SESSION_COOKIE_SECURE=True,
            SESSION_COOKIE_HTTPONLY=True,
            REMEMBER_COOKIE_SECURE=True,
            REMEMBER_COOKIE_HTTPONLY=True,
        )

    # ------------------------------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------------------------------
    init_logging(app)

    # ----------------------------------------------------------------------------------------------------------------------------------
    # SQLite fallback lives under instance/
    # --------------------------------------------------------------------------------------------------------------------------------------------
    database_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if database_uri.startswith("sqlite:///"):
        os.makedirs(os.path.dirname(database_uri[len("sqlite:///"):]) or ".", exist_ok=True)

    # --------------------------------------------------------------------------------------------------------------------------
    # Initialize extensions
    # ----------------------------------------------------------------------------------------------------------------------------
    init_extensions(app)
    init_notifier(app, notifier)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "User not authenticated"}), 401

    # ------------------------------------------------------------------------------------------------------------------------
    # Register blueprints
    # -----------------------------------------------------------------------------------------------------------------------
    register_blueprints(app)

    # ------------------------------------------------------------------------------------------------------------------------
    # CLI
    # ------------------------------------------------------------------------------------------------------------------------
    register_commands(app)

    # ----------------------
    # Basic routes
    # ----------------------
    @app.route("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    return app


def register_blueprints(app):
    from blueprints.admin import admin_bp
    from blueprints.investments import bp as investments_bp
    from blueprints.wallet import bp as wallet_bp
    from blueprints.api_helpers import maintenance_guard

    app.register_blueprint(admin_bp)
    app.register_blueprint(investments_bp)
    app.register_blueprint(wallet_bp)
    app.before_request(maintenance_guard)


def register_commands(app):

    @app.cli.command("run-accrual")
    def run_accrual_command():
        """Run payouts and referral maturation once."""
        from accrual.scheduler import run_accrual, summary_to_json

        summary = summary_to_json(run_accrual(AccrualConfig.from_mapping(app.config)))
        payouts = summary["payouts"]
        referrals = summary["referrals"]
        click.echo(f"status: {summary['status']}")
        click.echo(
            f"payouts: {payouts['processed']} processed, {payouts['completed']} completed, "
            f"{payouts['skipped']} skipped, {payouts['errors']} errors, total paid {payouts['total_paid']}"
        )
        click.echo(
            f"referrals: {referrals['unlocked']} unlocked, {referrals['still_pending']} still pending, "
            f"{referrals['errors']} errors"
        )

    @app.cli.command("init-db")
    def init_db_command():
        """Create all tables (development databases without migrations)."""
        db.create_all()
        click.echo("Database tables created")


# ----------------------
# Local development
# ----------------------
if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    debug_mode = app.config.get("DEBUG", True)
    app.run(debug=debug_mode, host="0.0.0.0", port=port)
