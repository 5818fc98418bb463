# backend/backoffice/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.orders import orders_bp
    from .routes.allocations import allocations_bp
    from .routes.inventory import inventory_bp
    from .routes.finance import finance_bp
    from .routes.reports import reports_bp
    from .routes.customers import customers_bp
    from .routes.returns import returns_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(allocations_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(finance_bp)
    app.register_blueprint(reports_bp)
    app.register_blueprint(customers_bp)
    app.register_blueprint(returns_bp)

    # Post-commit notifications
    from .signals import order_status_changed, log_status_change
    order_status_changed.connect(log_status_change, app)

    # OTP sessions live in memory for the lifetime of the process
    from .services.otp_service import OtpService
    otp_service = OtpService.from_config(app.config)
    otp_service.init()
    app.extensions["otp_service"] = otp_service

    if app.config.get("SWEEP_ENABLED"):
        from .services.scheduler_service import SweepScheduler
        scheduler = SweepScheduler(app, otp_service=otp_service)
        scheduler.init()
        app.extensions["sweep_scheduler"] = scheduler

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
