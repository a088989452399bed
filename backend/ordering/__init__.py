# backend/ordering/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Outbound payment gateway client (tests replace it with a fake)
    from .payments import build_gateway
    app.extensions["payment_gateway"] = build_gateway(app.config)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.carts import carts_bp
    from .routes.orders import orders_bp
    from .routes.payments import payments_bp
    from .routes.pricing import price_overrides_bp, pricing_bp
    from .routes.discounts import discounts_bp
    from .routes.stock import stock_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(carts_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(price_overrides_bp)
    app.register_blueprint(pricing_bp)
    app.register_blueprint(discounts_bp)
    app.register_blueprint(stock_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
