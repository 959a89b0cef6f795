# backend/duka/__init__.py
from __future__ import annotations

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

    # Gateway credentials are frozen here, once per app
    from .services.mpesa_gateway import MpesaConfig, MpesaGateway
    app.extensions["mpesa_gateway"] = MpesaGateway(MpesaConfig.from_mapping(app.config))

    # Register blueprints
    from .routes.system import system_bp
    from .routes.sales import sales_bp
    from .routes.purchases import purchases_bp
    from .routes.mpesa import mpesa_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(purchases_bp)
    app.register_blueprint(mpesa_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
