# backend/backoffice/__init__.py
from flask import Flask

from .config import Config, engine_options
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Bounded persistence calls: busy timeout / statement timeout / pool timeout
    app.config.setdefault(
        "SQLALCHEMY_ENGINE_OPTIONS",
        engine_options(app.config["SQLALCHEMY_DATABASE_URI"], app.config["PERSISTENCE_TIMEOUT_SECONDS"]),
    )

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.documents import documents_bp
    from .routes.inventory import inventory_bp
    from .routes.backorders import backorders_bp
    from .routes.commissions import commissions_bp
    from .routes.finance import finance_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(documents_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(backorders_bp)
    app.register_blueprint(commissions_bp)
    app.register_blueprint(finance_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
