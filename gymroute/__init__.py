import logging

from flask import Flask, jsonify
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from werkzeug.exceptions import HTTPException

from .config import Config

db = SQLAlchemy()

logger = logging.getLogger(__name__)


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    from .log import configure_logging
    configure_logging(app.config["LOG_LEVEL"])

    db.init_app(app)
    CORS(app)

    from .routes import payments_bp
    app.register_blueprint(payments_bp)

    register_error_handlers(app)

    from .cli import register_commands
    register_commands(app)

    with app.app_context():
        from . import models  # noqa: F401
        db.create_all()

    return app


def register_error_handlers(app):
    from .errors import PaymentError

    @app.errorhandler(PaymentError)
    def handle_payment_error(error):
        if error.status_code >= 500:
            logger.error(f"[error] {error.code}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        if isinstance(error, HTTPException):
            return jsonify({"success": False, "error": error.description}), error.code
        logger.exception("[error] unhandled exception")
        return jsonify({"success": False, "error": "Internal server error"}), 500
