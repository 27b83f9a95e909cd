"""
Flask application factory for the OptiPod probe server.

This module provides the application factory pattern for creating the small
Flask app that serves liveness and readiness probes next to the controller.
"""

import logging
import sys
from typing import Optional

from flask import Flask, jsonify

from optipod.config import get_config, BaseConfig


def setup_logging(log_level_name: str = "INFO", log_format: str = "json") -> None:
    """
    Configure process-wide logging.

    Args:
        log_level_name: Level name such as INFO or DEBUG.
        log_format: 'json' or 'text'.
    """
    log_level = getattr(logging, log_level_name.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"logger": "%(name)s", "thread": "%(threadName)s", "message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s"
        )

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(log_level)
    root_logger.addHandler(stream_handler)

    # The kubernetes client logs every request at DEBUG
    logging.getLogger("kubernetes").setLevel(max(log_level, logging.INFO))
    logging.getLogger("urllib3").setLevel(max(log_level, logging.WARNING))


def register_blueprints(app: Flask) -> None:
    """
    Register all Flask blueprints.

    Args:
        app: Flask application instance
    """
    from optipod.routes.health import health_bp

    app.register_blueprint(health_bp)


def register_error_handlers(app: Flask) -> None:
    """
    Register application-wide error handlers.

    Args:
        app: Flask application instance
    """

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            "code": "NOT_FOUND",
            "message": "Resource not found",
            "details": None,
            "trace_id": None
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            "code": "METHOD_NOT_ALLOWED",
            "message": "Method not allowed",
            "details": None,
            "trace_id": None
        }), 405

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.exception("Internal server error")
        return jsonify({
            "code": "INTERNAL_ERROR",
            "message": "An internal error occurred",
            "details": None,
            "trace_id": None
        }), 500


def create_app(
    config: Optional[BaseConfig] = None,
    controller=None,
    metrics_provider=None,
) -> Flask:
    """
    Create and configure the probe application.

    Args:
        config: Optional configuration object. If not provided, configuration
                is determined from the OPTIPOD_ENV environment variable.
        controller: The running Controller, consulted by readiness.
        metrics_provider: The metrics provider, health-checked by readiness.

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    if config is None:
        config = get_config()

    app.config.from_object(config)
    app.extensions["optipod"] = {
        "controller": controller,
        "metrics_provider": metrics_provider,
    }

    register_blueprints(app)
    register_error_handlers(app)

    app.logger.info("OptiPod probe server initialized")

    return app
