"""
Health check endpoints for OptiPod.

Provides liveness and readiness probes for the controller Deployment.
"""

import logging
from flask import Blueprint, current_app, jsonify

from optipod import __version__
from optipod.core.metrics import MetricsUnavailableError

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__)


@health_bp.route("/api/v1/health", methods=["GET"])
def health():
    """
    Health check endpoint.

    Returns basic application health status.
    """
    return jsonify({
        "status": "healthy",
        "service": "optipod",
        "version": __version__
    }), 200


@health_bp.route("/api/v1/health/ready", methods=["GET"])
def readiness():
    """
    Readiness check endpoint for Kubernetes readiness probe.

    Checks that the controller loop is running and the metrics backend answers.
    """
    state = current_app.extensions.get("optipod", {})
    controller = state.get("controller")
    provider = state.get("metrics_provider")

    health_status = {
        "status": "ready",
        "service": "optipod",
        "checks": {}
    }

    if controller is not None and controller.is_running:
        health_status["checks"]["controller"] = {
            "status": "healthy",
            "message": "Controller is running"
        }
    else:
        health_status["status"] = "not_ready"
        health_status["checks"]["controller"] = {
            "status": "unhealthy",
            "message": "Controller is not running"
        }

    if provider is not None:
        try:
            provider.health_check()
            health_status["checks"]["metrics"] = {
                "status": "healthy",
                "message": f"Metrics provider {provider.name} reachable"
            }
        except MetricsUnavailableError as e:
            logger.error(f"Metrics health check failed: {e}")
            health_status["status"] = "not_ready"
            health_status["checks"]["metrics"] = {
                "status": "unhealthy",
                "message": "Metrics provider unreachable"
            }

    if health_status["status"] != "ready":
        return jsonify(health_status), 503
    return jsonify(health_status), 200


@health_bp.route("/api/v1/health/live", methods=["GET"])
def liveness():
    """
    Liveness check endpoint for Kubernetes liveness probe.

    Returns simple alive status without dependency checks.
    """
    return jsonify({
        "status": "alive",
        "service": "optipod"
    }), 200
