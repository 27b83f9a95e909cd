"""
Routes package for OptiPod.

Contains Flask blueprints for the probe endpoints.
"""

from optipod.routes.health import health_bp

__all__ = ["health_bp"]
