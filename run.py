#!/usr/bin/env python
"""
OptiPod controller entrypoint.

Wires the cluster client, metrics provider, reconciler and controller
together, starts the controller loop and serves the probe endpoints.

Usage:
    Controller: python run.py
    Dry run: OPTIPOD_DRY_RUN=true python run.py
    Check manifests offline: python run.py validate policies.yaml
"""

import argparse
import logging
import signal
import sys

from optipod.app import create_app, setup_logging
from optipod.config import get_config
from optipod.core.cluster import ClusterClient
from optipod.core.controller import Controller
from optipod.core.metrics import build_metrics_provider
from optipod.core.reconciler import PolicyReconciler
from optipod.core.validation import (
    PolicyValidationError,
    load_policy_manifests,
    policy_from_manifest,
)

logger = logging.getLogger("optipod")


def validate_files(paths: list[str]) -> int:
    """Validate policy manifests without contacting a cluster."""
    failures = 0
    for path in paths:
        try:
            manifests = load_policy_manifests(path)
        except (OSError, PolicyValidationError) as e:
            print(f"{path}: {e}")
            failures += 1
            continue
        for manifest in manifests:
            name = (manifest.get("metadata") or {}).get("name", "<unnamed>")
            try:
                policy_from_manifest(manifest)
                print(f"{path}: {name}: ok")
            except PolicyValidationError as e:
                print(f"{path}: {name}: {e.message}")
                failures += 1
    return 1 if failures else 0


def run_controller() -> int:
    config = get_config()
    setup_logging(config.LOG_LEVEL, config.LOG_FORMAT)

    cluster = ClusterClient(config)
    try:
        metrics_provider = build_metrics_provider(config, cluster)
    except ValueError as e:
        logger.error(f"Cannot start without a metrics provider: {e}")
        return 1

    reconciler = PolicyReconciler(cluster, metrics_provider, config)
    controller = Controller(cluster, reconciler, config)

    def shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        controller.stop(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)

    controller.start()

    app = create_app(config, controller=controller, metrics_provider=metrics_provider)
    app.run(host=config.PROBE_HOST, port=config.PROBE_PORT, debug=False, use_reloader=False)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="optipod")
    subparsers = parser.add_subparsers(dest="command")
    validate = subparsers.add_parser("validate", help="validate OptimizationPolicy manifests")
    validate.add_argument("files", nargs="+")
    args = parser.parse_args(argv)

    if args.command == "validate":
        return validate_files(args.files)
    return run_controller()


if __name__ == "__main__":
    sys.exit(main())
