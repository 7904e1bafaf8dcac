"""
Command line entry point.

Usage:
    canary-deploy deploy <new-service-name> <new-image-ref> <old-workspace> <old-instance-name> <binding-port>
    canary-deploy prepare <image> [<image> ...]
    canary-deploy init <service-name> <image-ref> [--port 80]
    canary-deploy status
    canary-deploy rollback        # restore a snapshot left behind by a killed run
"""

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from canary_deploy.bootstrap import initial_deploy
from canary_deploy.config import Settings, settings
from canary_deploy.errors import DeploymentError, PreflightError
from canary_deploy.health import AbortSignal
from canary_deploy.lock import DeploymentLock
from canary_deploy.logging_config import setup_logging
from canary_deploy.models import DeploymentRequest
from canary_deploy.orchestrator import CanaryDeployment
from canary_deploy.prepare import prepare
from canary_deploy.rollback import emergency_restore
from canary_deploy.routes import RouteStore
from canary_deploy.runtime import RuntimeAdapter

logger = logging.getLogger("canary_deploy")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="canary-deploy",
        description="Zero-downtime canary deployment behind Traefik",
    )
    parser.add_argument(
        "--project-root",
        default=None,
        help="Path to project root (default: CANARY_PROJECT_ROOT or current directory)",
    )
    parser.add_argument("--log-level", default=None, help="Console log level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="Replace the running version using a canary release")
    deploy.add_argument("new_service_name")
    deploy.add_argument("new_image_ref")
    deploy.add_argument("old_service_workspace")
    deploy.add_argument("old_instance_name")
    deploy.add_argument("binding_port", type=int)

    prep = sub.add_parser("prepare", help="Check connectivity and pull images")
    prep.add_argument("images", nargs="+")

    init = sub.add_parser("init", help="Deploy the first version and create the route document")
    init.add_argument("service_name")
    init.add_argument("image_ref")
    init.add_argument("--port", type=int, default=80)
    init.add_argument("--force", action="store_true", help="Overwrite an existing route document")

    sub.add_parser("status", help="Show the live route and any leftover deployment state")
    sub.add_parser("rollback", help="Restore a route snapshot left behind by an interrupted run")
    return parser


def _route_store(config: Settings) -> RouteStore:
    path = Path(config.ROUTE_CONFIG_PATH)
    if not path.is_absolute():
        path = Path(config.PROJECT_ROOT).resolve() / path
    return RouteStore(path)


def _runtime(config: Settings) -> RuntimeAdapter:
    return RuntimeAdapter(
        str(Path(config.PROJECT_ROOT).resolve()),
        command_timeout=config.COMMAND_TIMEOUT,
        compose_file_name=config.COMPOSE_FILE_NAME,
    )


def cmd_deploy(args, config: Settings) -> int:
    try:
        request = DeploymentRequest(
            new_service_name=args.new_service_name,
            new_image_ref=args.new_image_ref,
            old_service_workspace=args.old_service_workspace,
            old_instance_name=args.old_instance_name,
            binding_port=args.binding_port,
        )
    except ValidationError as e:
        raise PreflightError(f"Invalid arguments: {e}")

    abort = AbortSignal()
    signal.signal(signal.SIGTERM, lambda signum, frame: abort.set("SIGTERM received"))

    deployment = CanaryDeployment(request, config=config, abort=abort)
    result = deployment.run()
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)
    return 0


def cmd_prepare(args, config: Settings) -> int:
    prepare(_runtime(config), args.images, config.CONNECTIVITY_URLS)
    return 0


def cmd_init(args, config: Settings) -> int:
    initial_deploy(args.service_name, args.image_ref, args.port, config=config, force=args.force)
    return 0


def cmd_status(args, config: Settings) -> int:
    store = _route_store(config)
    print(f"\n{'=' * 50}")
    print("  Deployment Status")
    print(f"{'=' * 50}")
    print(f"  Route document: {store.path}")

    if store.exists():
        try:
            document = store.read()
        except DeploymentError as e:
            print(f"  Unreadable: {e}")
        else:
            for name, router in document.routers.items():
                print(f"  Router:      {name} ({router.rule})")
                for target in document.service_targets(name):
                    print(f"    -> {target.name} (weight {target.weight})")
    else:
        print("  Not found (run 'init' first)")

    pending = store.pending_snapshot()
    if pending is not None:
        print(f"\n  Leftover snapshot: {pending.path.name} ({pending.digest[:12]})")
        print("  A previous run did not finish. Run 'rollback' to restore it.")

    lock_path = Path(config.LOCK_FILE)
    if not lock_path.is_absolute():
        lock_path = Path(config.PROJECT_ROOT).resolve() / lock_path
    if DeploymentLock(lock_path).is_locked():
        print("\n  A deployment is in progress.")
    print(f"{'=' * 50}\n")
    return 0


def cmd_rollback(args, config: Settings) -> int:
    lock_path = Path(config.LOCK_FILE)
    if not lock_path.is_absolute():
        lock_path = Path(config.PROJECT_ROOT).resolve() / lock_path
    with DeploymentLock(lock_path):
        emergency_restore(_route_store(config))
    return 0


COMMANDS = {
    "deploy": cmd_deploy,
    "prepare": cmd_prepare,
    "init": cmd_init,
    "status": cmd_status,
    "rollback": cmd_rollback,
}


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)

    config = settings
    if args.project_root is not None:
        config = Settings(PROJECT_ROOT=args.project_root)

    log_file = config.LOG_FILE
    if log_file and not Path(log_file).is_absolute():
        log_file = str(Path(config.PROJECT_ROOT).resolve() / log_file)
    setup_logging(level=args.log_level, log_file=log_file or "")

    try:
        return COMMANDS[args.command](args, config)
    except DeploymentError as e:
        print(f"\nDeployment error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nAborted by user.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
