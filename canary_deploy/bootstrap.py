"""
First deployment of a service: start the initial instance from the template
and write the route document that points the public router at it. Later
versions are rolled out with ``CanaryDeployment``.
"""

import logging
import shutil
from pathlib import Path
from typing import Optional

from canary_deploy.config import Settings, settings
from canary_deploy.errors import DeploymentError, PreflightError
from canary_deploy.models import InstanceHandle
from canary_deploy.routes import RouteDocument, Router, RouteStore
from canary_deploy.runtime import RuntimeAdapter

logger = logging.getLogger(__name__)


def initial_deploy(
    service_name: str,
    image_ref: str,
    port: int,
    config: Settings = settings,
    runtime: Optional[RuntimeAdapter] = None,
    store: Optional[RouteStore] = None,
    force: bool = False,
) -> InstanceHandle:
    root = Path(config.PROJECT_ROOT).resolve()
    runtime = runtime or RuntimeAdapter(
        str(root), command_timeout=config.COMMAND_TIMEOUT,
        compose_file_name=config.COMPOSE_FILE_NAME,
    )
    route_path = Path(config.ROUTE_CONFIG_PATH)
    store = store or RouteStore(route_path if route_path.is_absolute() else root / route_path)

    if store.exists() and not force:
        raise PreflightError(
            f"{store.path} already exists; use 'deploy' to replace the running version "
            f"(or --force to overwrite)"
        )
    if runtime.workspace_for(service_name).exists():
        raise PreflightError(f"Service folder '{runtime.workspace_for(service_name)}' already exists")
    if not runtime.image_exists(image_ref):
        raise PreflightError(f"The image '{image_ref}' was not found locally. Please pull it first.")

    template = Path(config.TEMPLATE_DIR)
    template = template if template.is_absolute() else root / template
    logger.info(f"Deploying initial version {service_name} ({image_ref}) on port {port}...")
    try:
        handle = runtime.start_instance(str(template), image_ref, service_name, port)
    except DeploymentError:
        try:
            runtime.remove(f"{service_name}-container")
        except DeploymentError as cleanup_err:
            logger.warning(f"Could not remove {service_name}-container: {cleanup_err}")
        shutil.rmtree(runtime.workspace_for(service_name), ignore_errors=True)
        raise

    document = RouteDocument(
        routers={
            config.ROUTER_NAME: Router(
                rule=config.PUBLIC_HOST_RULE,
                service=f"{service_name}-svc{config.PROVIDER_SUFFIX}",
                entry_points=list(config.ENTRY_POINTS),
            )
        }
    )
    store.write(document)
    logger.info(f"Router '{config.ROUTER_NAME}' now points at {service_name}-svc{config.PROVIDER_SUFFIX}")
    return handle
