import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from canary_deploy.errors import CommandError, InstanceCreationError
from canary_deploy.models import InstanceHandle

logger = logging.getLogger(__name__)


class RuntimeAdapter:
    """Thin wrapper over the docker / docker compose CLI."""

    def __init__(self, project_root: str, command_timeout: int = 60,
                 compose_file_name: str = "compose.yaml"):
        self.project_root = Path(project_root).resolve()
        self.command_timeout = command_timeout
        self.compose_file_name = compose_file_name

    # ── Command Execution ─────────────────────────────────────────

    def run_command(
        self, cmd, timeout: Optional[int] = None, check: bool = True,
        env: Optional[dict] = None,
    ) -> subprocess.CompletedProcess:
        if isinstance(cmd, str):
            cmd_list = cmd.split()
            cmd_str = cmd
        else:
            cmd_list = list(cmd)
            cmd_str = " ".join(cmd)
        timeout = timeout or self.command_timeout

        logger.debug(f"  $ {cmd_str}")
        try:
            result = subprocess.run(
                cmd_list,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=str(self.project_root),
                env={**os.environ, **env} if env else None,
            )
        except subprocess.TimeoutExpired:
            raise CommandError(f"Command timed out after {timeout}s: {cmd_str}")
        except FileNotFoundError as e:
            raise CommandError(f"Command not found: {cmd_list[0]} ({e})")

        if check and result.returncode != 0:
            logger.error(f"  Command failed (rc={result.returncode}): {result.stderr.strip()}")
            raise CommandError(
                f"Command failed: {cmd_str}\nstderr: {result.stderr.strip()}",
                returncode=result.returncode,
                stderr=result.stderr.strip(),
            )
        return result

    # ── Instances ─────────────────────────────────────────────────

    def workspace_for(self, service_name: str) -> Path:
        return self.project_root / service_name

    def start_instance(
        self, template: str, image_ref: str, service_name: str, port: int,
    ) -> InstanceHandle:
        """Instantiate ``template`` as a new compose project and bring it up."""
        template_dir = Path(template)
        if not template_dir.is_absolute():
            template_dir = self.project_root / template_dir
        workspace = self.workspace_for(service_name)
        handle = InstanceHandle(name=f"{service_name}-container", workspace_path=workspace)

        try:
            shutil.copytree(template_dir, workspace)
        except (OSError, shutil.Error) as e:
            raise InstanceCreationError(f"Failed to create service folder {workspace}: {e}")

        compose_file = workspace / self.compose_file_name
        env = {
            "APP_IMAGE_TAG": image_ref,
            "APP_CONTAINER_NAME": handle.name,
            "APP_SERVICE_NAME": f"{service_name}-svc",
            "NEW_BINDING_PORT": str(port),
        }
        try:
            self.run_command(
                ["docker", "compose", "-f", str(compose_file), "up", "-d"], env=env,
            )
        except CommandError as e:
            raise InstanceCreationError(f"Failed to start {handle.name}: {e}")

        logger.info(f"  Started {handle.name} from {template_dir.name} ({image_ref})")
        return handle

    def resolve_address(self, name: str) -> str:
        result = self.run_command(
            [
                "docker", "inspect", "-f",
                "{{range .NetworkSettings.Networks}}{{.IPAddress}}{{end}}",
                name,
            ],
            timeout=10,
            check=False,
        )
        if result.returncode != 0:
            return ""
        return result.stdout.strip()

    def is_running(self, name: str) -> bool:
        result = self.run_command(
            ["docker", "ps", "-q", "--filter", f"name=^{name}$"], timeout=10, check=False,
        )
        return result.returncode == 0 and bool(result.stdout.strip())

    def exists(self, name: str) -> bool:
        """Like is_running, but stopped and crashed containers count too."""
        result = self.run_command(
            ["docker", "ps", "-aq", "--filter", f"name=^{name}$"], timeout=10, check=False,
        )
        return result.returncode == 0 and bool(result.stdout.strip())

    def image_exists(self, ref: str) -> bool:
        result = self.run_command(["docker", "images", "-q", ref], timeout=10, check=False)
        return result.returncode == 0 and bool(result.stdout.strip())

    def remove(self, name: str) -> bool:
        """Force-remove a container. Returns False if there was nothing to remove."""
        if not self.exists(name):
            logger.debug(f"  {name} not found, nothing to remove")
            return False
        self.run_command(["docker", "rm", "-f", name], timeout=30)
        logger.info(f"  Removed container {name}")
        return True

    def pull_image(self, ref: str) -> None:
        self.run_command(["docker", "pull", ref], timeout=max(self.command_timeout, 600))
