import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class DeploymentState(str, enum.Enum):
    IDLE = "Idle"
    NEW_INSTANCE_STARTING = "NewInstanceStarting"
    INITIAL_HEALTH_CHECK = "InitialHealthCheck"
    CANARY_ROUTING = "CanaryRouting"
    CANARY_VALIDATION = "CanaryValidation"
    FULL_CUTOVER = "FullCutover"
    POST_CUTOVER_CHECK = "PostCutoverCheck"
    DECOMMISSIONING = "Decommissioning"
    COMMITTED = "Committed"
    ROLLED_BACK = "RolledBack"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentState.COMMITTED, DeploymentState.ROLLED_BACK)


# Linear order of the happy path; RolledBack may follow any non-terminal state.
STAGE_ORDER = [
    DeploymentState.IDLE,
    DeploymentState.NEW_INSTANCE_STARTING,
    DeploymentState.INITIAL_HEALTH_CHECK,
    DeploymentState.CANARY_ROUTING,
    DeploymentState.CANARY_VALIDATION,
    DeploymentState.FULL_CUTOVER,
    DeploymentState.POST_CUTOVER_CHECK,
    DeploymentState.DECOMMISSIONING,
    DeploymentState.COMMITTED,
]


class DeploymentRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    new_service_name: str = Field(min_length=1)
    new_image_ref: str = Field(min_length=1)
    old_service_workspace: str = Field(min_length=1)
    old_instance_name: str = Field(min_length=1)
    binding_port: int = Field(ge=1, le=65535)

    @property
    def new_container_name(self) -> str:
        return f"{self.new_service_name}-container"

    @property
    def new_compose_service(self) -> str:
        return f"{self.new_service_name}-svc"

    @property
    def weighted_service_name(self) -> str:
        return f"{self.new_service_name}-weighted-svc"


@dataclass
class InstanceHandle:
    name: str
    workspace_path: Path
    network_address: str = ""

    @property
    def has_address(self) -> bool:
        return bool(self.network_address)


@dataclass
class DeploymentResult:
    state: DeploymentState
    router_name: str
    instance: Optional[InstanceHandle] = None
    duration_seconds: float = 0.0
    warnings: list = field(default_factory=list)
