from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PROJECT_ROOT: str = "."
    TEMPLATE_DIR: str = "base-compose"
    COMPOSE_FILE_NAME: str = "compose.yaml"
    ROUTE_CONFIG_PATH: str = "traefik/dynamic-config.yaml"
    LOCK_FILE: str = ".canary-deploy.lock"

    # Routing
    ROUTER_NAME: str = "my-app-router"
    PUBLIC_HOST_RULE: str = "Host(`localhost`)"
    ENTRY_POINTS: list[str] = ["web"]
    PROVIDER_SUFFIX: str = "@docker"
    WEIGHT_OLD: int = 9
    WEIGHT_NEW: int = 1

    # Probing
    PUBLIC_ENDPOINT: str = "http://localhost"
    INSTANCE_HEALTH_PATH: str = "/"
    INSTANCE_HEALTH_PORT: Optional[int] = None
    PROBE_TIMEOUT: float = 5.0
    HEALTH_ATTEMPTS: int = 15
    HEALTH_INTERVAL: float = 2.0
    HEALTH_BACKOFF: float = 1.0
    HEALTH_MAX_INTERVAL: Optional[float] = None
    VALIDATION_CHECKS: int = 10
    VALIDATION_INTERVAL: float = 3.0
    CUTOVER_SETTLE_SECONDS: float = 5.0
    ROLLBACK_SETTLE_SECONDS: float = 5.0

    # Runtime
    COMMAND_TIMEOUT: int = 60
    CONNECTIVITY_URLS: list[str] = ["https://hub.docker.com"]

    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = "logs/canary-deploy.log"
    METRICS_FILE: Optional[str] = None

    class Config:
        env_prefix = "CANARY_"
        env_file = ".env"


settings = Settings()
