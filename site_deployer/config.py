"""
This module defines constants for the site deployer.
It includes workspace layout names, the shared reverse proxy and docker network,
webhook listener defaults, polling bounds, the deployment ceiling and logging levels.

Settings is the configuration record handed to every component.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

APP_NAME = "site-deployer"
VERSION = "1.0.0"

# Workspace layout
WORKSPACE_DIR = Path.home() / ".site-deployer"
SITE_PREFIX = "site-"
COMPOSE_FILE_NAME = "docker-compose.yml"
ROUTE_SUFFIX = ".conf"
DISABLED_SUFFIX = ".disabled"
REPO_CONFIG_FILE = "repos.json"

# Shared infrastructure
PROXY_CONTAINER = "site-deployer-nginx"
DOCKER_NETWORK = "site-deployer-network"
DOMAIN_SUFFIX = "localhost"

# Webhook listener
WEBHOOK_HOST = "0.0.0.0"
WEBHOOK_PORT = 3000

# Timing configurations
READINESS_ATTEMPTS = 60
READINESS_INTERVAL = 1  # Seconds between readiness probes
RELOAD_ATTEMPTS = 5
RELOAD_INTERVAL = 2  # Seconds between proxy config checks
DEPLOYMENT_TIMEOUT = 30 * 60  # Ceiling for one pipeline run

# Repository defaults
DEFAULT_ZIP_LOCATION = "dist/plugin.zip"

# Application bootstrap
ADMIN_USER = "site-admin"
ADMIN_EMAIL = "admin@example.com"

# Logging configuration
LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class Settings:
    """Runtime configuration shared by the orchestrator, pipeline and webhook server"""
    workspace: Path = field(default_factory=lambda: WORKSPACE_DIR)
    site_prefix: str = SITE_PREFIX
    proxy_container: str = PROXY_CONTAINER
    network: str = DOCKER_NETWORK
    domain_suffix: str = DOMAIN_SUFFIX
    webhook_host: str = WEBHOOK_HOST
    webhook_port: int = WEBHOOK_PORT
    webhook_secret: str = ""
    readiness_attempts: int = READINESS_ATTEMPTS
    readiness_interval: float = READINESS_INTERVAL
    reload_attempts: int = RELOAD_ATTEMPTS
    reload_interval: float = RELOAD_INTERVAL
    deployment_timeout: float = DEPLOYMENT_TIMEOUT
    admin_user: str = ADMIN_USER
    admin_email: str = ADMIN_EMAIL

    def __post_init__(self):
        self.workspace = Path(self.workspace).expanduser()

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """
        Build settings from defaults, then the environment, then explicit overrides.
        Overrides set to None are ignored so unset CLI flags fall through.
        """
        values = {}
        if os.environ.get("SITE_DEPLOYER_HOME"):
            values["workspace"] = Path(os.environ["SITE_DEPLOYER_HOME"])
        if os.environ.get("WEBHOOK_SECRET"):
            values["webhook_secret"] = os.environ["WEBHOOK_SECRET"]

        known = {f.name for f in fields(cls)}
        for key, value in overrides.items():
            if key not in known:
                raise TypeError(f"Unknown setting: {key}")
            if value is not None:
                values[key] = value
        return cls(**values)

    @property
    def nginx_config_dir(self) -> Path:
        return self.workspace / "nginx-config"

    @property
    def templates_dir(self) -> Path:
        return self.workspace / "templates"

    @property
    def html_dir(self) -> Path:
        return self.workspace / "html"

    @property
    def repos_dir(self) -> Path:
        return self.workspace / "repos"

    @property
    def repo_config_path(self) -> Path:
        return self.workspace / REPO_CONFIG_FILE

    @property
    def proxy_compose_path(self) -> Path:
        return self.workspace / "nginx-docker-compose.yml"
