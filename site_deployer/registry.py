"""
Site registry: the workspace directory is the source of truth for which sites exist.

A site lives in <workspace>/<prefix><name>/ and counts as existing only when its
stack-configuration file is present, so half-created or foreign directories are skipped.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List

from site_deployer import config
from site_deployer.errors import ValidationError

# DNS label: lowercase alphanumerics and inner hyphens, at most 63 characters
SITE_NAME_REGEX = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def validate_site_name(name: str) -> str:
    if not name:
        raise ValidationError("site name is required")
    if not SITE_NAME_REGEX.match(name):
        raise ValidationError(
            f"invalid site name '{name}': use lowercase letters, digits and hyphens (max 63)")
    return name


@dataclass(frozen=True)
class SitePaths:
    dir: Path
    compose_file: Path
    route_file: Path
    disabled_route_file: Path


class SiteRegistry:
    """Enumerates sites and maps a site name to its files"""

    def __init__(self, settings: config.Settings):
        self.settings = settings

    def paths(self, name: str) -> SitePaths:
        """Pure function of the name, usable before the site exists"""
        site_dir = self.settings.workspace / f"{self.settings.site_prefix}{name}"
        route_file = self.settings.nginx_config_dir / f"{name}{config.ROUTE_SUFFIX}"
        return SitePaths(
            dir=site_dir,
            compose_file=site_dir / config.COMPOSE_FILE_NAME,
            route_file=route_file,
            disabled_route_file=route_file.with_name(route_file.name + config.DISABLED_SUFFIX),
        )

    def list(self) -> List[str]:
        workspace = self.settings.workspace
        if not workspace.is_dir():
            return []

        prefix = self.settings.site_prefix
        sites = []
        for entry in workspace.iterdir():
            if not entry.is_dir() or not entry.name.startswith(prefix):
                continue
            if (entry / config.COMPOSE_FILE_NAME).is_file():
                sites.append(entry.name[len(prefix):])
        return sorted(sites)

    def exists(self, name: str) -> bool:
        return self.paths(name).compose_file.is_file()
