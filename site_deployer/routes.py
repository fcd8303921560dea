"""
Reverse proxy route toggling.

A site's route is a single nginx server block that is either active (<name>.conf,
read by the proxy) or parked (<name>.conf.disabled). Moving between the two is a
rename, so at most one of the files exists at any time.
"""

import logging
import time

from site_deployer import config, helpers
from site_deployer.errors import ExternalToolError, TimeoutExhaustedError
from site_deployer.poller import poll_until
from site_deployer.registry import SiteRegistry

logger = logging.getLogger(__name__)


class RouteToggle:
    def __init__(self, settings: config.Settings, registry: SiteRegistry,
                 runner=helpers, sleep=time.sleep):
        self.settings = settings
        self.registry = registry
        self.runner = runner
        self.sleep = sleep

    def enable(self, name: str) -> bool:
        """Activate the route. Returns True if routing changed."""
        paths = self.registry.paths(name)
        if not paths.disabled_route_file.exists():
            return False
        paths.disabled_route_file.replace(paths.route_file)
        logger.info(f"Enabled route for '{name}'")
        return True

    def disable(self, name: str) -> bool:
        """Park the route. Returns True if routing changed."""
        paths = self.registry.paths(name)
        if not paths.route_file.exists():
            return False
        paths.route_file.replace(paths.disabled_route_file)
        logger.info(f"Disabled route for '{name}'")
        return True

    def remove(self, name: str) -> bool:
        """Delete both route variants. Returns True if an active route was removed."""
        changed = self.disable(name)
        self.registry.paths(name).disabled_route_file.unlink(missing_ok=True)
        return changed

    def reload_if_changed(self, changed: bool) -> bool:
        if not changed:
            return False
        return self.reload()

    def reload(self) -> bool:
        """
        Reload the proxy once its configuration passes a syntax check.

        Failure is logged, never raised: the site operation that asked for the
        reload has already succeeded.
        """
        proxy = self.settings.proxy_container
        try:
            poll_until(
                lambda: self.runner.command_succeeds(["docker", "exec", proxy, "nginx", "-t"]),
                self.settings.reload_attempts,
                self.settings.reload_interval,
                description="nginx config test",
                sleep=self.sleep,
            )
        except TimeoutExhaustedError:
            logger.warning(
                f"Skipped nginx reload: config test failed after {self.settings.reload_attempts} attempts")
            return False

        try:
            self.runner.run_command(["docker", "exec", proxy, "nginx", "-s", "reload"])
        except ExternalToolError as e:
            logger.error(f"nginx reload failed: {e}")
            return False

        logger.info("Reloaded nginx")
        return True
