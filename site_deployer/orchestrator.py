"""
Site lifecycle orchestrator.

A site moves Absent -> Provisioning -> Running <-> Disabled -> Absent. Every
operation here is composed from the registry (where a site's files live), the
route toggle (whether the proxy serves it) and the process runner (docker compose).

Single-site operations stop at the first failing step and raise its error.
Batch operations keep going, reload the proxy at most once, and raise a
BatchError listing the sites that failed.
"""

import logging
import secrets
import shutil
import time
from typing import Callable, Dict, List, Optional, Sequence

from site_deployer import config, helpers
from site_deployer.errors import (AlreadyExistsError, BatchError, DeployerError,
                                  ExternalToolError, NotFoundError, ValidationError)
from site_deployer.poller import poll_until
from site_deployer.registry import SitePaths, SiteRegistry, validate_site_name
from site_deployer.routes import RouteToggle
from site_deployer.templates import (INDEX_HTML_TEMPLATE, PROXY_COMPOSE_TEMPLATE,
                                     PROXY_DEFAULT_SERVER_TEMPLATE, PROXY_NGINX_TEMPLATE,
                                     SITE_COMPOSE_TEMPLATE, SITE_ROUTE_TEMPLATE, ProxyContext,
                                     SiteContext, TemplateRenderer, install_defaults)

logger = logging.getLogger(__name__)

DEFAULT_SERVER_CONFIG = "_default.conf"
CONTROL_OPERATIONS = ("up", "down")


class SiteOrchestrator:
    def __init__(self, settings: config.Settings, registry: Optional[SiteRegistry] = None,
                 routes: Optional[RouteToggle] = None, runner=helpers, sleep=time.sleep):
        self.settings = settings
        self.registry = registry or SiteRegistry(settings)
        self.runner = runner
        self.sleep = sleep
        self.routes = routes or RouteToggle(settings, self.registry, runner=runner, sleep=sleep)

    def list(self) -> List[str]:
        return self.registry.list()

    def exists(self, name: str) -> bool:
        return self.registry.exists(name)

    def install(self, force: bool = False) -> None:
        """Set up the workspace and start the shared reverse proxy"""
        settings = self.settings
        logger.info(f"Installing {config.APP_NAME} to {settings.workspace}")

        for directory in (settings.workspace, settings.html_dir, settings.nginx_config_dir,
                          settings.templates_dir, settings.repos_dir):
            directory.mkdir(parents=True, exist_ok=True)

        install_defaults(settings.templates_dir, force=force)

        renderer = TemplateRenderer(settings.templates_dir)
        context = ProxyContext.for_settings(settings, config.APP_NAME)
        renderer.render_to(PROXY_COMPOSE_TEMPLATE, settings.proxy_compose_path, context)
        renderer.render_to(PROXY_NGINX_TEMPLATE, settings.workspace / "nginx.conf", context)
        renderer.render_to(PROXY_DEFAULT_SERVER_TEMPLATE,
                           settings.nginx_config_dir / DEFAULT_SERVER_CONFIG, context)
        renderer.render_to(INDEX_HTML_TEMPLATE, settings.html_dir / "index.html", context)

        logger.info(f"Creating docker network {settings.network}")
        try:
            self.runner.run_command(["docker", "network", "create", settings.network])
        except ExternalToolError:
            logger.warning("Network might already exist (this is okay)")

        logger.info("Starting nginx container")
        self.runner.run_command(
            ["docker", "compose", "-f", settings.proxy_compose_path, "up", "-d"],
            cwd=settings.workspace)
        logger.info(f"Installation completed, work directory: {settings.workspace}")

    def deploy(self, name: str) -> SitePaths:
        """Provision a new site and put its route live once the stack is ready"""
        validate_site_name(name)
        paths = self.registry.paths(name)
        if paths.dir.exists():
            raise AlreadyExistsError(f"site '{name}' already exists")

        # Render before touching the workspace so a bad template leaves nothing behind
        logger.info("Generating configuration files")
        context = SiteContext.for_site(self.settings, name)
        renderer = TemplateRenderer(self.settings.templates_dir)
        compose = renderer.render(SITE_COMPOSE_TEMPLATE, context)
        route = renderer.render(SITE_ROUTE_TEMPLATE, context)

        logger.info(f"Creating site directory for '{name}'")
        (paths.dir / "wp-data").mkdir(parents=True)
        self.settings.nginx_config_dir.mkdir(parents=True, exist_ok=True)
        # Parked until the stack is ready; enable() below puts it live
        paths.disabled_route_file.write_text(route)
        paths.compose_file.write_text(compose)

        logger.info(f"Starting containers for '{name}'")
        self.runner.run_command(self._compose(paths, "up", "-d"), cwd=paths.dir)

        self.wait_until_ready(name)
        self._install_application(name, paths, context)

        self.routes.reload_if_changed(self.routes.enable(name))
        logger.info(f"Site '{context.domain}' deployed successfully")
        return paths

    def wait_until_ready(self, name: str) -> int:
        """
        Block until the application and database report running and the database
        answers a connection check.

        :raises TimeoutExhaustedError: after settings.readiness_attempts probes
        """
        paths = self.registry.paths(name)
        logger.info(f"Waiting for '{name}' containers to be ready")
        return poll_until(
            lambda: self._stack_ready(name, paths),
            self.settings.readiness_attempts,
            self.settings.readiness_interval,
            description=f"site '{name}' readiness",
            sleep=self.sleep,
        )

    def install_artifact(self, name: str, artifact, timeout: Optional[float] = None) -> None:
        """Install a built plugin archive into the running site, addressed by host path"""
        paths = self._require_site(name)
        logger.info(f"Installing {artifact} into '{name}'")
        self.runner.run_command(
            self._wpcli(paths, "plugin", "install", artifact, "--activate", "--force"),
            cwd=paths.dir, stream=True, timeout=timeout)

    def delete(self, name: str, confirm: Optional[Callable[[str], bool]] = None) -> bool:
        """
        Tear a site down: containers and volumes, route, then the directory.

        :param confirm: asked before anything is touched; returning False aborts
        :return: False if the deletion was aborted
        """
        paths = self.registry.paths(name)
        if not paths.dir.exists():
            raise NotFoundError(f"site '{name}' does not exist")

        if confirm is not None and not confirm(name):
            logger.info("Aborted")
            return False

        if paths.compose_file.exists():
            logger.info("Stopping and removing containers")
            self.runner.run_command(self._compose(paths, "down", "--volumes"), cwd=paths.dir)
        else:
            logger.warning(f"No {config.COMPOSE_FILE_NAME} for '{name}', skipping container removal")

        logger.info("Removing nginx config")
        self.routes.reload_if_changed(self.routes.remove(name))

        logger.info("Deleting site directory")
        self._remove_tree(paths)
        logger.info(f"Site '{name}' deleted successfully")
        return True

    def control(self, operation: str, name: Optional[str] = None, volumes: bool = False) -> None:
        """Start or stop one site, or every site when no name is given"""
        if operation not in CONTROL_OPERATIONS:
            raise ValidationError(f"unknown operation '{operation}'")

        if name is not None:
            self._require_site(name)
            sites = [name]
        else:
            sites = self.registry.list()
            if not sites:
                logger.warning("No sites found")
                return

        changed = False
        failures: Dict[str, Exception] = {}
        for site in sites:
            try:
                changed = self._control_site(operation, site, volumes) or changed
            except DeployerError as e:
                if name is not None:
                    raise
                logger.error(f"Error with site {site}: {e}")
                failures[site] = e

        self.routes.reload_if_changed(changed)
        if failures:
            raise BatchError(failures, action=operation)

    def exec(self, name: str, args: Sequence[str], reload: bool = False) -> None:
        """Forward args to docker compose for one site, output streamed"""
        self._exec_site(name, args)
        if reload:
            self.routes.reload()

    def exec_all(self, args: Sequence[str], reload: bool = False) -> None:
        sites = self.registry.list()
        if not sites:
            logger.warning("No sites found")
            return

        logger.info(f"Running docker compose command on {len(sites)} sites")
        failures: Dict[str, Exception] = {}
        for site in sites:
            try:
                self._exec_site(site, args)
            except DeployerError as e:
                logger.error(f"Error with site {site}: {e}")
                failures[site] = e

        if reload:
            self.routes.reload()
        if failures:
            raise BatchError(failures, action="exec")

    def _exec_site(self, name: str, args: Sequence[str]) -> None:
        if not args:
            raise ValidationError("exec requires docker compose arguments")
        paths = self._require_site(name)
        logger.info(f"Running docker compose command on {paths.dir.name}")
        self.runner.run_command(self._compose(paths, *args), cwd=paths.dir, stream=True)

    def _control_site(self, operation: str, name: str, volumes: bool) -> bool:
        paths = self._require_site(name)
        if operation == "up":
            logger.info(f"Starting '{name}'")
            self.runner.run_command(self._compose(paths, "up", "-d"), cwd=paths.dir)
            return self.routes.enable(name)

        logger.info(f"Stopping '{name}'")
        args = ["down", "--volumes"] if volumes else ["down"]
        self.runner.run_command(self._compose(paths, *args), cwd=paths.dir)
        return self.routes.disable(name)

    def _require_site(self, name: str) -> SitePaths:
        paths = self.registry.paths(name)
        if not paths.dir.exists():
            raise NotFoundError(f"site directory '{paths.dir.name}' not found")
        if not paths.compose_file.exists():
            raise NotFoundError(f"{config.COMPOSE_FILE_NAME} not found for site '{name}'")
        return paths

    def _stack_ready(self, name: str, paths: SitePaths) -> bool:
        service = f"{self.settings.site_prefix}{name}"
        try:
            output = self.runner.run_command(
                self._compose(paths, "ps", "--services", "--filter", "status=running"),
                cwd=paths.dir)
        except ExternalToolError:
            return False

        running = set(output.split())
        if service not in running or f"{service}-db" not in running:
            return False
        return self.runner.command_succeeds(self._wpcli(paths, "db", "check"), cwd=paths.dir)

    def _install_application(self, name: str, paths: SitePaths, context: SiteContext) -> None:
        if self.runner.command_succeeds(self._wpcli(paths, "core", "is-installed"), cwd=paths.dir):
            logger.info("WordPress is already installed, skipping installation")
            return

        logger.info("Installing WordPress core")
        password = secrets.token_urlsafe(16)
        self.runner.run_command(
            self._wpcli(paths, "core", "install",
                        f"--url=http://{context.domain}",
                        f"--title={name}",
                        f"--admin_user={self.settings.admin_user}",
                        f"--admin_password={password}",
                        f"--admin_email={self.settings.admin_email}"),
            cwd=paths.dir)
        logger.info(f"WordPress installed, admin '{self.settings.admin_user}' password: {password}")

    def _remove_tree(self, paths: SitePaths) -> None:
        try:
            shutil.rmtree(paths.dir)
        except OSError as e:
            logger.warning("Normal deletion failed (likely due to Docker container file ownership)")
            logger.info("Attempting deletion with elevated privileges")
            try:
                self.runner.run_command(["sudo", "rm", "-rf", paths.dir])
            except ExternalToolError as sudo_error:
                raise sudo_error from e
            logger.info("Directory deleted with elevated privileges")

    @staticmethod
    def _compose(paths: SitePaths, *args) -> list:
        return ["docker", "compose", "-f", paths.compose_file, *args]

    def _wpcli(self, paths: SitePaths, *args) -> list:
        return self._compose(paths, "run", "-T", "--rm", "wpcli", "--allow-root", *args)
