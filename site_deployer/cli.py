"""
Command line front end for the site deployer.

Every command maps onto one orchestrator, repository store or webhook
operation; errors are printed as a single line and exit with status 1.
"""

import argparse
import logging
import sys
from typing import List, Optional

from site_deployer import config
from site_deployer.errors import DeployerError
from site_deployer.orchestrator import SiteOrchestrator
from site_deployer.pipeline import DeploymentPipeline
from site_deployer.repo_store import RepoConfigStore

logger = logging.getLogger(__name__)

EPILOG = """examples:
  site-deployer install
  site-deployer deploy mysite
  site-deployer delete mysite
  site-deployer down -v mysite
  site-deployer exec mysite ps
  site-deployer exec -r mysite down --volumes
  site-deployer exec-all -r restart
  site-deployer add-repo myuser/myplugin 'npm ci && npm run build:zip' dist/plugin.zip
  site-deployer listen --port 3000 --secret mysecret
"""


class CliParser(argparse.ArgumentParser):
    """Usage errors exit with status 1"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"Error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = CliParser(
        prog=config.APP_NAME,
        description="Provision WordPress sites behind a shared nginx proxy and "
                    "redeploy them from GitHub webhooks",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--workspace", default=None,
                        help=f"Workspace directory (default: {config.WORKSPACE_DIR})")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", metavar="<command>", parser_class=CliParser)
    sub.required = True

    p = sub.add_parser("install", help="Set up the workspace and start the nginx proxy")
    p.add_argument("--force", action="store_true", help="Overwrite customized templates")

    p = sub.add_parser("deploy", help="Deploy a new site")
    p.add_argument("site")

    p = sub.add_parser("delete", help="Delete a site and all its data")
    p.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    p.add_argument("site")

    p = sub.add_parser("up", help="Start one site, or all sites")
    p.add_argument("site", nargs="?")

    p = sub.add_parser("down", help="Stop one site, or all sites")
    p.add_argument("-v", "--volumes", action="store_true", help="Also remove volumes")
    p.add_argument("site", nargs="?")

    p = sub.add_parser("exec", help="Run a docker compose command on one site")
    p.add_argument("-r", dest="reload", action="store_true", help="Reload nginx afterwards")
    p.add_argument("site")
    p.add_argument("compose_args", nargs=argparse.REMAINDER)

    p = sub.add_parser("exec-all", help="Run a docker compose command on every site")
    p.add_argument("-r", dest="reload", action="store_true", help="Reload nginx afterwards")
    p.add_argument("compose_args", nargs=argparse.REMAINDER)

    sub.add_parser("list", help="List all sites")

    p = sub.add_parser("add-repo", help="Register a repository for webhook deployments")
    p.add_argument("repo", help="owner/repo")
    p.add_argument("build_command", help="Shell command run in the repository checkout")
    p.add_argument("zip_location", nargs="?", default=config.DEFAULT_ZIP_LOCATION,
                   help=f"Artifact path relative to the repository (default: {config.DEFAULT_ZIP_LOCATION})")

    sub.add_parser("list-repos", help="List registered repositories")

    p = sub.add_parser("listen", help="Start the GitHub webhook server")
    p.add_argument("--host", default=None, help=f"Bind address (default: {config.WEBHOOK_HOST})")
    p.add_argument("-p", "--port", type=int, default=None,
                   help=f"Port (default: {config.WEBHOOK_PORT})")
    p.add_argument("-s", "--secret", default=None,
                   help="GitHub webhook secret (default: $WEBHOOK_SECRET)")

    sub.add_parser("version", help="Print the version")
    return parser


def confirm_delete(site: str) -> bool:
    try:
        answer = input(f"Are you sure you want to delete the site '{site}'? "
                       f"This will remove all data. (y/N): ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def run(args: argparse.Namespace, settings: config.Settings) -> None:
    orchestrator = SiteOrchestrator(settings)
    store = RepoConfigStore(settings.repo_config_path)

    if args.command == "install":
        orchestrator.install(force=args.force)

    elif args.command == "deploy":
        orchestrator.deploy(args.site)

    elif args.command == "delete":
        orchestrator.delete(args.site, confirm=None if args.yes else confirm_delete)

    elif args.command == "up":
        orchestrator.control("up", args.site)

    elif args.command == "down":
        orchestrator.control("down", args.site, volumes=args.volumes)

    elif args.command == "exec":
        orchestrator.exec(args.site, args.compose_args, reload=args.reload)

    elif args.command == "exec-all":
        orchestrator.exec_all(args.compose_args, reload=args.reload)

    elif args.command == "list":
        for site in orchestrator.list():
            print(site)

    elif args.command == "add-repo":
        entry = store.add(args.repo, args.build_command, args.zip_location)
        print("Repository configuration added:")
        print(f"    Repository: {entry.repo}")
        print(f"    Build: {entry.build_command}")
        print(f"    Zip: {entry.zip_location}")

    elif args.command == "list-repos":
        repos = store.list()
        if not repos:
            print("No repositories configured.")
            return
        print(f"Configured repositories ({len(repos)}):\n")
        for entry in repos:
            print(f"  {entry.repo}")
            print(f"    Build: {entry.build_command}")
            print(f"    Zip: {entry.zip_location}\n")

    elif args.command == "listen":
        serve(settings, orchestrator, store)

    elif args.command == "version":
        print(f"{config.APP_NAME} v{config.VERSION}")


def serve(settings: config.Settings, orchestrator: SiteOrchestrator, store: RepoConfigStore) -> None:
    # Imported here so site management commands do not load Flask
    from site_deployer.dispatcher import create_app
    from site_deployer.worker import DeploymentWorker

    worker = DeploymentWorker(DeploymentPipeline(settings, store, orchestrator))
    app = create_app(settings, worker)

    logger.info(f"Webhook server starting on {settings.webhook_host}:{settings.webhook_port}")
    logger.info(f"    POST http://localhost:{settings.webhook_port}/webhook - GitHub webhooks")
    logger.info(f"    GET  http://localhost:{settings.webhook_port}/health  - Health check")
    try:
        app.run(host=settings.webhook_host, port=settings.webhook_port, threaded=True)
    except KeyboardInterrupt:
        logger.info("Shutting down webhook server")
    finally:
        if not worker.wait(timeout=0):
            logger.warning("Deployments still running at shutdown were interrupted")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level="DEBUG" if args.verbose else config.LOG_LEVEL,
        format=config.LOG_FORMAT
    )

    if args.command in ("exec", "exec-all") and not args.compose_args:
        parser.error(f"{args.command} requires docker compose arguments")

    settings = config.Settings.from_env(
        workspace=args.workspace,
        webhook_host=getattr(args, "host", None),
        webhook_port=getattr(args, "port", None),
        webhook_secret=getattr(args, "secret", None),
    )

    try:
        run(args, settings)
    except DeployerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
