"""
Deployment pipeline: clone-or-update -> ensure site -> build -> install.

Each step's failure is raised as a PipelineError carrying the step name. Nothing
is rolled back: a failed build leaves the working copy updated and the site
provisioned so the next push to the branch only repeats the cheap steps.
"""

import hashlib
import logging
import re
import shutil
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from site_deployer import config, helpers
from site_deployer.errors import (ArtifactNotFoundError, DeployerError,
                                  DeploymentTimeoutError, PipelineError)
from site_deployer.orchestrator import SiteOrchestrator
from site_deployer.registry import validate_site_name
from site_deployer.repo_store import RepoConfig, RepoConfigStore, split_repo_name

logger = logging.getLogger(__name__)

MAX_SITE_NAME = 63
DIGEST_LENGTH = 6


def _sanitize(part: str) -> str:
    return re.sub(r"[^a-z0-9-]+", "-", part.lower()).strip("-")


def derive_site_name(owner: str, repo: str, branch: str) -> str:
    """
    Deterministic site name for a branch of a repository: owner-repo-branch.

    Slashes, underscores and other characters outside [a-z0-9-] become hyphens.
    When that rewrite changed anything, a short digest of the raw triple is
    appended so that e.g. feature/x and feature-x stay distinct sites.
    """
    parts = (owner, repo, branch)
    cleaned = [_sanitize(p) for p in parts]
    name = "-".join(p for p in cleaned if p)

    if list(parts) != cleaned or len(name) > MAX_SITE_NAME:
        digest = hashlib.sha1(f"{owner}/{repo}@{branch}".encode()).hexdigest()[:DIGEST_LENGTH]
        head = name[:MAX_SITE_NAME - DIGEST_LENGTH - 1].rstrip("-")
        name = f"{head}-{digest}" if head else digest

    return validate_site_name(name)


@dataclass(frozen=True)
class DeploymentAttempt:
    repo: str
    branch: str
    clone_url: str
    sha: Optional[str] = None

    @property
    def owner(self) -> str:
        return split_repo_name(self.repo)[0]

    @property
    def repo_name(self) -> str:
        return split_repo_name(self.repo)[1]

    @property
    def site_name(self) -> str:
        return derive_site_name(self.owner, self.repo_name, self.branch)


@dataclass(frozen=True)
class DeploymentResult:
    site_name: str
    repo_dir: Path
    artifact: Path
    created: bool


class Deadline:
    """Wall-clock ceiling for one pipeline run. A non-positive limit means none."""

    def __init__(self, seconds: Optional[float], clock=time.monotonic):
        self.clock = clock
        self.expires_at = clock() + seconds if seconds and seconds > 0 else None

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self.clock())

    def expired(self) -> bool:
        return self.expires_at is not None and self.clock() >= self.expires_at


class KeyedLocks:
    """One lock per key, created on first use"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


class DeploymentPipeline:
    def __init__(self, settings: config.Settings, store: RepoConfigStore,
                 orchestrator: SiteOrchestrator, runner=helpers, clock=time.monotonic):
        self.settings = settings
        self.store = store
        self.orchestrator = orchestrator
        self.runner = runner
        self.clock = clock
        self._site_locks = KeyedLocks()
        self._checkout_locks = KeyedLocks()

    def repo_dir(self, attempt: DeploymentAttempt) -> Path:
        return self.settings.repos_dir / attempt.owner / attempt.repo_name

    def deploy(self, repo: str, branch: str, clone_url: str,
               sha: Optional[str] = None) -> Optional[DeploymentResult]:
        return self.run(DeploymentAttempt(repo=repo, branch=branch, clone_url=clone_url, sha=sha))

    def run(self, attempt: DeploymentAttempt) -> Optional[DeploymentResult]:
        """
        Run the whole pipeline for one attempt.

        :return: None when the repository is not registered for deployment
        :raises PipelineError: naming the step that failed
        """
        repo_config = self.store.get(attempt.repo)
        if repo_config is None:
            logger.info(f"Repository {attempt.repo} not configured for deployment")
            return None

        site_name = attempt.site_name
        repo_dir = self.repo_dir(attempt)
        deadline = Deadline(self.settings.deployment_timeout, clock=self.clock)
        logger.info(f"Deploying {attempt.repo}@{attempt.branch} to site {site_name}")

        # Site first, then working copy: every run takes them in the same order
        with self._site_locks.hold(site_name), self._checkout_locks.hold(str(repo_dir)):
            self._step("clone", deadline, self._clone_or_update, repo_dir, attempt, deadline)
            created = self._step("provision", deadline, self._ensure_site, site_name)
            self._step("build", deadline, self._build, repo_dir, repo_config, deadline)
            artifact = self._step("locate-artifact", deadline, self._locate_artifact,
                                  repo_dir, repo_config)
            self._step("readiness", deadline, self.orchestrator.wait_until_ready, site_name)
            self._step("install", deadline, self._install, site_name, artifact, deadline)

        logger.info(f"Deployment of {attempt.repo}@{attempt.branch} to {site_name} completed")
        return DeploymentResult(site_name=site_name, repo_dir=repo_dir,
                                artifact=artifact, created=created)

    def _step(self, step: str, deadline: Deadline, func, *args):
        if deadline.expired():
            raise PipelineError(step, DeploymentTimeoutError(
                f"deployment exceeded {self.settings.deployment_timeout:.0f}s"))
        logger.info(f"[{step}] started")
        try:
            return func(*args)
        except (DeployerError, OSError) as e:
            raise PipelineError(step, e) from e

    def _clone_or_update(self, repo_dir: Path, attempt: DeploymentAttempt,
                         deadline: Deadline) -> None:
        branch = attempt.branch

        if not (repo_dir / ".git").is_dir():
            if repo_dir.exists():
                logger.warning(f"Removing incomplete checkout at {repo_dir}")
                shutil.rmtree(repo_dir)
            repo_dir.parent.mkdir(parents=True, exist_ok=True)
            logger.info(f"Cloning {attempt.clone_url} ({branch})")
            self.runner.run_command(
                ["git", "clone", "--depth", "1", "--branch", branch, attempt.clone_url, repo_dir],
                cwd=repo_dir.parent, timeout=deadline.remaining())
            return

        def git(*args):
            return self.runner.run_command(["git", *args], cwd=repo_dir,
                                           timeout=deadline.remaining())

        logger.info(f"Pulling latest changes for {branch}")
        git("reset", "--hard")
        git("fetch", "--depth", "1", attempt.clone_url,
            f"+refs/heads/{branch}:refs/remotes/origin/{branch}")

        local_exists = self.runner.command_succeeds(
            ["git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"],
            cwd=repo_dir, timeout=deadline.remaining())
        if local_exists:
            git("checkout", branch)
        else:
            git("checkout", "-b", branch, f"origin/{branch}")

        git("reset", "--hard", f"origin/{branch}")

    def _ensure_site(self, site_name: str) -> bool:
        if self.orchestrator.exists(site_name):
            logger.info(f"Site already exists: {site_name}")
            return False
        logger.info(f"Creating new site: {site_name}")
        self.orchestrator.deploy(site_name)
        return True

    def _build(self, repo_dir: Path, repo_config: RepoConfig, deadline: Deadline) -> None:
        logger.info(f"Running build command: {repo_config.build_command}")
        self.runner.run_shell(repo_config.build_command, cwd=repo_dir, stream=True,
                              timeout=deadline.remaining())

    def _locate_artifact(self, repo_dir: Path, repo_config: RepoConfig) -> Path:
        artifact = (repo_dir / repo_config.zip_location).resolve()
        if not artifact.is_file():
            raise ArtifactNotFoundError(f"plugin zip file not found: {artifact}")
        return artifact

    def _install(self, site_name: str, artifact: Path, deadline: Deadline) -> None:
        self.orchestrator.install_artifact(site_name, artifact, timeout=deadline.remaining())
