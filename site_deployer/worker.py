"""
Background deployment worker.

Webhook deliveries hand their deployment attempt to the worker and return at
once. Per site there is at most one deployment running and at most one parked
behind it; a third delivery while both slots are taken is rejected as busy.
A parked attempt re-fetches the branch head when it runs, so dropping the
third event loses no commits.
"""

import logging
import threading
import time
from typing import Dict, Optional

from site_deployer.errors import PipelineError
from site_deployer.pipeline import DeploymentAttempt, DeploymentPipeline

logger = logging.getLogger(__name__)

STARTED = "started"
QUEUED = "queued"
BUSY = "busy"
IGNORED = "ignored"


class DeploymentWorker:
    def __init__(self, pipeline: DeploymentPipeline):
        self.pipeline = pipeline
        self._lock = threading.Lock()
        self._running: Dict[str, threading.Thread] = {}
        self._pending: Dict[str, DeploymentAttempt] = {}

    def submit(self, attempt: DeploymentAttempt) -> str:
        if self.pipeline.store.get(attempt.repo) is None:
            logger.info(f"Repository {attempt.repo} not configured for deployment")
            return IGNORED

        site = attempt.site_name
        with self._lock:
            if site in self._running:
                if site in self._pending:
                    logger.warning(f"Deployment in progress for {site}, one already queued; dropping")
                    return BUSY
                self._pending[site] = attempt
                logger.info(f"Deployment in progress for {site}, queued {attempt.branch}")
                return QUEUED

            thread = threading.Thread(
                target=self._drain,
                args=(site, attempt),
                name=f"deploy-{site}",
                daemon=True
            )
            self._running[site] = thread

        thread.start()
        return STARTED

    def in_flight(self, site: str) -> bool:
        with self._lock:
            return site in self._running

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join running deployments. Returns False if some are still running at timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                threads = list(self._running.values())
            if not threads:
                return True
            for thread in threads:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                thread.join(remaining)
                if thread.is_alive():
                    return False

    def _drain(self, site: str, attempt: Optional[DeploymentAttempt]) -> None:
        while attempt is not None:
            self._execute(site, attempt)
            with self._lock:
                attempt = self._pending.pop(site, None)
                if attempt is None:
                    del self._running[site]

    def _execute(self, site: str, attempt: DeploymentAttempt) -> None:
        try:
            result = self.pipeline.run(attempt)
        except PipelineError as e:
            logger.error(f"Deployment of {attempt.repo}@{attempt.branch} to {site} "
                         f"failed at step '{e.step}': {e.cause}")
        except Exception:
            # Worker threads are the last stop for a deployment's errors
            logger.exception(f"Unexpected error deploying {attempt.repo}@{attempt.branch}")
        else:
            if result is not None:
                logger.info(f"Site {result.site_name} now runs {attempt.sha or attempt.branch}")
