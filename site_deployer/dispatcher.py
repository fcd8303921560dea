"""
Webhook dispatcher built with Flask. It authenticates GitHub deliveries,
classifies them and hands branch updates to the deployment worker.

Endpoints:
  - POST /webhook : GitHub push / pull_request / ping events
  - GET  /health  : liveness
  - GET  /        : endpoint listing

Once a delivery is authenticated and parses, the sender always gets 200;
deployment failures are only visible in the logs.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Optional

from flask import Flask, Response, jsonify, request

from site_deployer import config
from site_deployer.errors import AuthenticationError, DeployerError, ValidationError
from site_deployer.pipeline import DeploymentAttempt
from site_deployer.worker import IGNORED, DeploymentWorker

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
BRANCH_REF_PREFIX = "refs/heads/"
PR_DEPLOY_ACTIONS = {"opened", "synchronize", "reopened"}

INDEX_TEXT = """{app} webhook server
Endpoints:
  POST /webhook - GitHub webhooks
  GET /health - Health check
"""


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> None:
    """
    Check the X-Hub-Signature-256 header against an HMAC-SHA256 of the raw body.
    With no secret configured every request passes.

    :raises AuthenticationError: on a missing, malformed or mismatched signature
    """
    if not secret:
        return
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        raise AuthenticationError("missing or malformed signature")

    expected = SIGNATURE_PREFIX + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected.encode(), signature.encode()):
        raise AuthenticationError("signature mismatch")


def _get(data, *keys, default=""):
    for key in keys:
        if not isinstance(data, dict):
            return default
        data = data.get(key)
    return default if data is None else data


@dataclass(frozen=True)
class WebhookEvent:
    action: str
    ref: str
    before: str
    after: str
    deleted: bool
    repo: str
    clone_url: str
    pr_number: int
    pr_title: str
    head_ref: str
    head_sha: str
    head_clone_url: str
    base_ref: str

    @classmethod
    def from_payload(cls, payload: dict) -> "WebhookEvent":
        pr = _get(payload, "pull_request", default={})
        return cls(
            action=_get(payload, "action"),
            ref=_get(payload, "ref"),
            before=_get(payload, "before"),
            after=_get(payload, "after"),
            deleted=bool(_get(payload, "deleted", default=False)),
            repo=_get(payload, "repository", "full_name"),
            clone_url=_get(payload, "repository", "clone_url"),
            pr_number=_get(pr, "number", default=0),
            pr_title=_get(pr, "title"),
            head_ref=_get(pr, "head", "ref"),
            head_sha=_get(pr, "head", "sha"),
            head_clone_url=_get(pr, "head", "repo", "clone_url"),
            base_ref=_get(pr, "base", "ref"),
        )


def dispatch_event(event_type: str, event: WebhookEvent, worker: DeploymentWorker) -> str:
    """Route one event to the worker. Returns the worker's decision or "ignored"."""
    if event_type == "push":
        if not event.ref.startswith(BRANCH_REF_PREFIX):
            logger.info(f"Not a branch push: {event.ref}")
            return IGNORED
        branch = event.ref[len(BRANCH_REF_PREFIX):]
        if event.deleted:
            logger.info(f"Branch {branch} deleted in {event.repo}, nothing to deploy")
            return IGNORED
        logger.info(f"Push to {event.repo} branch {branch} "
                    f"({event.before[:8]}...{event.after[:8]})")
        return _submit(worker, event.repo, branch, event.clone_url, event.after)

    if event_type == "pull_request":
        logger.info(f"PR #{event.pr_number} {event.action} in {event.repo}: "
                    f"{event.head_ref} -> {event.base_ref}")
        if event.action not in PR_DEPLOY_ACTIONS:
            logger.info(f"Ignoring PR action: {event.action}")
            return IGNORED
        # The head repository is null when the fork was deleted
        clone_url = event.head_clone_url or event.clone_url
        return _submit(worker, event.repo, event.head_ref, clone_url, event.head_sha)

    if event_type == "ping":
        logger.info(f"Webhook ping from {event.repo or 'unknown repository'}")
        return IGNORED

    logger.info(f"GitHub event {event_type} from {event.repo}"
                + (f" (action: {event.action})" if event.action else ""))
    return IGNORED


def _submit(worker: DeploymentWorker, repo: str, branch: str, clone_url: str, sha: str) -> str:
    if not repo or not branch or not clone_url:
        logger.warning("Event is missing repository, branch or clone URL; ignoring")
        return IGNORED
    try:
        return worker.submit(DeploymentAttempt(repo=repo, branch=branch, clone_url=clone_url, sha=sha))
    except ValidationError as e:
        logger.warning(f"Cannot deploy {repo}@{branch}: {e}")
        return IGNORED
    except DeployerError as e:
        logger.error(f"Error loading repo configs, not deploying {repo}@{branch}: {e}")
        return IGNORED


def create_app(settings: config.Settings, worker: DeploymentWorker) -> Flask:
    app = Flask(__name__)
    app.config["WEBHOOK_SECRET"] = settings.webhook_secret

    if not settings.webhook_secret:
        logger.warning("No webhook secret configured: signatures are NOT verified")

    @app.route("/webhook", methods=["POST"])
    def webhook():
        body = request.get_data(cache=False)

        try:
            verify_signature(app.config["WEBHOOK_SECRET"], body,
                             request.headers.get("X-Hub-Signature-256"))
        except AuthenticationError as e:
            logger.warning(f"Invalid signature for webhook request: {e}")
            return jsonify({"error": "invalid signature"}), 401

        event_type = request.headers.get("X-GitHub-Event", "")
        if not event_type:
            logger.warning("No GitHub event type in headers")
            return jsonify({"error": "no event type"}), 400

        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Error parsing JSON payload: {e}")
            return jsonify({"error": "invalid JSON"}), 400
        if not isinstance(payload, dict):
            return jsonify({"error": "invalid JSON"}), 400

        decision = dispatch_event(event_type, WebhookEvent.from_payload(payload), worker)
        return jsonify({"status": "ok", "deployment": decision}), 200

    @app.route("/health")
    def health():
        return jsonify({"status": "healthy", "service": f"{config.APP_NAME}-webhook"})

    @app.route("/")
    def index():
        return Response(INDEX_TEXT.format(app=config.APP_NAME), mimetype="text/plain")

    return app
