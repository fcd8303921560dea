"""
tests/test_pipeline.py

Deployment pipeline from a registered repository to an installed artifact.
git, bash and docker are replaced by FakeRunner; their side effects on the
working copy (clone, build output) are simulated on disk.
"""

import tempfile
import threading
import time
import unittest
from pathlib import Path

from fakes import FakeRunner, no_sleep, ready_stack

from site_deployer.config import Settings
from site_deployer.errors import (ArtifactNotFoundError, DeploymentTimeoutError,
                                  ExternalToolError, PipelineError, TemplateRenderError)
from site_deployer.orchestrator import SiteOrchestrator
from site_deployer.pipeline import (DeploymentAttempt, DeploymentPipeline, derive_site_name)
from site_deployer.registry import validate_site_name
from site_deployer.repo_store import RepoConfigStore
from site_deployer.templates import SITE_COMPOSE_TEMPLATE, install_defaults

CLONE_URL = "https://github.com/alice/blog.git"


def fake_clone(args, cwd):
    (Path(args[-1]) / ".git").mkdir(parents=True)
    return ""


def fake_build(args, cwd):
    dist = Path(cwd) / "dist"
    dist.mkdir(exist_ok=True)
    (dist / "plugin.zip").write_bytes(b"PK")
    return ""


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestDeriveSiteName(unittest.TestCase):
    def test_plain_branch(self):
        self.assertEqual(derive_site_name("alice", "blog", "main"), "alice-blog-main")

    def test_deterministic(self):
        self.assertEqual(derive_site_name("alice", "blog", "feature/x"),
                         derive_site_name("alice", "blog", "feature/x"))

    def test_branches_do_not_collide(self):
        branches = ["feature/x", "feature/y", "feature-x", "feature_x", "Feature-X", "main"]
        names = {derive_site_name("alice", "blog", b) for b in branches}
        self.assertEqual(len(names), len(branches))

    def test_sanitized_branch_keeps_readable_prefix(self):
        name = derive_site_name("alice", "blog", "feature/x")
        self.assertTrue(name.startswith("alice-blog-feature-x-"))
        self.assertEqual(len(name), len("alice-blog-feature-x-") + 6)

    def test_result_is_always_a_valid_site_name(self):
        cases = [
            ("Alice", "My.Blog", "release/2024_01"),
            ("alice", "blog", "a" * 80),
            ("alice", "blog", "___"),
            ("bob", "shop", "dependabot/npm_and_yarn/lodash-4.17.21"),
        ]
        for owner, repo, branch in cases:
            name = derive_site_name(owner, repo, branch)
            self.assertEqual(validate_site_name(name), name)
            self.assertLessEqual(len(name), 63)


class PipelineTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.workspace = Path(self.tmp.name)
        self.settings = Settings(workspace=self.workspace, readiness_attempts=2,
                                 deployment_timeout=600)
        install_defaults(self.settings.templates_dir)

        self.store = RepoConfigStore(self.settings.repo_config_path)
        self.store.add("alice/blog", "make zip", "dist/plugin.zip")

        self.runner = ready_stack(FakeRunner())
        self.runner.on(("git", "clone"), fake_clone)
        self.runner.on(("bash", "-c"), fake_build)

        self.clock = FakeClock()
        self.orchestrator = SiteOrchestrator(self.settings, runner=self.runner, sleep=no_sleep)
        self.pipeline = DeploymentPipeline(self.settings, self.store, self.orchestrator,
                                           runner=self.runner, clock=self.clock)
        self.repo_dir = self.workspace / "repos" / "alice" / "blog"

    def tearDown(self):
        self.tmp.cleanup()


class TestPipeline(PipelineTestCase):
    def test_push_to_main_end_to_end(self):
        result = self.pipeline.deploy("alice/blog", "main", CLONE_URL, sha="abc123")

        self.assertEqual(result.site_name, "alice-blog-main")
        self.assertTrue(result.created)
        self.assertEqual(result.repo_dir, self.repo_dir)
        self.assertTrue((self.repo_dir / ".git").is_dir())
        self.assertTrue(self.orchestrator.exists("alice-blog-main"))

        clone = self.runner.commands("git", "clone")
        self.assertEqual(clone[0].args, ["git", "clone", "--depth", "1", "--branch", "main",
                                         CLONE_URL, str(self.repo_dir)])

        build = self.runner.commands("bash", "-c")
        self.assertEqual(len(build), 1)
        self.assertEqual(build[0].args, ["bash", "-c", "make zip"])
        self.assertEqual(build[0].cwd, self.repo_dir)
        self.assertTrue(build[0].stream)

        artifact = str((self.repo_dir / "dist" / "plugin.zip").resolve())
        install = self.runner.commands("plugin", "install")
        self.assertEqual(len(install), 1)
        self.assertIn(artifact, install[0].args)
        self.assertEqual(install[0].args[:4], [
            "docker", "compose", "-f",
            str(self.workspace / "site-alice-blog-main" / "docker-compose.yml")])
        self.assertEqual(result.artifact, Path(artifact))

        # Steps run in order
        order = [i for i, c in enumerate(self.runner.calls)
                 if c in (clone[0], build[0], install[0])]
        self.assertEqual(order, sorted(order))
        self.assertLess(self.runner.calls.index(self.runner.commands("up", "-d")[0]),
                        self.runner.calls.index(build[0]))

    def test_second_push_updates_without_reprovisioning(self):
        self.pipeline.deploy("alice/blog", "main", CLONE_URL)
        self.runner.calls.clear()

        result = self.pipeline.deploy("alice/blog", "main", CLONE_URL)
        self.assertFalse(result.created)
        self.assertEqual(self.runner.commands("git", "clone"), [])
        self.assertEqual(self.runner.commands("up", "-d"), [])

        git = [c.args[1:] for c in self.runner.calls if c.args[0] == "git"]
        self.assertEqual(git, [
            ["reset", "--hard"],
            ["fetch", "--depth", "1", CLONE_URL, "+refs/heads/main:refs/remotes/origin/main"],
            ["rev-parse", "--verify", "--quiet", "refs/heads/main"],
            ["checkout", "main"],
            ["reset", "--hard", "origin/main"],
        ])
        self.assertEqual(len(self.runner.commands("plugin", "install")), 1)

    def test_new_branch_in_existing_checkout_is_created_from_remote(self):
        self.pipeline.deploy("alice/blog", "main", CLONE_URL)
        self.runner.on(("rev-parse",), 1)
        self.runner.calls.clear()

        result = self.pipeline.deploy("alice/blog", "feature/x", CLONE_URL)
        self.assertTrue(result.created)
        self.assertEqual(len(self.runner.commands("checkout", "-b", "feature/x", "origin/feature/x")), 1)
        self.assertEqual(self.runner.commands("checkout", "feature/x"), [])

    def test_unregistered_repository_is_ignored(self):
        self.assertIsNone(self.pipeline.deploy("mallory/other", "main", CLONE_URL))
        self.assertEqual(self.runner.calls, [])

    def test_clone_failure(self):
        self.runner.on(("git", "clone"), 128)
        with self.assertRaises(PipelineError) as ctx:
            self.pipeline.deploy("alice/blog", "main", CLONE_URL)
        self.assertEqual(ctx.exception.step, "clone")
        self.assertFalse(self.orchestrator.exists("alice-blog-main"))

    def test_provisioning_recovers_once_templates_are_restored(self):
        (self.settings.templates_dir / SITE_COMPOSE_TEMPLATE).unlink()
        with self.assertRaises(PipelineError) as ctx:
            self.pipeline.deploy("alice/blog", "main", CLONE_URL)
        self.assertEqual(ctx.exception.step, "provision")
        self.assertIsInstance(ctx.exception.cause, TemplateRenderError)
        self.assertFalse((self.workspace / "site-alice-blog-main").exists())

        install_defaults(self.settings.templates_dir)
        result = self.pipeline.deploy("alice/blog", "main", CLONE_URL)
        self.assertTrue(result.created)
        self.assertTrue(self.orchestrator.exists("alice-blog-main"))
        self.assertEqual(len(self.runner.commands("plugin", "install")), 1)

    def test_build_failure_keeps_site_and_checkout(self):
        self.runner.on(("bash", "-c"), 2)
        with self.assertRaises(PipelineError) as ctx:
            self.pipeline.deploy("alice/blog", "main", CLONE_URL)

        self.assertEqual(ctx.exception.step, "build")
        self.assertIsInstance(ctx.exception.cause, ExternalToolError)
        self.assertTrue(self.orchestrator.exists("alice-blog-main"))
        self.assertTrue((self.repo_dir / ".git").is_dir())
        self.assertEqual(self.runner.commands("plugin", "install"), [])

    def test_missing_artifact(self):
        self.runner.on(("bash", "-c"), "")
        with self.assertRaises(PipelineError) as ctx:
            self.pipeline.deploy("alice/blog", "main", CLONE_URL)
        self.assertEqual(ctx.exception.step, "locate-artifact")
        self.assertIsInstance(ctx.exception.cause, ArtifactNotFoundError)

    def test_install_failure(self):
        self.runner.on(("plugin", "install"), 1)
        with self.assertRaises(PipelineError) as ctx:
            self.pipeline.deploy("alice/blog", "main", CLONE_URL)
        self.assertEqual(ctx.exception.step, "install")

    def test_install_waits_for_a_ready_site(self):
        self.pipeline.deploy("alice/blog", "main", CLONE_URL)
        self.runner.on(("ps", "--services"), "")
        with self.assertRaises(PipelineError) as ctx:
            self.pipeline.deploy("alice/blog", "main", CLONE_URL)
        self.assertEqual(ctx.exception.step, "readiness")

    def test_deployment_ceiling(self):
        def slow_build(args, cwd):
            fake_build(args, cwd)
            self.clock.now += 601
            return ""

        self.runner.on(("bash", "-c"), slow_build)
        with self.assertRaises(PipelineError) as ctx:
            self.pipeline.deploy("alice/blog", "main", CLONE_URL)
        self.assertEqual(ctx.exception.step, "locate-artifact")
        self.assertIsInstance(ctx.exception.cause, DeploymentTimeoutError)
        self.assertEqual(self.runner.commands("git", "clone")[0].timeout, 600)

    def test_attempt_fields(self):
        attempt = DeploymentAttempt("alice/blog", "main", CLONE_URL)
        self.assertEqual((attempt.owner, attempt.repo_name, attempt.site_name),
                         ("alice", "blog", "alice-blog-main"))


class TestPipelineConcurrency(PipelineTestCase):
    def test_same_branch_runs_never_overlap(self):
        active = []
        overlaps = []
        guard = threading.Lock()

        def tracked_build(args, cwd):
            with guard:
                active.append(1)
                if len(active) > 1:
                    overlaps.append(len(active))
            time.sleep(0.05)
            fake_build(args, cwd)
            with guard:
                active.pop()
            return ""

        self.runner.on(("bash", "-c"), tracked_build)
        attempt = DeploymentAttempt("alice/blog", "main", CLONE_URL)
        results = []
        threads = [threading.Thread(target=lambda: results.append(self.pipeline.run(attempt)))
                   for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(overlaps, [])
        self.assertEqual(sorted(r.created for r in results), [False, True])
        self.assertEqual(len(self.runner.commands("git", "clone")), 1)
        self.assertEqual(len(self.runner.commands("up", "-d")), 1)


if __name__ == "__main__":
    unittest.main()
