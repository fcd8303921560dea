"""
Repository configuration store.

Maps "owner/repo" to the build command and artifact location used by the
deployment pipeline. The whole map lives in one JSON file that is re-read on
every query and rewritten on every mutation.
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional

from site_deployer.errors import AlreadyExistsError, DeployerError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepoConfig:
    repo: str
    build_command: str
    zip_location: str


def split_repo_name(repo: str):
    """Split "owner/name", raising ValidationError for anything else"""
    owner, sep, name = (repo or "").partition("/")
    if not sep or not owner or not name or "/" in name or {owner, name} & {".", ".."}:
        raise ValidationError("repository should be in format 'owner/repo-name'")
    return owner, name


class RepoConfigStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._write_lock = threading.Lock()

    def _load(self) -> Dict[str, RepoConfig]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise DeployerError(f"failed to read repo configs from {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise DeployerError(f"failed to read repo configs from {self.path}: expected an object")

        configs = {}
        for repo, entry in raw.items():
            if not isinstance(entry, dict):
                raise DeployerError(
                    f"failed to read repo configs from {self.path}: entry for '{repo}' is not an object")
            configs[repo] = RepoConfig(
                repo=entry.get("repo", repo),
                build_command=entry.get("build_command", ""),
                zip_location=entry.get("zip_location", ""),
            )
        return configs

    def _save(self, configs: Dict[str, RepoConfig]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps({repo: asdict(c) for repo, c in configs.items()}, indent=2) + "\n"
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".repos-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(data)
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def add(self, repo: str, build_command: str, zip_location: str) -> RepoConfig:
        split_repo_name(repo)
        if not build_command or not build_command.strip():
            raise ValidationError("build command is required")
        if not zip_location or not zip_location.strip():
            raise ValidationError("zip location is required")
        if Path(zip_location).is_absolute():
            raise ValidationError("zip location must be relative to the repository root")

        with self._write_lock:
            configs = self._load()
            if repo in configs:
                raise AlreadyExistsError(f"repository '{repo}' already exists")
            entry = RepoConfig(repo=repo, build_command=build_command, zip_location=zip_location)
            configs[repo] = entry
            self._save(configs)

        logger.info(f"Repository configuration added: {repo}")
        return entry

    def get(self, repo: str) -> Optional[RepoConfig]:
        return self._load().get(repo)

    def list(self) -> List[RepoConfig]:
        configs = self._load()
        return [configs[repo] for repo in sorted(configs)]
