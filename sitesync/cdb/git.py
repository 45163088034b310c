from __future__ import annotations

import logging
import os
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from sitesync.errors import ConfigError, GitError, PushError

_log = logging.getLogger(__name__)

_GIT_TIMEOUT_S = 120


class Worktree:
    """Working tree of the configuration database, driven through the git CLI."""

    def __init__(self, path: Path, remote: str = "origin", git: str = "git") -> None:
        self.path = Path(path)
        self.remote = remote
        self._git = git

    # ------------------------------------------------------------------ plumbing

    def _run(
        self,
        args: Sequence[str],
        *,
        env: Optional[Dict[str, str]] = None,
        error: type[GitError] = GitError,
    ) -> str:
        cmd: List[str] = [self._git, "-C", str(self.path), *args]
        _log.debug("cdb: git %s", " ".join(args))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=_GIT_TIMEOUT_S,
                env={**os.environ, **env} if env else None,
            )
        except FileNotFoundError as exc:
            raise ConfigError(f"cdb: git executable {self._git!r} not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise error(list(args), -1, f"timed out after {_GIT_TIMEOUT_S}s") from exc
        if result.returncode != 0:
            raise error(list(args), result.returncode, result.stderr)
        return result.stdout

    # ---------------------------------------------------------------- primitives

    def ensure_repo(self) -> None:
        if not self.path.is_dir():
            raise ConfigError(f"cdb: repository path {self.path} does not exist")
        try:
            out = self._run(["rev-parse", "--is-inside-work-tree"])
        except GitError as exc:
            raise ConfigError(f"cdb: {self.path} is not a git work tree: {exc.stderr}") from exc
        if out.strip() != "true":
            raise ConfigError(f"cdb: {self.path} is not a git work tree")

    def status(self) -> List[str]:
        """Porcelain status lines; untracked files count as changes."""
        out = self._run(["status", "--porcelain", "--untracked-files=normal"])
        return [line for line in out.splitlines() if line.strip()]

    def is_clean(self) -> bool:
        return not self.status()

    def current_branch(self) -> str:
        return self._run(["rev-parse", "--abbrev-ref", "HEAD"]).strip()

    def checkout(self, branch: str) -> None:
        self._run(["checkout", branch])

    def pull(self, branch: str) -> None:
        self._run(["pull", "--ff-only", self.remote, branch])

    def add(self, path: str) -> None:
        self._run(["add", "--", path])

    def commit(
        self,
        message: str,
        *,
        author_name: str,
        author_email: str,
        when: Optional[datetime] = None,
    ) -> str:
        # git internal date format: unix seconds plus offset
        stamp = f"{int((when or datetime.now(timezone.utc)).timestamp())} +0000"
        env = {
            "GIT_AUTHOR_NAME": author_name,
            "GIT_AUTHOR_EMAIL": author_email,
            "GIT_AUTHOR_DATE": stamp,
            "GIT_COMMITTER_NAME": author_name,
            "GIT_COMMITTER_EMAIL": author_email,
            "GIT_COMMITTER_DATE": stamp,
        }
        self._run(["commit", "--no-verify", "-m", message], env=env)
        return self._run(["rev-parse", "HEAD"]).strip()

    def push(self, branch: str) -> None:
        self._run(["push", self.remote, f"{branch}:{branch}"], error=PushError)


__all__ = ["Worktree"]
