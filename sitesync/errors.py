from __future__ import annotations

from typing import Sequence


class SiteSyncError(Exception):
    """Base class for every fatal sitesync error."""


class ConfigError(SiteSyncError):
    """Raised when a required setting is missing or unusable."""


class StorageError(SiteSyncError):
    """Raised when a site file cannot be read, parsed or written."""


class GitError(SiteSyncError):
    """Raised when a git command exits non-zero."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"git {' '.join(self.command)} exited {returncode}{detail}")


class PushError(GitError):
    """Raised when the push to the remote fails after a local commit."""


class ConsistencyError(SiteSyncError):
    """Raised when state needs operator intervention."""


class DirtyWorktreeError(ConsistencyError):
    """Raised when the working tree has foreign changes."""


class TerminalGrantError(ConsistencyError):
    """Raised when finalizing a grant that is already granted or revoked."""


class LedgerError(SiteSyncError):
    """Raised when the ledger database cannot be queried or updated."""


class NotificationError(SiteSyncError):
    """Raised when an email cannot be built or the SMTP server is unreachable."""


__all__ = [
    "ConfigError",
    "ConsistencyError",
    "DirtyWorktreeError",
    "GitError",
    "LedgerError",
    "NotificationError",
    "PushError",
    "SiteSyncError",
    "StorageError",
    "TerminalGrantError",
]
