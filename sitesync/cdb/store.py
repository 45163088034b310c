"""In-memory view of the configuration database plus its commit pipeline.

A ``SiteStore`` is created once per process and handed to whatever needs it.
``initialize()`` loads every site file concurrently the first time it is
called; later calls return immediately or re-raise the cached failure.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

from sitesync.cdb.git import Worktree
from sitesync.cdb.site import SITE_SUFFIX, SITES_DIR, Site, load_site
from sitesync.errors import DirtyWorktreeError, SiteSyncError, StorageError
from sitesync.settings import CdbSettings
from sitesync.telemetry import metrics

_log = logging.getLogger(__name__)

DEFAULT_SUMMARY = "Unspecified changes"
PROGRAM = "sitesync"


@dataclass
class CommitRequest:
    # Site ids to commit; None means every site with pending changes.
    ids: Optional[Set[int]] = None
    message: str = ""
    cmd: str = ""
    dry_run: bool = False
    # Write files even on a dry run so the tree can be inspected.
    force_update_tree: bool = False
    no_push: bool = False


@dataclass
class CommitResult:
    sites_changed: int = 0
    files_staged: int = 0
    committed: bool = False
    pushed: bool = False
    message: str = ""
    revision: str = ""


def build_commit_message(summary: str, cmd: str, sites_changed: int, source: str) -> str:
    origin = f"{PROGRAM} {cmd}" if cmd else PROGRAM
    return (
        f"{summary or DEFAULT_SUMMARY}. Sites changed: {sites_changed} "
        f"(cmd={origin}, src={source})"
    )


class SiteStore:
    def __init__(
        self,
        settings: CdbSettings,
        *,
        source_name: str = "",
        worktree: Optional[Worktree] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._source_name = source_name
        self._worktree = worktree
        self._clock = clock

        self._init_lock = threading.Lock()
        self._initialized = False
        self._init_error: Optional[BaseException] = None

        self._by_id: Dict[int, Site] = {}
        self._by_name: Dict[str, Site] = {}
        self._all: List[Site] = []

    # ------------------------------------------------------------ initialization

    @property
    def root(self) -> Path:
        return self._settings.require_path()

    @property
    def worktree(self) -> Worktree:
        if self._worktree is None:
            self._worktree = Worktree(self.root, remote=self._settings.remote)
        return self._worktree

    def initialize(self) -> None:
        with self._init_lock:
            if not self._initialized:
                self._initialized = True
                try:
                    self._load_all()
                except Exception as exc:
                    self._init_error = exc
            if self._init_error is not None:
                raise self._init_error

    def _load_all(self) -> None:
        sites_dir = self.root / SITES_DIR
        try:
            entries = sorted(p for p in sites_dir.iterdir() if p.is_file())
        except OSError as exc:
            raise StorageError(f"cdb: {exc}") from exc

        files = [p for p in entries if p.suffix == SITE_SUFFIX]
        skipped = len(entries) - len(files)
        if skipped:
            _log.debug("cdb: ignoring %d non-YAML files in %s", skipped, sites_dir)

        loaded: List[Site] = []
        if files:
            with ThreadPoolExecutor(max_workers=len(files), thread_name_prefix="cdb-load") as pool:
                futures = [pool.submit(load_site, path) for path in files]
                # First failure aborts; remaining futures are cancelled or drained.
                for fut in as_completed(futures):
                    exc = fut.exception()
                    if exc is not None:
                        for other in futures:
                            other.cancel()
                        raise exc
                    loaded.append(fut.result())

        by_id: Dict[int, Site] = {}
        by_name: Dict[str, Site] = {}
        for site in sorted(loaded, key=lambda s: s.name):
            if site.id in by_id:
                _log.warning(
                    "cdb: duplicate site id %d in %s and %s",
                    site.id,
                    by_id[site.id].name,
                    site.name,
                )
            by_id[site.id] = site
            by_name[site.name] = site

        self._by_id = by_id
        self._by_name = by_name
        self._all = loaded
        _log.info("cdb: loaded %d sites from %s", len(loaded), sites_dir)

    # ------------------------------------------------------------------ lookups

    def get_by_id(self, site_id: int) -> Optional[Site]:
        self.initialize()
        return self._by_id.get(site_id)

    def get_by_name(self, name: str) -> Optional[Site]:
        self.initialize()
        return self._by_name.get(name)

    def get_all(self) -> List[Site]:
        self.initialize()
        return list(self._all)

    # ------------------------------------------------------------ commit pipeline

    def acquire_worktree(self) -> Worktree:
        """Clean tree, configured branch checked out, fast-forwarded from the remote."""
        wt = self.worktree
        wt.ensure_repo()
        if not wt.is_clean():
            raise DirtyWorktreeError("cdb: Working tree not clean")

        branch = self._settings.branch
        current = wt.current_branch()
        if current != branch:
            _log.info("cdb: Current branch is '%s', checking out '%s'", current, branch)
            wt.checkout(branch)

        _log.info("cdb: Git pulling branch '%s'", branch)
        wt.pull(branch)
        return wt

    def commit(self, request: CommitRequest) -> CommitResult:
        started = self._clock()
        try:
            result = self._commit(request)
        except SiteSyncError:
            metrics.inc(metrics.commits_total, "failed")
            raise
        metrics.inc(metrics.commits_total, "committed" if result.committed else "skipped")
        metrics.observe_commit_duration(self._clock() - started)
        return result

    def _commit(self, request: CommitRequest) -> CommitResult:
        self.initialize()
        wt = self.acquire_worktree()

        write_files = not request.dry_run or request.force_update_tree
        if request.dry_run:
            _log.warning("cdb: Performing dry run - changes will not be committed to repo.")
            if request.force_update_tree:
                _log.warning(
                    "cdb: ForceUpdateTree in effect - working tree will be updated but not committed."
                )
        elif request.no_push:
            _log.warning("cdb: NoPush enabled - changes will be committed but not pushed to origin.")

        targets = self._changed_sites(
            request.ids if request.ids is not None else self._by_id.keys()
        )
        result = CommitResult(sites_changed=len(targets))

        saved = self._save_all(targets) if write_files else []
        if write_files:
            _log.info("cdb: %d changed sites saved to working tree", result.sites_changed)
        else:
            _log.info("cdb: Dry run, %d changed sites not saved to working tree", result.sites_changed)

        if not request.dry_run:
            for site in saved:
                path = site.repo_file_name()
                _log.debug("cdb: Staging %s", path)
                wt.add(path)
                result.files_staged += 1

        if wt.is_clean():
            if result.files_staged == 0:
                _log.info("cdb: Working tree is clean, skipping commit")
            else:
                _log.warning(
                    "cdb: Working tree is clean after staging %d sites, skipping commit",
                    result.files_staged,
                )
            return result

        result.message = build_commit_message(
            request.message, request.cmd, result.sites_changed, self._source_name
        )
        _log.debug("cdb: Commit message is '%s'", result.message)

        if request.dry_run:
            _log.info("cdb: Dry run, not committing")
            return result

        _log.info("cdb: Creating commit")
        author = self._settings.author
        result.revision = wt.commit(
            result.message, author_name=author.name, author_email=author.email
        )
        result.committed = True

        if request.no_push:
            _log.debug("cdb: NoPush enabled, not pushing")
            return result

        branch = self._settings.branch
        _log.info("cdb: Pushing to %s/%s", wt.remote, branch)
        wt.push(branch)
        result.pushed = True
        return result

    def _changed_sites(self, ids: Iterable[int]) -> List[Site]:
        targets: List[Site] = []
        for site_id in sorted(set(ids)):
            site = self._by_id.get(site_id)
            if site is None:
                _log.debug("cdb: Site Id %d not found, skipping", site_id)
                continue
            if not site.changed:
                _log.debug("cdb: %s unchanged, skipping save", site.name)
                continue
            targets.append(site)
        return targets

    def _save_all(self, sites: List[Site]) -> List[Site]:
        if not sites:
            return []

        def _save(site: Site) -> Site:
            _log.debug("cdb: Saving %s", site.name)
            site.save()
            return site

        saved: List[Site] = []
        first_error: Optional[BaseException] = None
        with ThreadPoolExecutor(max_workers=len(sites), thread_name_prefix="cdb-save") as pool:
            for fut in as_completed([pool.submit(_save, s) for s in sites]):
                exc = fut.exception()
                if exc is not None:
                    first_error = first_error or exc
                    continue
                saved.append(fut.result())
        if first_error is not None:
            raise first_error
        return sorted(saved, key=lambda s: s.name)


__all__ = [
    "CommitRequest",
    "CommitResult",
    "DEFAULT_SUMMARY",
    "SiteStore",
    "build_commit_message",
]
