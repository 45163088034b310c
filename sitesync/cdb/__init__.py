from sitesync.cdb.git import Worktree
from sitesync.cdb.site import Site, load_site, new_site
from sitesync.cdb.store import CommitRequest, CommitResult, SiteStore, build_commit_message

__all__ = [
    "CommitRequest",
    "CommitResult",
    "Site",
    "SiteStore",
    "Worktree",
    "build_commit_message",
    "load_site",
    "new_site",
]
