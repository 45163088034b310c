"""Bulk maintenance operations on the configuration database.

Both operations mutate sites in memory and then go through the normal commit
pipeline, so ``dry_run`` / ``force_update_tree`` / ``no_push`` behave exactly
as they do for a sync.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Callable, List, Optional

from sitesync.cdb.site import Site
from sitesync.cdb.store import CommitRequest, CommitResult, SiteStore
from sitesync.errors import ConfigError
from sitesync.ledger.client import LedgerClient

_log = logging.getLogger(__name__)

RESET_ADMINS_CMD = "reset admins"
RESET_EXPIRY_CMD = "reset expiry"

# Sites normally expire at the end of the academic year.
EXPIRY_MONTH = 7
EXPIRY_DAY = 31


def _managed_sites(store: SiteStore, ledger: LedgerClient) -> List[Site]:
    sites: List[Site] = []
    for site_id in ledger.fetch_managed_site_ids():
        site = store.get_by_id(site_id)
        if site is None:
            _log.warning("reset: Site %d is managed by the ledger but not in cdb. Skipping", site_id)
            continue
        sites.append(site)
    return sites


def reset_admins(
    store: SiteStore,
    ledger: Optional[LedgerClient] = None,
    all_sites: bool = False,
    *,
    dry_run: bool = False,
    force_update_tree: bool = False,
    no_push: bool = False,
) -> CommitResult:
    """Drop every admin except immortal ones, then commit.

    With ``all_sites`` every site in cdb is reset; otherwise only the sites the
    ledger manages, so hand-maintained sites keep their admins.
    """
    if all_sites:
        summary = "Reset admins (all sites)"
        sites = store.get_all()
    else:
        if ledger is None:
            raise ConfigError("reset: a ledger is required unless resetting all sites")
        summary = "Reset admins (ledger managed sites only)"
        sites = _managed_sites(store, ledger)

    _log.info("reset: Resetting admins on %d sites", len(sites))
    changed = set()
    for site in sites:
        with site.lock:
            if site.clear_admins():
                changed.add(site.id)

    return store.commit(
        CommitRequest(
            ids=changed,
            message=summary,
            cmd=RESET_ADMINS_CMD,
            dry_run=dry_run,
            force_update_tree=force_update_tree,
            no_push=no_push,
        )
    )


def reset_expiry(
    store: SiteStore,
    date: dt.date,
    *,
    dry_run: bool = False,
    force_update_tree: bool = False,
    no_push: bool = False,
    today: Callable[[], dt.date] = dt.date.today,
) -> CommitResult:
    """Set the expiry of every site to ``date`` and commit."""
    if date < today():
        _log.warning("reset: Expiry date %s is in the past", date.isoformat())
    if (date.month, date.day) != (EXPIRY_MONTH, EXPIRY_DAY):
        _log.warning("reset: Expiry date %s is not 31 July", date.isoformat())

    expiry = date.isoformat()
    changed = set()
    for site in store.get_all():
        with site.lock:
            if site.set_expiry(expiry):
                changed.add(site.id)
    _log.info("reset: Expiry changed on %d sites", len(changed))

    return store.commit(
        CommitRequest(
            ids=changed,
            message=f"Reset expiry date to {expiry}",
            cmd=RESET_EXPIRY_CMD,
            dry_run=dry_run,
            force_update_tree=force_update_tree,
            no_push=no_push,
        )
    )


__all__ = ["reset_admins", "reset_expiry"]
