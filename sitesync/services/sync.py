"""Sync pending access grants from the ledger into the configuration database.

A run goes Fetch -> Apply -> Commit -> Finalize & Notify. Grants are applied
by one worker per site; all workers finish before the single commit, and the
ledger is only told about a grant after that commit (and push) succeeded.
Emails go out only for grants this run actually finalized.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from sitesync.cdb.site import Site
from sitesync.cdb.store import CommitRequest, CommitResult, SiteStore
from sitesync.errors import NotificationError, SiteSyncError
from sitesync.ledger.client import GrantsBySite, LedgerClient
from sitesync.ledger.models import AccessRecord
from sitesync.notify.email import EmailOptions, EmailWorker
from sitesync.telemetry import metrics
from sitesync.telemetry.logging import bind

_log = logging.getLogger(__name__)

ADD = "add"
REVOKE = "revoke"

COMMIT_SUMMARY = "Update admins"
COMMIT_CMD = "sync"

_SUBJECTS = {
    "granted": "Website Access Granted",
    "revoked": "Website Access Removed",
}


@dataclass
class SyncOptions:
    # Include grants that were already finalized (audit / reprocessing).
    include_all: bool = False
    dry_run: bool = False
    force_update_tree: bool = False
    no_push: bool = False
    no_email: bool = False
    recipient_override: str = ""


@dataclass
class SyncReport:
    changed_site_ids: Set[int] = field(default_factory=set)
    skipped_site_ids: Set[int] = field(default_factory=set)
    grants_applied: int = 0
    grants_finalized: int = 0
    grants_already_finalized: int = 0
    emails_queued: int = 0
    commit: Optional[CommitResult] = None


# One unit of work: (verb, grant) applied in order to a single site.
SiteWork = List[Tuple[str, AccessRecord]]


class SyncOrchestrator:
    def __init__(
        self,
        store: SiteStore,
        ledger: LedgerClient,
        mailer: Optional[EmailWorker] = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._mailer = mailer

    # --------------------------------------------------------------------- run

    def run(self, options: SyncOptions) -> SyncReport:
        log = bind(_log, cmd=COMMIT_CMD)
        log.info("sync: Starting sync ...")
        try:
            report = self._run(options)
        except SiteSyncError:
            metrics.inc(metrics.sync_runs_total, "failed")
            raise
        metrics.inc(metrics.sync_runs_total, "ok")
        log.info(
            "sync: Done. %d sites changed, %d grants finalized, %d emails queued",
            len(report.changed_site_ids),
            report.grants_finalized,
            report.emails_queued,
        )
        return report

    def _run(self, options: SyncOptions) -> SyncReport:
        report = SyncReport()

        grants = self._fetch(options)
        work = self._plan(grants, report)
        to_finalize = self._apply(work, report)

        report.commit = self._store.commit(
            CommitRequest(
                ids=set(report.changed_site_ids),
                message=COMMIT_SUMMARY,
                cmd=COMMIT_CMD,
                dry_run=options.dry_run,
                force_update_tree=options.force_update_tree,
                no_push=options.no_push,
            )
        )

        self._finalize_and_notify(to_finalize, options, report)
        return report

    # ------------------------------------------------------------------- fetch

    def _fetch(self, options: SyncOptions) -> Dict[str, GrantsBySite]:
        grants = {
            ADD: self._ledger.fetch_grants_to_add(options.include_all),
            REVOKE: self._ledger.fetch_grants_to_revoke(options.include_all),
        }
        for verb, by_site in grants.items():
            _log.debug("sync: Got grants to %s", verb, extra={"grants": by_site})
        return grants

    def _plan(self, grants: Dict[str, GrantsBySite], report: SyncReport) -> Dict[int, SiteWork]:
        """Regroup both verbs per site id so each site has exactly one worker."""
        work: Dict[int, SiteWork] = {}
        for verb in (ADD, REVOKE):
            _log.info("sync: Processing grants to %s for %d sites", verb, len(grants[verb]))
            for site_id, records in sorted(grants[verb].items()):
                work.setdefault(site_id, []).extend((verb, r) for r in records)

        for site_id in list(work):
            if self._store.get_by_id(site_id) is None:
                _log.warning(
                    "sync: Unable to apply %d grants for site %d - site not found in cdb. Skipping",
                    len(work[site_id]),
                    site_id,
                )
                report.skipped_site_ids.add(site_id)
                del work[site_id]
        return work

    # ------------------------------------------------------------------- apply

    def _apply_site(self, site: Site, items: SiteWork) -> Tuple[bool, List[AccessRecord]]:
        pending: List[AccessRecord] = []
        log = bind(_log, site=site.name, site_id=site.id)
        with site.lock:
            for verb, grant in items:
                if verb == ADD:
                    log.info("sync: Adding %s to %s", grant.login, site.name)
                    site.add_admin(grant.login)
                else:
                    log.info("sync: Revoking %s from %s", grant.login, site.name)
                    site.remove_admin(grant.login)
                metrics.inc(metrics.grants_applied_total, verb)
                if grant.is_pending:
                    pending.append(grant)
            return site.changed, pending

    def _apply(self, work: Dict[int, SiteWork], report: SyncReport) -> List[AccessRecord]:
        if not work:
            return []

        sites = {site_id: self._store.get_by_id(site_id) for site_id in work}
        results: Dict[int, Tuple[bool, List[AccessRecord]]] = {}
        # Leaving the executor block waits for every worker.
        with ThreadPoolExecutor(max_workers=len(work), thread_name_prefix="sync-site") as pool:
            futures = {
                site_id: pool.submit(self._apply_site, sites[site_id], items)  # type: ignore[arg-type]
                for site_id, items in work.items()
            }
        for site_id, fut in futures.items():
            results[site_id] = fut.result()

        to_finalize: List[AccessRecord] = []
        for site_id in sorted(results):
            changed, pending = results[site_id]
            if changed:
                _log.debug("sync: site %d changed", site_id)
                report.changed_site_ids.add(site_id)
            to_finalize.extend(pending)
            report.grants_applied += len(work[site_id])
        return to_finalize

    # ------------------------------------------------------ finalize and notify

    def _start_mailer(self, options: SyncOptions) -> bool:
        if options.dry_run or options.no_email:
            _log.info("sync: Performing dry run or --no-email in effect - emails will not be sent.")
            return False
        if self._mailer is None:
            _log.info("sync: No email worker configured - emails will not be sent.")
            return False
        if options.recipient_override:
            _log.info(
                "sync: Email override in effect - all emails will be sent to %s",
                options.recipient_override,
            )
        try:
            self._mailer.start()
        except NotificationError as exc:
            _log.warning("sync: %s", exc)
            _log.warning("sync: Unable to start email worker, emails will not be sent")
            return False
        return True

    def _finalize_and_notify(
        self,
        grants: List[AccessRecord],
        options: SyncOptions,
        report: SyncReport,
    ) -> None:
        send_emails = self._start_mailer(options)
        try:
            for grant in grants:
                if options.dry_run:
                    _log.debug("sync: Dry run, skipping finalize of grant %d", grant.access_id)
                    continue

                updated = self._ledger.finalize_grant(grant)
                if not updated:
                    report.grants_already_finalized += 1
                    metrics.inc(metrics.grants_finalized_total, "not_updated")
                    continue
                report.grants_finalized += 1
                metrics.inc(metrics.grants_finalized_total, "updated")

                if send_emails and self._notify(grant, options):
                    report.emails_queued += 1
        finally:
            if send_emails and self._mailer is not None:
                self._mailer.shutdown()

    def _notify(self, grant: AccessRecord, options: SyncOptions) -> bool:
        site = self._store.get_by_id(grant.website_id)
        if site is None:
            _log.warning(
                "sync: Unable to load site %d - skipping email for grant %d",
                grant.website_id,
                grant.access_id,
            )
            return False

        if not grant.email:
            _log.warning("sync: No email address for %s - skipping email", grant.login)
            return False

        kind = "granted" if grant.is_grant else "revoked"
        email_opts = EmailOptions(
            csp=grant.csp,
            email=options.recipient_override or grant.email,
            email_name=grant.lookup_name,
            first_name=grant.first_name,
            folder=site.name,
            subject=_SUBJECTS[kind],
            type=kind,
        )
        try:
            self._mailer.enqueue(email_opts)  # type: ignore[union-attr]
        except NotificationError as exc:
            _log.warning("sync: Error attempting to send email to %s: %s", email_opts.email, exc)
            metrics.inc(metrics.emails_total, "failed")
            return False
        return True


__all__ = ["SyncOptions", "SyncOrchestrator", "SyncReport"]
