from __future__ import annotations

import argparse
import datetime as dt
import logging
from contextlib import ExitStack
from typing import List, Optional

from sitesync.cdb.store import CommitResult, SiteStore
from sitesync.errors import NotificationError, SiteSyncError
from sitesync.ledger.client import SqlLedgerClient, connect
from sitesync.notify.email import EmailOptions, EmailWorker
from sitesync.services.maintenance import reset_admins, reset_expiry
from sitesync.services.sync import SyncOptions, SyncOrchestrator
from sitesync.settings import Settings, load_settings
from sitesync.telemetry.logging import configure_logging, resolve_level

_log = logging.getLogger("sitesync.cli")


def _iso_date(value: str) -> dt.date:
    try:
        return dt.datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from exc


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="YAML config file (default: $SITESYNC_CONFIG or ~/.sitesync.yaml)")
    common.add_argument("-q", "--quiet", action="store_true", help="only log warnings and errors")
    common.add_argument("-v", "--verbose", action="store_true", help="debug logging; wins over --quiet")
    common.add_argument("--log-format", choices=("text", "json"), default="text")
    common.add_argument("--dry-run", action="store_true", help="do not commit, push or update the ledger")
    common.add_argument(
        "--force-update-tree",
        action="store_true",
        help="with --dry-run, still write changed site files to the working tree",
    )
    common.add_argument("--no-push", action="store_true", help="commit locally but do not push")
    common.add_argument("--branch", help="cdb branch to commit to (overrides cdb.branch)")
    return common


def build_parser() -> argparse.ArgumentParser:
    common = _common_options()
    parser = argparse.ArgumentParser(
        prog="sitesync",
        description="Sync website access grants from the ledger into the cdb repository.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", parents=[common], help="apply pending grants")
    sync.add_argument(
        "--all",
        dest="include_all",
        action="store_true",
        help="also re-apply grants that were already finalized",
    )
    sync.add_argument("--no-email", action="store_true", help="do not send notification emails")
    sync.add_argument(
        "--recipient-override-email",
        default="",
        metavar="ADDR",
        help="send every notification to ADDR instead of the grantee",
    )

    reset = commands.add_parser("reset", help="bulk maintenance of cdb sites")
    reset_cmds = reset.add_subparsers(dest="reset_command", required=True)
    admins = reset_cmds.add_parser("admins", parents=[common], help="remove all non-immortal admins")
    admins.add_argument(
        "--all",
        dest="all_sites",
        action="store_true",
        help="reset every site, not only the ones managed by the ledger",
    )
    expiry = reset_cmds.add_parser("expiry", parents=[common], help="set the expiry date of every site")
    expiry.add_argument("date", type=_iso_date, metavar="YYYY-MM-DD")

    email = commands.add_parser("email", help="email utilities")
    email_cmds = email.add_subparsers(dest="email_command", required=True)
    test = email_cmds.add_parser("test", parents=[common], help="send a test email")
    test.add_argument("--to", required=True, metavar="ADDR")
    test.add_argument("--name", default="", help="recipient first name")

    return parser


def _log_commit(result: CommitResult) -> None:
    if result.committed:
        _log.info(
            "Committed %s (%d sites changed, pushed=%s)",
            result.revision[:12],
            result.sites_changed,
            result.pushed,
        )
    else:
        _log.info("No commit made (%d sites changed)", result.sites_changed)


def _store(settings: Settings) -> SiteStore:
    return SiteStore(settings.cdb, source_name=settings.ledger.source_name())


def _cmd_sync(args: argparse.Namespace, settings: Settings) -> int:
    options = SyncOptions(
        include_all=args.include_all,
        dry_run=args.dry_run,
        force_update_tree=args.force_update_tree,
        no_push=args.no_push,
        no_email=args.no_email,
        recipient_override=args.recipient_override_email,
    )
    store = _store(settings)
    with connect(settings.ledger) as ledger:
        mailer = None if args.no_email else EmailWorker(settings.email)
        report = SyncOrchestrator(store, ledger, mailer).run(options)
    if report.commit is not None:
        _log_commit(report.commit)
    if report.skipped_site_ids:
        _log.warning("Sites missing from cdb: %s", sorted(report.skipped_site_ids))
    return 0


def _cmd_reset_admins(args: argparse.Namespace, settings: Settings) -> int:
    flags = dict(dry_run=args.dry_run, force_update_tree=args.force_update_tree, no_push=args.no_push)
    store = _store(settings)
    with ExitStack() as stack:
        ledger: Optional[SqlLedgerClient] = None
        if not args.all_sites:
            ledger = stack.enter_context(connect(settings.ledger))
        result = reset_admins(store, ledger, args.all_sites, **flags)
    _log_commit(result)
    return 0


def _cmd_reset_expiry(args: argparse.Namespace, settings: Settings) -> int:
    result = reset_expiry(
        _store(settings),
        args.date,
        dry_run=args.dry_run,
        force_update_tree=args.force_update_tree,
        no_push=args.no_push,
    )
    _log_commit(result)
    return 0


def _cmd_email_test(args: argparse.Namespace, settings: Settings) -> int:
    worker = EmailWorker(settings.email)
    worker.start()
    try:
        worker.enqueue(
            EmailOptions(
                email=args.to,
                email_name=args.name,
                first_name=args.name,
                subject="Test email",
                type="test",
            )
        )
    finally:
        worker.shutdown()
    if worker.stats()["sent"] != 1:
        raise NotificationError(f"email: Test email to {args.to} was not sent")
    _log.info("Test email sent to %s", args.to)
    return 0


_COMMANDS = {
    ("sync", None): _cmd_sync,
    ("reset", "admins"): _cmd_reset_admins,
    ("reset", "expiry"): _cmd_reset_expiry,
    ("email", "test"): _cmd_email_test,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    sub = getattr(args, "reset_command", None) or getattr(args, "email_command", None)
    handler = _COMMANDS[(args.command, sub)]

    try:
        settings = load_settings(args.config)
    except SiteSyncError as exc:
        configure_logging(resolve_level(quiet=args.quiet, verbose=args.verbose), args.log_format)
        _log.error("%s", exc)
        return 1

    configure_logging(
        resolve_level(settings.log_level, quiet=args.quiet, verbose=args.verbose),
        args.log_format,
    )
    if args.branch:
        settings.cdb.branch = args.branch

    try:
        return handler(args, settings)
    except SiteSyncError as exc:
        _log.error("%s", exc)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
