from __future__ import annotations

import logging

import pytest
import yaml
from sqlalchemy import select

from sitesync import cli
from sitesync.ledger import client as L
from sitesync.ledger.client import SqlLedgerClient
from sitesync.notify.email import EmailWorker


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    level, handlers = root.level, list(root.handlers)
    yield
    root.setLevel(level)
    root.handlers[:] = handlers


@pytest.fixture()
def cdb_env(cdb_repo, monkeypatch):
    monkeypatch.setenv("SITESYNC_CDB__PATH", str(cdb_repo["checkout"]))
    monkeypatch.setenv("SITESYNC_LEDGER__NAME", "ledgerdb")
    return cdb_repo


def test_invalid_date_is_argument_error():
    with pytest.raises(SystemExit) as exc:
        cli.main(["reset", "expiry", "2024-13-01"])
    assert exc.value.code == 2


def test_subcommand_is_required():
    with pytest.raises(SystemExit) as exc:
        cli.main([])
    assert exc.value.code == 2


def test_missing_config_file_exits_one(tmp_path):
    assert cli.main(["sync", "--config", str(tmp_path / "nope.yaml")]) == 1


def test_missing_ledger_settings_exit_one(cdb_env):
    assert cli.main(["sync", "--no-email"]) == 1


def test_reset_expiry_commits(cdb_env, run_git, commits):
    rc = cli.main(["reset", "expiry", "2027-07-31", "--branch", "main", "--no-push", "-q"])

    assert rc == 0
    checkout = cdb_env["checkout"]
    assert commits(checkout) == 2
    doc = yaml.safe_load((checkout / "sites" / "clubsite.yaml").read_text(encoding="utf-8"))
    assert doc["expiry"] == "2027-07-31"
    assert run_git(checkout, "log", "-1", "--format=%s").strip().endswith(
        "(cmd=sitesync reset expiry, src=ledgerdb)"
    )


def test_wrong_branch_fails_cleanly(cdb_env):
    assert cli.main(["reset", "admins", "--all", "--branch", "does-not-exist"]) == 1


def test_sync_end_to_end(cdb_env, ledger_engine, seed, monkeypatch, commits):
    seed(
        access=[
            {"ID": 1, "WebsiteID": 42, "PeopleID": 1, "RequestStatus": 1},
            {"ID": 2, "WebsiteID": 42, "PeopleID": 2, "RequestStatus": 3},
        ],
        people=[
            {"ID": 1, "FName": "Ann", "LookupName": "Ann", "Login": "abc", "PrimaryEmail": "a@example.com"},
            {"ID": 2, "FName": "Xav", "LookupName": "Xav", "Login": "xyz", "PrimaryEmail": "x@example.com"},
        ],
        sites={42: "Climbing Club"},
    )
    monkeypatch.setattr(cli, "connect", lambda settings: SqlLedgerClient(ledger_engine, name=settings.name))

    rc = cli.main(["sync", "--no-email", "--branch", "main", "--log-format", "json"])

    assert rc == 0
    checkout = cdb_env["checkout"]
    assert commits(checkout) == 2
    doc = yaml.safe_load((checkout / "sites" / "clubsite.yaml").read_text(encoding="utf-8"))
    assert doc["admins"] == ["abc"]
    wa = L.webserver_access
    with ledger_engine.connect() as conn:
        statuses = dict(conn.execute(select(wa.c.ID, wa.c.RequestStatus)).all())
    assert statuses == {1: 2, 2: 4}


def test_email_test_sends_one_message(monkeypatch):
    sent = []

    class _SMTP:
        def send_message(self, msg):
            sent.append(msg)

        def quit(self):
            pass

    def _worker(settings):
        return EmailWorker(settings, smtp_factory=_SMTP)

    monkeypatch.setattr(cli, "EmailWorker", _worker)

    rc = cli.main(["email", "test", "--to", "ops@example.com", "--name", "Ops"])

    assert rc == 0
    assert len(sent) == 1
    assert sent[0]["To"] == "Ops <ops@example.com>"


def test_email_test_unreachable_server_exits_one(monkeypatch):
    def _refuse():
        raise ConnectionRefusedError("refused")

    monkeypatch.setattr(cli, "EmailWorker", lambda settings: EmailWorker(settings, smtp_factory=_refuse))
    assert cli.main(["email", "test", "--to", "ops@example.com"]) == 1
