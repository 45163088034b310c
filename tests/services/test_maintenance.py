from __future__ import annotations

import datetime as dt
import logging

import pytest
import yaml

from sitesync.errors import ConfigError
from sitesync.services.maintenance import reset_admins, reset_expiry


class ManagedLedger:
    def __init__(self, ids):
        self.ids = ids

    def fetch_managed_site_ids(self):
        return list(self.ids)


def _doc(cdb_repo, name):
    return yaml.safe_load((cdb_repo["checkout"] / "sites" / f"{name}.yaml").read_text(encoding="utf-8"))


def test_reset_admins_all_sites_keeps_immortals(store, cdb_repo, run_git):
    result = reset_admins(store, all_sites=True, no_push=True)

    assert result.committed is True
    assert result.sites_changed == 2
    assert _doc(cdb_repo, "clubsite")["admins"] == []
    assert _doc(cdb_repo, "society")["admins"] == ["root1"]
    assert run_git(cdb_repo["checkout"], "log", "-1", "--format=%s").strip() == (
        "Reset admins (all sites). Sites changed: 2 (cmd=sitesync reset admins, src=ledgerdb)"
    )


def test_reset_admins_managed_only(store, cdb_repo, caplog):
    with caplog.at_level(logging.WARNING):
        result = reset_admins(store, ManagedLedger([7, 500]), no_push=True)

    assert result.sites_changed == 1
    assert _doc(cdb_repo, "clubsite")["admins"] == ["xyz"]
    assert _doc(cdb_repo, "society")["admins"] == ["root1"]
    assert "500" in caplog.text
    assert result.message.startswith("Reset admins (ledger managed sites only).")


def test_reset_admins_needs_ledger_unless_all(store):
    with pytest.raises(ConfigError):
        reset_admins(store)


def test_reset_expiry_sets_every_site(store, cdb_repo, run_git):
    result = reset_expiry(
        store, dt.date(2027, 7, 31), no_push=True, today=lambda: dt.date(2026, 10, 16)
    )

    assert result.sites_changed == 2
    assert _doc(cdb_repo, "clubsite")["expiry"] == "2027-07-31"
    assert _doc(cdb_repo, "society")["expiry"] == "2027-07-31"
    assert run_git(cdb_repo["checkout"], "log", "-1", "--format=%s").strip() == (
        "Reset expiry date to 2027-07-31. Sites changed: 2 (cmd=sitesync reset expiry, src=ledgerdb)"
    )


def test_reset_expiry_warns_on_unusual_dates(store, caplog):
    with caplog.at_level(logging.WARNING):
        reset_expiry(store, dt.date(2020, 1, 1), dry_run=True, today=lambda: dt.date(2026, 10, 16))
    assert "in the past" in caplog.text
    assert "not 31 July" in caplog.text


def test_reset_expiry_same_date_changes_nothing(store, cdb_repo, commits):
    result = reset_expiry(store, dt.date(2025, 7, 31), today=lambda: dt.date(2025, 1, 1))
    assert result.sites_changed == 0
    assert result.committed is False
    assert commits(cdb_repo["checkout"]) == 1
