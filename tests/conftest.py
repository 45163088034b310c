# tests/conftest.py
from __future__ import annotations

import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Dict, List

import pytest
from sqlalchemy import create_engine, insert

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sitesync.cdb.store import SiteStore  # noqa: E402
from sitesync.ledger import client as ledger_client  # noqa: E402
from sitesync.settings import AuthorSettings, CdbSettings  # noqa: E402

SITES: Dict[str, str] = {
    "clubsite": """\
id: 42
full-name: Climbing Club
email: climbing@example.com
admins:
- xyz
expiry: '2025-07-31'
paths:
- /srv/www/clubsite
disabled: false
php: true
passenger: false
subpaths: false
""",
    "society": """\
id: 7
full-name: Debating Society
email: debate@example.com
admins:
- alice
- bob
immortal-admins:
- root1
expiry: '2025-07-31'
paths:
- /srv/www/society
disabled: false
php: true
passenger: false
subpaths: false
""",
}


def git(path: Path, *args: str) -> str:
    """Run git in ``path`` with a throwaway identity; returns stdout."""
    result = subprocess.run(
        ["git", "-c", "user.name=test", "-c", "user.email=test@example.com", "-C", str(path), *args],
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout


def commit_count(path: Path) -> int:
    return int(git(path, "rev-list", "--count", "HEAD").strip())


@pytest.fixture()
def run_git():
    return git


@pytest.fixture()
def commits():
    return commit_count


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path_factory, monkeypatch):
    # Keep a developer's ~/.sitesync.yaml and SITESYNC_* env out of the tests.
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    for key in list(os.environ):
        if key.startswith("SITESYNC_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture()
def cdb_repo(tmp_path) -> Dict[str, Path]:
    """A checkout of a bare remote seeded with ``SITES``; branch ``main``."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")

    seed = tmp_path / "seed"
    (seed / "sites").mkdir(parents=True)
    for name, text in SITES.items():
        (seed / "sites" / f"{name}.yaml").write_text(text, encoding="utf-8")
    git(seed, "init", "-q", "-b", "main")
    git(seed, "add", ".")
    git(seed, "commit", "-q", "-m", "initial")

    remote = tmp_path / "remote.git"
    subprocess.run(
        ["git", "clone", "-q", "--bare", str(seed), str(remote)], check=True, capture_output=True
    )
    checkout = tmp_path / "cdb"
    subprocess.run(["git", "clone", "-q", str(remote), str(checkout)], check=True, capture_output=True)
    return {"checkout": checkout, "remote": remote}


@pytest.fixture()
def cdb_settings(cdb_repo) -> CdbSettings:
    return CdbSettings(
        path=cdb_repo["checkout"],
        branch="main",
        author=AuthorSettings(name="Sync Bot", email="bot@example.com"),
    )


@pytest.fixture()
def store(cdb_settings) -> SiteStore:
    return SiteStore(cdb_settings, source_name="ledgerdb")


# ------------------------------------------------------------------ ledger


@pytest.fixture()
def ledger_engine(tmp_path):
    """SQLite stand-in for the ledger, built from the same table metadata."""
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}").execution_options(
        schema_translate_map={ledger_client.LEDGER_SCHEMA: None}
    )
    ledger_client.metadata.create_all(engine)
    yield engine
    engine.dispose()


def seed_ledger(engine, access: List[dict], people: List[dict], sites: Dict[int, str]) -> None:
    """``sites`` maps website id to the owning committee name."""
    with engine.begin() as conn:
        for site_id, committee in sites.items():
            conn.execute(insert(ledger_client.all_centres).values(OCID=site_id, Committee=committee))
            conn.execute(insert(ledger_client.websites).values(ID=site_id, OCID=site_id))
        for person in people:
            conn.execute(insert(ledger_client.people_lookup).values(**person))
        for row in access:
            conn.execute(insert(ledger_client.webserver_access).values(**row))


@pytest.fixture()
def seed(ledger_engine):
    def _seed(access, people, sites):
        seed_ledger(ledger_engine, access, people, sites)

    return _seed
