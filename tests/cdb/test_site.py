from __future__ import annotations

import threading

import pytest
import yaml

from sitesync.cdb.site import Site, load_site, new_site
from sitesync.errors import StorageError


def _site(tmp_path, name="demo", **data) -> Site:
    (tmp_path / "sites").mkdir(exist_ok=True)
    return new_site(name, tmp_path, data)


def test_admins_are_sorted_and_deduplicated_on_load(tmp_path):
    site = _site(tmp_path, admins=["zoe", "amy", "zoe", " ", None, "bob "])
    assert site.admins == ["amy", "bob", "zoe"]
    assert site.changed is False


def test_add_admin_inserts_in_sorted_position(tmp_path):
    site = _site(tmp_path, admins=["amy", "zoe"])
    assert site.add_admin("kim") is True
    assert site.admins == ["amy", "kim", "zoe"]
    assert site.changed is True


def test_add_existing_admin_is_noop(tmp_path):
    site = _site(tmp_path, admins=["amy"])
    assert site.add_admin("amy") is False
    assert site.changed is False


def test_remove_missing_admin_is_noop(tmp_path):
    site = _site(tmp_path, admins=["amy"])
    assert site.remove_admin("bob") is False
    assert site.admins == ["amy"]
    assert site.changed is False


def test_empty_username_is_noop(tmp_path):
    site = _site(tmp_path, admins=["amy"])
    assert site.add_admin("") is False
    assert site.remove_admin("   ") is False
    assert site.changed is False


def test_remove_admin_marks_changed(tmp_path):
    site = _site(tmp_path, admins=["amy", "bob"])
    assert site.remove_admin("amy") is True
    assert site.admins == ["bob"]
    assert site.changed is True


def test_concurrent_adds_keep_list_sorted(tmp_path):
    site = _site(tmp_path)
    names = [f"user{i:03d}" for i in range(200)]

    def _add(chunk):
        for n in chunk:
            site.add_admin(n)

    threads = [threading.Thread(target=_add, args=(names[i::4],)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert site.admins == sorted(names)


def test_clear_admins_keeps_immortal_admins(tmp_path):
    site = _site(tmp_path, admins=["amy", "root1"], **{"immortal-admins": ["root1"]})
    assert site.clear_admins() is True
    assert site.admins == ["root1"]
    assert site.clear_admins() is False


def test_set_expiry_only_marks_changed_on_difference(tmp_path):
    site = _site(tmp_path, expiry="2025-07-31")
    assert site.set_expiry("2025-07-31") is False
    assert site.changed is False
    assert site.set_expiry("2026-07-31") is True
    assert site.changed is True


def test_unquoted_yaml_date_becomes_string(tmp_path):
    sites = tmp_path / "sites"
    sites.mkdir()
    (sites / "demo.yaml").write_text("id: 1\nexpiry: 2025-07-31\n", encoding="utf-8")
    assert load_site(sites / "demo.yaml").expiry == "2025-07-31"


def test_save_writes_keys_in_order_and_omits_empty_optionals(tmp_path):
    site = _site(tmp_path, id=3, admins=["bob"], expiry="2025-07-31", paths=["/srv/www/demo"])
    site.add_admin("amy")
    site.save()

    assert site.changed is False
    text = (tmp_path / "sites" / "demo.yaml").read_text(encoding="utf-8")
    keys = [line.split(":")[0] for line in text.splitlines() if not line.startswith(("-", " "))]
    assert keys == [
        "id",
        "full-name",
        "email",
        "admins",
        "expiry",
        "paths",
        "disabled",
        "php",
        "passenger",
        "subpaths",
    ]
    assert yaml.safe_load(text)["admins"] == ["amy", "bob"]


def test_load_save_round_trip_keeps_optional_fields(tmp_path):
    sites = tmp_path / "sites"
    sites.mkdir()
    original = {
        "id": 9,
        "full-name": "Chess",
        "email": "chess@example.com",
        "display-email": "info@chess.example.com",
        "admins": ["amy"],
        "immortal-admins": ["root1"],
        "expiry": "2025-07-31",
        "paths": ["/srv/www/chess"],
        "domains": ["chess.example.com"],
        "disabled": True,
        "disabled_reason": "unpaid",
        "php": False,
        "php-version": 8,
        "passenger": True,
        "subpaths": True,
    }
    path = sites / "chess.yaml"
    path.write_text(yaml.safe_dump(original, sort_keys=False), encoding="utf-8")

    site = load_site(path)
    assert site.name == "chess"
    assert site.to_document() == original
    assert list(site.to_document()) == list(original)


def test_repo_file_name_is_relative_posix(tmp_path):
    assert _site(tmp_path, name="abc").repo_file_name() == "sites/abc.yaml"


@pytest.mark.parametrize(
    "name,content",
    [
        ("bad.yaml", "id: [unclosed\n"),
        ("list.yaml", "- just\n- a list\n"),
        ("typed.yaml", "id: not-a-number\n"),
    ],
)
def test_load_site_rejects_bad_files(tmp_path, name, content):
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")
    with pytest.raises(StorageError):
        load_site(path)


def test_load_site_rejects_non_yaml_suffix(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("id: 1\n", encoding="utf-8")
    with pytest.raises(StorageError):
        load_site(path)


def test_save_without_backing_directory_raises():
    with pytest.raises(StorageError):
        new_site("orphan").save()
