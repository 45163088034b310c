from __future__ import annotations

import io
import json
import logging

import pytest

from sitesync.telemetry.logging import bind, configure_logging, resolve_level


@pytest.fixture()
def restore_root():
    root = logging.getLogger()
    level, handlers = root.level, list(root.handlers)
    yield
    root.setLevel(level)
    root.handlers[:] = handlers


@pytest.mark.parametrize(
    "quiet,verbose,expected",
    [
        (False, False, logging.INFO),
        (True, False, logging.WARNING),
        (False, True, logging.DEBUG),
        (True, True, logging.DEBUG),
    ],
)
def test_resolve_level(quiet, verbose, expected):
    assert resolve_level("INFO", quiet=quiet, verbose=verbose) == expected


def test_json_lines_carry_bound_context(restore_root):
    buf = io.StringIO()
    configure_logging("INFO", "json", stream=buf)

    bind(logging.getLogger("sitesync.test"), cmd="sync").info("hello %s", "world", extra={"site": 42})

    payload = json.loads(buf.getvalue().strip())
    assert payload["level"] == "INFO"
    assert payload["logger"] == "sitesync.test"
    assert payload["message"] == "hello world"
    assert payload["cmd"] == "sync" and payload["site"] == 42
    assert payload["ts"].endswith("Z")


def test_reconfigure_replaces_handler(restore_root):
    first, second = io.StringIO(), io.StringIO()
    configure_logging("INFO", "text", stream=first)
    configure_logging("WARNING", "text", stream=second)

    log = logging.getLogger("sitesync.test")
    log.info("dropped")
    log.warning("kept")

    assert first.getvalue() == ""
    assert "kept" in second.getvalue() and "dropped" not in second.getvalue()
