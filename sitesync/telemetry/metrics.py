from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Tuple

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

_log = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Metric updates must never abort a sync run; failures are only debug-logged.
# -----------------------------------------------------------------------------
def _best_effort(msg: str, fn: Callable[[], Any]) -> None:
    try:
        fn()
    except Exception as e:  # pragma: no cover
        _log.debug("%s: %s", msg, e)


def _registered(name: str, reg: CollectorRegistry) -> Optional[Any]:
    names_map = getattr(reg, "_names_to_collectors", None)
    if isinstance(names_map, dict):
        return names_map.get(name)
    return None


def _get_or_create_counter(
    name: str,
    doc: str,
    labelnames: Tuple[str, ...] = (),
    registry: Optional[CollectorRegistry] = None,
) -> Counter:
    reg = registry or REGISTRY
    existing = _registered(name, reg)
    if isinstance(existing, Counter):
        return existing
    try:
        return Counter(name, doc, labelnames=labelnames, registry=reg)
    except ValueError:
        # Name clash with a different collector type; keep it unregistered.
        return Counter(name, doc, labelnames=labelnames, registry=None)


def _get_or_create_histogram(
    name: str,
    doc: str,
    registry: Optional[CollectorRegistry] = None,
) -> Histogram:
    reg = registry or REGISTRY
    existing = _registered(name, reg)
    if isinstance(existing, Histogram):
        return existing
    try:
        return Histogram(name, doc, registry=reg)
    except ValueError:
        return Histogram(name, doc, registry=None)


sync_runs_total = _get_or_create_counter(
    "sitesync_sync_runs_total",
    "Sync runs by outcome",
    ("outcome",),
)
grants_applied_total = _get_or_create_counter(
    "sitesync_grants_applied_total",
    "Grants applied to site admin lists",
    ("verb",),
)
grants_finalized_total = _get_or_create_counter(
    "sitesync_grants_finalized_total",
    "Ledger finalize calls by result",
    ("result",),
)
emails_total = _get_or_create_counter(
    "sitesync_emails_total",
    "Notification emails by outcome",
    ("outcome",),
)
commits_total = _get_or_create_counter(
    "sitesync_commits_total",
    "Commit pipeline runs by outcome",
    ("outcome",),
)
commit_duration_seconds = _get_or_create_histogram(
    "sitesync_commit_duration_seconds",
    "Wall time of the commit pipeline",
)


def inc(counter: Counter, *labels: str, amount: float = 1.0) -> None:
    _best_effort(
        "inc counter",
        lambda: counter.labels(*labels).inc(amount),
    )


def observe_commit_duration(seconds: float) -> None:
    _best_effort(
        "observe commit duration",
        lambda: commit_duration_seconds.observe(max(seconds, 0.0)),
    )


__all__ = [
    "commit_duration_seconds",
    "commits_total",
    "emails_total",
    "grants_applied_total",
    "grants_finalized_total",
    "inc",
    "observe_commit_duration",
    "sync_runs_total",
]
