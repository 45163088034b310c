"""A single site in the configuration database.

Each site is one YAML file under ``<cdb.path>/sites``; the file name without
its extension is the site name. ``admins`` is kept as a sorted, duplicate-free
list so files diff cleanly.
"""

from __future__ import annotations

import bisect
import datetime as dt
import logging
import threading
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, field_validator

from sitesync.errors import StorageError

_log = logging.getLogger(__name__)

SITES_DIR = "sites"
SITE_SUFFIX = ".yaml"


def _normalize_names(values: Any) -> List[str]:
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    cleaned = {str(v).strip() for v in values if v is not None}
    cleaned.discard("")
    return sorted(cleaned)


class Site(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int = 0
    full_name: str = Field("", alias="full-name")
    email: str = ""
    display_email: str = Field("", alias="display-email")
    admins: List[str] = Field(default_factory=list)
    immortal_admins: List[str] = Field(default_factory=list, alias="immortal-admins")
    expiry: str = ""
    paths: List[str] = Field(default_factory=list)
    domains: List[Any] = Field(default_factory=list)
    disabled: bool = False
    disabled_reason: str = ""
    php: bool = True
    php_version: int = Field(0, alias="php-version")
    passenger: bool = False
    subpaths: bool = False

    _name: str = PrivateAttr("")
    _root: Optional[Path] = PrivateAttr(None)
    _changed: bool = PrivateAttr(False)
    _lock: Any = PrivateAttr(default_factory=threading.RLock)

    @field_validator("admins", "immortal_admins", mode="before")
    @classmethod
    def _sorted_set(cls, value: Any) -> List[str]:
        return _normalize_names(value)

    @field_validator("paths", "domains", mode="before")
    @classmethod
    def _none_is_empty_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator(
        "full_name", "email", "display_email", "disabled_reason", mode="before"
    )
    @classmethod
    def _none_is_empty_str(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("expiry", mode="before")
    @classmethod
    def _expiry_as_string(cls, value: Any) -> Any:
        # Unquoted YAML dates arrive as datetime.date
        if value is None:
            return ""
        if isinstance(value, (dt.date, dt.datetime)):
            return value.strftime("%Y-%m-%d")
        return value

    # ------------------------------------------------------------------ identity

    @property
    def name(self) -> str:
        return self._name

    @property
    def lock(self) -> Any:
        """Per-site re-entrant lock; hold it to apply a batch of mutations atomically."""
        return self._lock

    @property
    def changed(self) -> bool:
        return self._changed

    def mark_changed(self) -> None:
        self._changed = True

    def file_name(self) -> Path:
        if self._root is None:
            raise StorageError(f"cdb: site {self._name!r} has no backing directory")
        return self._root / SITES_DIR / f"{self._name}{SITE_SUFFIX}"

    def repo_file_name(self) -> str:
        return str(PurePosixPath(SITES_DIR, f"{self._name}{SITE_SUFFIX}"))

    # ----------------------------------------------------------------- mutation

    def add_admin(self, username: str) -> bool:
        """Insert ``username`` in sorted position. Returns True when the list changed."""
        username = (username or "").strip()
        if not username:
            return False
        with self._lock:
            pos = bisect.bisect_left(self.admins, username)
            if pos < len(self.admins) and self.admins[pos] == username:
                return False
            self.admins.insert(pos, username)
            self._changed = True
            _log.debug("cdb: added %s to %s admins=%s", username, self._name, self.admins)
            return True

    def remove_admin(self, username: str) -> bool:
        """Remove ``username`` if present. Returns True when the list changed."""
        username = (username or "").strip()
        if not username:
            return False
        with self._lock:
            pos = bisect.bisect_left(self.admins, username)
            if pos >= len(self.admins) or self.admins[pos] != username:
                return False
            del self.admins[pos]
            self._changed = True
            _log.debug("cdb: removed %s from %s admins=%s", username, self._name, self.admins)
            return True

    def clear_admins(self) -> bool:
        """Reset admins to the immortal admins only."""
        with self._lock:
            keep = _normalize_names(self.immortal_admins)
            if self.admins == keep:
                return False
            self.admins = keep
            self._changed = True
            return True

    def set_expiry(self, expiry: str) -> bool:
        with self._lock:
            if self.expiry == expiry:
                return False
            self.expiry = expiry
            self._changed = True
            return True

    # -------------------------------------------------------------- persistence

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "id": self.id,
            "full-name": self.full_name,
            "email": self.email,
        }
        if self.display_email:
            doc["display-email"] = self.display_email
        doc["admins"] = list(self.admins)
        if self.immortal_admins:
            doc["immortal-admins"] = list(self.immortal_admins)
        doc["expiry"] = self.expiry
        doc["paths"] = list(self.paths)
        if self.domains:
            doc["domains"] = list(self.domains)
        doc["disabled"] = self.disabled
        if self.disabled_reason:
            doc["disabled_reason"] = self.disabled_reason
        doc["php"] = self.php
        if self.php_version:
            doc["php-version"] = self.php_version
        doc["passenger"] = self.passenger
        doc["subpaths"] = self.subpaths
        return doc

    def dumps(self) -> str:
        return yaml.safe_dump(
            self.to_document(),
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
        )

    def save(self) -> None:
        """Write the site back to its file and clear the changed flag."""
        with self._lock:
            try:
                text = self.dumps()
            except yaml.YAMLError as exc:
                raise StorageError(f"cdb: Unable to marshal {self._name}: {exc}") from exc
            path = self.file_name()
            try:
                path.write_text(text, encoding="utf-8")
            except OSError as exc:
                raise StorageError(f"cdb: Unable to write {path.name}: {exc}") from exc
            self._changed = False


def new_site(
    name: str, root: Optional[Path] = None, data: Optional[Dict[str, Any]] = None
) -> Site:
    site = Site.model_validate(data or {})
    site._name = name
    site._root = root
    return site


def load_site(path: Path) -> Site:
    """Load ``<root>/sites/<name>.yaml``; the root is two levels above the file."""
    path = Path(path)
    if path.suffix != SITE_SUFFIX:
        raise StorageError(f"cdb: {path.name} not a YAML file")
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StorageError(f"cdb: Reading {path.name}: {exc}") from exc
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        raise StorageError(f"cdb: Unmarshalling {path.name}: {exc}") from exc
    if not isinstance(data, dict):
        raise StorageError(f"cdb: Unmarshalling {path.name}: expected a mapping")
    try:
        return new_site(path.stem, path.parent.parent, data)
    except ValidationError as exc:
        raise StorageError(f"cdb: Unmarshalling {path.name}: {exc}") from exc


__all__ = ["SITES_DIR", "SITE_SUFFIX", "Site", "load_site", "new_site"]
