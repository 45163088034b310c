"""Access to the external grant ledger.

Grants are read grouped by target website and finalized with a conditional
update keyed on ``(ID, expected RequestStatus)``; the affected row count is
the only success signal, so repeated or concurrent finalize calls are safe.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Dict, Iterable, List, Protocol, runtime_checkable

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError

from sitesync.errors import ConfigError, LedgerError
from sitesync.ledger.models import AccessRecord, AccessStatus
from sitesync.settings import LedgerSettings

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

_log = logging.getLogger(__name__)

GrantsBySite = Dict[int, List[AccessRecord]]

# -----------------------------------------------------------------------------
# Ledger schema (only the columns sitesync reads or writes)
# -----------------------------------------------------------------------------

LEDGER_SCHEMA = "dbo"
metadata = MetaData(schema=LEDGER_SCHEMA)

webserver_access = Table(
    "WebserverAccess",
    metadata,
    Column("ID", Integer, primary_key=True),
    Column("WebsiteID", Integer, nullable=False),
    Column("PeopleID", Integer, nullable=False),
    Column("RequestStatus", Integer, nullable=False),
    Column("GrantedWhen", DateTime, nullable=True),
    Column("RevokedWhen", DateTime, nullable=True),
)

websites = Table(
    "Websites",
    metadata,
    Column("ID", Integer, primary_key=True),
    Column("OCID", Integer, nullable=False),
)

all_centres = Table(
    "AllCentres",
    metadata,
    Column("OCID", Integer, primary_key=True),
    Column("Committee", String(255), nullable=True),
)

people_lookup = Table(
    "PeopleLookup",
    metadata,
    Column("ID", Integer, primary_key=True),
    Column("FName", String(255), nullable=True),
    Column("LookupName", String(255), nullable=True),
    Column("Login", String(64), nullable=True),
    Column("PrimaryEmail", String(255), nullable=True),
)


@runtime_checkable
class LedgerClient(Protocol):
    def fetch_grants_to_add(self, include_non_pending: bool = False) -> GrantsBySite:
        ...

    def fetch_grants_to_revoke(self, include_non_pending: bool = False) -> GrantsBySite:
        ...

    def finalize_grant(self, grant: AccessRecord) -> bool:
        """Move a pending grant to its finished state. True only if this call updated the row."""
        ...

    def fetch_managed_site_ids(self) -> List[int]:
        ...


def ledger_url(settings: LedgerSettings) -> str | URL:
    if settings.dsn:
        return settings.dsn
    if not settings.host or not settings.database:
        raise ConfigError("ledger: ledger.host and ledger.database are required")
    host = settings.host
    if settings.instance:
        host = f"{host}\\{settings.instance}"
    return URL.create(
        settings.driver,
        username=settings.username or None,
        password=settings.password.get_secret_value() or None,
        host=host,
        database=settings.database,
    )


def connect(settings: LedgerSettings) -> "SqlLedgerClient":
    """Open the ledger described by ``settings``."""
    try:
        engine = create_engine(ledger_url(settings), future=True, pool_pre_ping=True)
    except (SQLAlchemyError, ImportError) as exc:
        raise LedgerError(f"ledger: connecting: {exc}") from exc
    return SqlLedgerClient(engine, name=settings.source_name())


class SqlLedgerClient:
    def __init__(self, engine: "Engine", name: str = "") -> None:
        self._engine = engine
        self.name = name

    def __enter__(self) -> "SqlLedgerClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._engine.dispose()

    # ------------------------------------------------------------------- reads

    def _grants_query(self, statuses: Iterable[AccessStatus]):  # type: ignore[no-untyped-def]
        wa = webserver_access
        newer = webserver_access.alias("newer")
        superseded = (
            select(newer.c.ID)
            .where(
                newer.c.PeopleID == wa.c.PeopleID,
                newer.c.WebsiteID == wa.c.WebsiteID,
                newer.c.ID > wa.c.ID,
            )
            .exists()
        )
        return (
            select(
                wa.c.ID.label("access_id"),
                wa.c.WebsiteID.label("website_id"),
                wa.c.RequestStatus.label("request_status"),
                people_lookup.c.FName.label("first_name"),
                people_lookup.c.LookupName.label("lookup_name"),
                people_lookup.c.Login.label("login"),
                func.coalesce(people_lookup.c.PrimaryEmail, "").label("email"),
                all_centres.c.Committee.label("csp"),
            )
            .select_from(
                wa.join(websites, wa.c.WebsiteID == websites.c.ID)
                .join(all_centres, websites.c.OCID == all_centres.c.OCID)
                .join(people_lookup, wa.c.PeopleID == people_lookup.c.ID)
            )
            .where(
                wa.c.RequestStatus.in_([int(s) for s in statuses]),
                people_lookup.c.Login.is_not(None),
                ~superseded,
            )
            .order_by(wa.c.ID)
        )

    def _fetch(self, statuses: List[AccessStatus]) -> GrantsBySite:
        grouped: GrantsBySite = defaultdict(list)
        try:
            with self._engine.connect() as conn:
                for row in conn.execute(self._grants_query(statuses)):
                    grant = AccessRecord(
                        access_id=int(row.access_id),
                        website_id=int(row.website_id),
                        request_status=AccessStatus(int(row.request_status)),
                        first_name=row.first_name or "",
                        lookup_name=row.lookup_name or "",
                        login=row.login or "",
                        email=row.email or "",
                        csp=row.csp or "",
                    )
                    grouped[grant.website_id].append(grant)
        except SQLAlchemyError as exc:
            raise LedgerError(f"ledger: fetching grants {[s.name for s in statuses]}: {exc}") from exc
        return dict(grouped)

    def fetch_grants_to_add(self, include_non_pending: bool = False) -> GrantsBySite:
        statuses = [AccessStatus.GRANT_PENDING]
        if include_non_pending:
            statuses.append(AccessStatus.GRANTED)
        return self._fetch(statuses)

    def fetch_grants_to_revoke(self, include_non_pending: bool = False) -> GrantsBySite:
        statuses = [AccessStatus.REVOKE_PENDING]
        if include_non_pending:
            statuses.append(AccessStatus.REVOKED)
        return self._fetch(statuses)

    def fetch_managed_site_ids(self) -> List[int]:
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(select(websites.c.ID).order_by(websites.c.ID))
                return [int(r.ID) for r in rows]
        except SQLAlchemyError as exc:
            raise LedgerError(f"ledger: fetching managed site ids: {exc}") from exc

    # ------------------------------------------------------------------ writes

    def finalize_grant(self, grant: AccessRecord) -> bool:
        target = grant.finished_status
        stamp_column = "GrantedWhen" if target is AccessStatus.GRANTED else "RevokedWhen"
        wa = webserver_access
        stmt = (
            update(wa)
            .where(
                wa.c.ID == grant.access_id,
                wa.c.RequestStatus == int(grant.request_status),
            )
            .values({"RequestStatus": int(target), stamp_column: func.now()})
        )
        try:
            with self._engine.begin() as conn:
                rowcount = conn.execute(stmt).rowcount
        except SQLAlchemyError as exc:
            raise LedgerError(f"ledger: Finishing grant {grant.access_id}: {exc}") from exc
        if rowcount == 0:
            _log.debug(
                "ledger: grant %d no longer %s, nothing updated",
                grant.access_id,
                grant.request_status.name,
            )
        return rowcount == 1


__all__ = [
    "GrantsBySite",
    "LEDGER_SCHEMA",
    "LedgerClient",
    "SqlLedgerClient",
    "all_centres",
    "connect",
    "ledger_url",
    "metadata",
    "people_lookup",
    "webserver_access",
    "websites",
]
