from __future__ import annotations

import enum
from dataclasses import dataclass

from sitesync.errors import TerminalGrantError


class AccessStatus(enum.IntEnum):
    # Values mirror the ledger's WebserverAccessStatii lookup table.
    GRANT_PENDING = 1
    GRANTED = 2
    REVOKE_PENDING = 3
    REVOKED = 4


_FINISHED = {
    AccessStatus.GRANT_PENDING: AccessStatus.GRANTED,
    AccessStatus.REVOKE_PENDING: AccessStatus.REVOKED,
}


@dataclass(frozen=True)
class AccessRecord:
    access_id: int
    website_id: int
    request_status: AccessStatus
    first_name: str = ""
    lookup_name: str = ""
    login: str = ""
    email: str = ""
    # Club, society or project that owns the website.
    csp: str = ""

    @property
    def is_pending(self) -> bool:
        return self.request_status in _FINISHED

    @property
    def is_grant(self) -> bool:
        return self.request_status in (AccessStatus.GRANT_PENDING, AccessStatus.GRANTED)

    @property
    def finished_status(self) -> AccessStatus:
        try:
            return _FINISHED[self.request_status]
        except KeyError:
            raise TerminalGrantError(
                f"ledger: Cannot finish grant {self.access_id}, already in finished "
                f"state {self.request_status.name}"
            ) from None


__all__ = ["AccessRecord", "AccessStatus"]
