from sitesync.ledger.client import GrantsBySite, LedgerClient, SqlLedgerClient, connect
from sitesync.ledger.models import AccessRecord, AccessStatus

__all__ = [
    "AccessRecord",
    "AccessStatus",
    "GrantsBySite",
    "LedgerClient",
    "SqlLedgerClient",
    "connect",
]
