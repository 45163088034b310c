from sitesync.services.maintenance import reset_admins, reset_expiry
from sitesync.services.sync import SyncOptions, SyncOrchestrator, SyncReport

__all__ = ["SyncOptions", "SyncOrchestrator", "SyncReport", "reset_admins", "reset_expiry"]
