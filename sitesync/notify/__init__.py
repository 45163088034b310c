from sitesync.notify.email import ALLOWED_TYPES, EmailOptions, EmailRenderer, EmailWorker

__all__ = ["ALLOWED_TYPES", "EmailOptions", "EmailRenderer", "EmailWorker"]
