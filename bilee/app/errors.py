"""
Error kinds raised by the settlement core.

Each carries a short machine-readable `reason` (e.g. "missing_signature") and the
HTTP status the API maps it to. Nothing here is retried inside the core: callers
(the API client, the outbox worker, the next scheduled run) decide whether to retry.
"""


class SettlementError(Exception):
    status_code = 500

    def __init__(self, reason: str, detail: str | None = None):
        super().__init__(detail or reason)
        self.reason = reason
        self.detail = detail or reason


class ValidationError(SettlementError):
    status_code = 400


class NotFoundError(SettlementError):
    status_code = 404


class AuthenticationError(SettlementError):
    status_code = 401


class ReconciliationError(SettlementError):
    # Indicates a data inconsistency that needs investigation, never auto-retried.
    status_code = 400


class PersistenceError(SettlementError):
    status_code = 503

    def __init__(self, reason: str = "store_unavailable", detail: str | None = None):
        super().__init__(reason, detail)
