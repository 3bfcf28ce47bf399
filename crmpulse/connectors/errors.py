"""
Error taxonomy for CRM sync

Recoverable at a single window / association batch:
    WindowFetchFailure, AssociationBatchFailure
Fatal for the run:
    AuthFailure, TransientRateLimit (after retries), ApiError, TransportError
    (unless raised inside a window or batch), SnapshotError, ConfigurationError
"""
from typing import Any, List, Optional


class CrmSyncError(Exception):
    """Base class for every error raised by the sync pipeline"""


class ConfigurationError(CrmSyncError):
    """Missing token, unknown client, malformed config file"""


class SnapshotError(CrmSyncError):
    """Persisted snapshot could not be read or written"""


class ApiError(CrmSyncError):
    """Non-success HTTP status from the CRM API"""

    def __init__(self, status: int, body: Any, message: Optional[str] = None):
        self.status = status
        self.body = body
        super().__init__(message or f"CRM API {status}: {_truncate(body)}")


class TransientRateLimit(ApiError):
    """HTTP 429 that survived every retry"""

    def __init__(self, body: Any, attempts: int):
        self.attempts = attempts
        super().__init__(
            429,
            body,
            f"CRM API rate limit (429) persisted after {attempts} retries: {_truncate(body)}",
        )


class AuthFailure(ApiError):
    """HTTP 401/403 - never retried"""

    def __init__(self, status: int, body: Any):
        super().__init__(
            status,
            body,
            f"CRM API rejected the credentials ({status}). Check that the access token "
            f"is valid and that the private app grants the required scopes: {_truncate(body)}",
        )


class TransportError(CrmSyncError):
    """Network-level failure: timeout, DNS, connection reset"""


class WindowFetchFailure(CrmSyncError):
    """One date window could not be fetched; the run continues without it"""

    def __init__(self, entity_type: str, window: Any, cause: Exception):
        self.entity_type = entity_type
        self.window = window
        self.cause = cause
        super().__init__(f"{entity_type} window {window} failed: {cause}")


class AssociationBatchFailure(CrmSyncError):
    """One association batch could not be resolved; its ids fall back to a default"""

    def __init__(self, batch_index: int, ids: List[str], cause: Exception):
        self.batch_index = batch_index
        self.ids = ids
        self.cause = cause
        super().__init__(f"Association batch {batch_index} ({len(ids)} ids) failed: {cause}")


def _truncate(body: Any, limit: int = 500) -> str:
    text = body if isinstance(body, str) else repr(body)
    return text if len(text) <= limit else text[:limit] + "..."
