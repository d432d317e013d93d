"""
Custom error classes for the Sales CRM Hub.
Structured error handling with error codes across all modules.

Hierarchy:
    HubError
    ├── ConfigError
    └── BackendError
        ├── DataFetchError
        ├── DataWriteError
        ├── IdentityError
        └── SubscriptionError
"""


class HubError(Exception):
    """Base exception for all CRM Hub errors."""

    def __init__(self, message: str, code: str = "UNKNOWN", details: dict = None):
        self.code = code
        self.details = details or {}
        super().__init__(f"[{code}] {message}")


class ConfigError(HubError):
    """Missing or invalid configuration."""

    def __init__(self, message: str, setting: str = None):
        super().__init__(
            message, code="CONFIG_ERROR", details={"setting": setting},
        )


# --- Backend Errors ---

class BackendError(HubError):
    """Base class for failures talking to the Supabase backend."""

    def __init__(self, message: str, code: str = "BACKEND_ERROR",
                 table: str = None, **kwargs):
        self.table = table
        super().__init__(message, code=code, details={"table": table, **kwargs})


class DataFetchError(BackendError):
    """A query against the backend failed."""

    def __init__(self, table: str, cause: Exception = None):
        msg = f"Failed to fetch rows from '{table}'"
        if cause:
            msg += f": {cause}"
        super().__init__(msg, code="DATA_FETCH_FAILED", table=table)


class DataWriteError(BackendError):
    """An insert, update or upsert against the backend failed."""

    def __init__(self, table: str, cause: Exception = None, match: dict = None):
        msg = f"Failed to write to '{table}'"
        if cause:
            msg += f": {cause}"
        super().__init__(msg, code="DATA_WRITE_FAILED", table=table, match=match)


class IdentityError(BackendError):
    """The authenticated user could not be resolved."""

    def __init__(self, message: str = "No authenticated user"):
        super().__init__(message, code="IDENTITY_UNRESOLVED")


class SubscriptionError(BackendError):
    """A realtime change-event subscription could not be established."""

    def __init__(self, table: str, event: str, cause: Exception = None):
        msg = f"Failed to subscribe to {event} on '{table}'"
        if cause:
            msg += f": {cause}"
        super().__init__(msg, code="SUBSCRIPTION_FAILED", table=table, event=event)
