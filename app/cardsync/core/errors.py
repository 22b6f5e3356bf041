from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


class RpcError(SyncError):
    def __init__(self, message: str, hint: str = ""):
        super().__init__(message)
        self.hint = hint


class NotRunningError(RpcError):
    """The peer refused the connection (application closed or add-on missing)."""


class NetworkError(RpcError):
    """Timeout, unreachable host or a non-2xx HTTP status."""


class ProtocolError(RpcError):
    """Unsupported action or a response that does not match the expected shape."""


class RemoteError(RpcError):
    """The peer accepted the call and reported an application error."""

    @property
    def is_duplicate(self) -> bool:
        return "duplicate" in str(self).lower()


class ConversionError(SyncError):
    pass


class TemplateMappingLocked(SyncError):
    pass


class BackupError(SyncError):
    pass


class SyncBusyError(SyncError):
    pass


class SyncOrchestrationError(SyncError):
    def __init__(self, message: str, backup_id: str | None = None, restored: bool = False):
        super().__init__(message)
        self.backup_id = backup_id
        self.restored = restored


TRANSPORT_ERRORS = (NotRunningError, NetworkError)
