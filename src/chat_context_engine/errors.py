from __future__ import annotations

from enum import Enum


class EngineError(Exception):
    """Base class for every error raised by the engine."""


class StorageErrorCode(str, Enum):
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_DATA = "INVALID_DATA"
    UNAVAILABLE = "UNAVAILABLE"
    UNKNOWN = "UNKNOWN"


class StorageError(EngineError):
    def __init__(
        self,
        message: str,
        code: StorageErrorCode = StorageErrorCode.UNKNOWN,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.cause = cause

    @classmethod
    def quota_exceeded(cls, cause: BaseException | None = None) -> StorageQuotaExceeded:
        return StorageQuotaExceeded(
            "Storage quota exceeded. Please free up space or delete old sessions.",
            cause=cause,
        )

    @classmethod
    def not_found(cls, item_type: str, item_id: str) -> StorageError:
        return cls(f'{item_type} with ID "{item_id}" not found', StorageErrorCode.NOT_FOUND)

    @classmethod
    def invalid_data(cls, message: str, cause: BaseException | None = None) -> StorageError:
        return cls(f"Invalid data: {message}", StorageErrorCode.INVALID_DATA, cause)

    @classmethod
    def unavailable(cls, cause: BaseException | None = None) -> StorageError:
        return cls("Storage is not available", StorageErrorCode.UNAVAILABLE, cause)


class StorageQuotaExceeded(StorageError):
    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message, StorageErrorCode.QUOTA_EXCEEDED, cause)


class PersistenceWriteFailure(EngineError):
    def __init__(self, session_id: str, cause: BaseException | None = None):
        super().__init__(f"Failed to persist session {session_id}: {cause}")
        self.session_id = session_id
        self.cause = cause


class SummarizationFailure(EngineError):
    pass


class CompletionTimeoutError(EngineError):
    def __init__(self, timeout_seconds: float):
        super().__init__(f"Completion did not finish within {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class ShareError(EngineError):
    def __init__(self, message: str, share_id: str | None = None):
        super().__init__(message)
        self.share_id = share_id


class ShareNotFound(ShareError):
    def __init__(self, share_id: str):
        super().__init__(f"Share {share_id!r} not found", share_id)


class ShareExpired(ShareError):
    def __init__(self, share_id: str):
        super().__init__(f"Share {share_id!r} has expired", share_id)


class ShareRevoked(ShareError):
    def __init__(self, share_id: str):
        super().__init__(f"Share {share_id!r} has been revoked", share_id)


class ShareRateLimitExceeded(ShareError):
    def __init__(self, tenant_id: str, limit: int):
        super().__init__(f"Rate limit exceeded: more than {limit} shares per hour for tenant {tenant_id!r}")
        self.tenant_id = tenant_id
        self.limit = limit


class ShareForbidden(ShareError):
    def __init__(self, share_id: str, tenant_id: str):
        super().__init__(f"Tenant {tenant_id!r} may not modify share {share_id!r}", share_id)
        self.tenant_id = tenant_id
