"""Custom exception hierarchy for the vaultfs storage layer."""


class VaultError(Exception):
    """Base exception for all vaultfs errors."""


class NotFoundError(VaultError):
    """Raised when a user, file, folder, or version does not exist."""


class ObjectNotFoundError(NotFoundError):
    """Raised when a storage key has no physical object behind it."""

    def __init__(self, storage_key: str) -> None:
        self.storage_key = storage_key
        super().__init__(f"Object not found in storage: {storage_key}")


class QuotaExceededError(VaultError):
    """Raised when a write would push a user past their storage quota."""

    def __init__(
        self,
        quota_bytes: int,
        used_bytes: int,
        required_bytes: int,
    ) -> None:
        self.quota_bytes = quota_bytes
        self.used_bytes = used_bytes
        self.required_bytes = required_bytes

        available = max(0, quota_bytes - used_bytes)
        super().__init__(
            f"Quota exceeded: need {required_bytes} bytes, "
            f"only {available} bytes available "
            f"(quota: {quota_bytes}, used: {used_bytes}); nothing was stored"
        )


class ConflictError(VaultError):
    """Raised on duplicate sibling names or a lost concurrent update."""


class InvalidOperationError(VaultError):
    """Raised when an operation is structurally invalid (e.g. move into a descendant)."""


class StorageBackendError(VaultError):
    """Raised on physical backend I/O failures other than a missing object."""

    def __init__(self, message: str, *, storage_key: str | None = None) -> None:
        self.storage_key = storage_key
        super().__init__(message)
