"""vaultfs: multi-tenant file storage with versions, folders, trash, and quotas.

Metadata lives in one SQL database; bytes live in exactly one swappable
storage backend (local disk, S3-compatible object storage, or Google Drive).
"""

__version__ = "0.1.0"

from vaultfs._vault import VaultAsync
from vaultfs.config import Settings, get_settings
from vaultfs.exceptions import (
    ConflictError,
    InvalidOperationError,
    NotFoundError,
    ObjectNotFoundError,
    QuotaExceededError,
    StorageBackendError,
    VaultError,
)
from vaultfs.storage import (
    ByteRange,
    GoogleDriveBackend,
    LocalDiskBackend,
    ObjectMetadata,
    S3Backend,
    StorageBackend,
    StoredObject,
    create_backend,
)
from vaultfs.types import (
    FileInfo,
    FilePage,
    FileStream,
    FolderContents,
    FolderInfo,
    ItemType,
    PurgeResult,
    StorageInfo,
    TrashEntry,
    VersionInfo,
)

__all__ = [
    "ByteRange",
    "ConflictError",
    "FileInfo",
    "FilePage",
    "FileStream",
    "FolderContents",
    "FolderInfo",
    "GoogleDriveBackend",
    "InvalidOperationError",
    "ItemType",
    "LocalDiskBackend",
    "NotFoundError",
    "ObjectMetadata",
    "ObjectNotFoundError",
    "PurgeResult",
    "QuotaExceededError",
    "S3Backend",
    "Settings",
    "StorageBackend",
    "StorageBackendError",
    "StorageInfo",
    "StoredObject",
    "TrashEntry",
    "VaultAsync",
    "VaultError",
    "VersionInfo",
    "__version__",
    "create_backend",
    "get_settings",
]
