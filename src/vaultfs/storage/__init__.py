"""Physical byte stores behind one async protocol."""

from vaultfs.storage.factory import create_backend
from vaultfs.storage.gdrive import GoogleDriveBackend
from vaultfs.storage.local_disk import LocalDiskBackend
from vaultfs.storage.protocol import StorageBackend
from vaultfs.storage.s3 import S3Backend
from vaultfs.storage.types import ByteRange, Content, ObjectMetadata, StoredObject

__all__ = [
    "ByteRange",
    "Content",
    "GoogleDriveBackend",
    "LocalDiskBackend",
    "ObjectMetadata",
    "S3Backend",
    "StorageBackend",
    "StoredObject",
    "create_backend",
]
