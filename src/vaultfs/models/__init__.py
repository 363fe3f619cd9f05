"""SQLModel database models for vaultfs."""

from vaultfs.models.files import File, FileBase, FileVersion, FileVersionBase
from vaultfs.models.folders import Folder, FolderBase
from vaultfs.models.users import DEFAULT_QUOTA_BYTES, User, UserBase

__all__ = [
    "DEFAULT_QUOTA_BYTES",
    "File",
    "FileBase",
    "FileVersion",
    "FileVersionBase",
    "Folder",
    "FolderBase",
    "User",
    "UserBase",
]
