"""Metadata services: quota ledger, files, folders, and trash."""

from vaultfs.services.files import FileService
from vaultfs.services.folders import FolderService
from vaultfs.services.quota import QuotaService
from vaultfs.services.trash import TrashService

__all__ = [
    "FileService",
    "FolderService",
    "QuotaService",
    "TrashService",
]
