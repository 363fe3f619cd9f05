"""Select the single active storage backend from configuration."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .gdrive import GoogleDriveBackend
from .local_disk import LocalDiskBackend
from .s3 import S3Backend

if TYPE_CHECKING:
    from vaultfs.config import Settings

    from .protocol import StorageBackend

logger = logging.getLogger(__name__)


def create_backend(settings: Settings) -> StorageBackend:
    """Build the backend named by ``settings.storage_provider``.

    Required credentials are validated by ``Settings`` itself, so the
    asserts below only narrow optional types.
    """
    provider = settings.storage_provider
    if provider == "s3":
        assert settings.s3_bucket is not None
        backend: StorageBackend = S3Backend(
            settings.s3_bucket,
            settings.s3_region,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
            prefix=settings.s3_prefix,
            endpoint_url=settings.s3_endpoint_url,
        )
    elif provider == "gdrive":
        assert settings.gdrive_client_id is not None
        assert settings.gdrive_client_secret is not None
        assert settings.gdrive_refresh_token is not None
        backend = GoogleDriveBackend(
            settings.gdrive_client_id,
            settings.gdrive_client_secret,
            settings.gdrive_refresh_token,
            folder_id=settings.gdrive_folder_id,
            prefix=settings.gdrive_prefix,
            root_folder_name=settings.gdrive_root_folder_name,
        )
    elif provider == "local":
        backend = LocalDiskBackend(settings.upload_dir)
    else:
        raise ValueError(f"Unknown storage provider: {provider!r}")

    logger.info("Using %s storage backend", provider)
    return backend
