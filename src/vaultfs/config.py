"""Runtime configuration loaded from ``VAULT_*`` environment variables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from vaultfs.models.users import DEFAULT_QUOTA_BYTES

StorageProvider = Literal["local", "s3", "gdrive"]


class Settings(BaseSettings):
    """All knobs for a vaultfs deployment.

    Exactly one storage backend is active, chosen by ``storage_provider``.
    Switching backend is a configuration change only.
    """

    # Metadata store
    database_url: str = "sqlite+aiosqlite:///./vault.db"
    database_echo: bool = False

    # Storage selection
    storage_provider: StorageProvider = "local"
    upload_dir: Path = Path("./uploads")
    max_file_size: int = Field(default=50 * 1024 * 1024, gt=0)

    # Ledger / lifecycle
    default_quota_bytes: int = Field(default=DEFAULT_QUOTA_BYTES, ge=0)
    trash_retention_days: int = Field(default=30, ge=0)

    # S3-compatible object storage
    s3_bucket: str | None = None
    s3_region: str | None = None
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    s3_prefix: str = "uploads/"
    s3_endpoint_url: str | None = None

    # Google Drive
    gdrive_client_id: str | None = None
    gdrive_client_secret: str | None = None
    gdrive_refresh_token: str | None = None
    gdrive_folder_id: str | None = None
    gdrive_prefix: str = "vault_"
    gdrive_root_folder_name: str = "Vault Files"

    model_config = SettingsConfigDict(
        env_prefix="VAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_provider_credentials(self) -> Settings:
        if self.storage_provider == "s3":
            missing = [
                name for name in ("s3_bucket", "s3_region") if not getattr(self, name)
            ]
        elif self.storage_provider == "gdrive":
            missing = [
                name
                for name in (
                    "gdrive_client_id",
                    "gdrive_client_secret",
                    "gdrive_refresh_token",
                )
                if not getattr(self, name)
            ]
        else:
            missing = []
        if missing:
            env_names = ", ".join(f"VAULT_{name.upper()}" for name in missing)
            raise ValueError(
                f"Missing settings for storage provider {self.storage_provider!r}: {env_names}"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
