"""GoogleDriveBackend — Drive v3 REST API via OAuth2 refresh token.

Drive addresses files by opaque ids, not by caller-chosen names, so the
backend keeps a name → id lookup (an in-process cache in front of a name
query inside the root container). The root container is resolved lazily
on first use.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import TYPE_CHECKING, Any

import httpx

from vaultfs.exceptions import ObjectNotFoundError, StorageBackendError
from vaultfs.utils import generate_storage_name

from .types import DEFAULT_CHUNK_SIZE, StoredObject, read_content

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .types import ByteRange, Content, ObjectMetadata

logger = logging.getLogger(__name__)

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
TOKEN_URL = "https://oauth2.googleapis.com/token"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

# Refresh the access token this many seconds before Google says it expires.
_TOKEN_SKEW_SECONDS = 60.0


def _quote(value: str) -> str:
    """Quote a literal for a Drive ``q`` expression."""
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _json(response: httpx.Response, action: str, storage_key: str | None = None) -> dict[str, Any]:
    """Decode a JSON object body, raising StorageBackendError if it is not one."""
    try:
        payload = response.json()
    except ValueError as e:
        raise StorageBackendError(
            f"Google Drive {action} returned a malformed response", storage_key=storage_key
        ) from e
    if not isinstance(payload, dict):
        raise StorageBackendError(
            f"Google Drive {action} returned a malformed response", storage_key=storage_key
        )
    return payload


def _field(payload: dict[str, Any], key: str, action: str, storage_key: str | None = None) -> Any:
    try:
        return payload[key]
    except (KeyError, TypeError) as e:
        raise StorageBackendError(
            f"Google Drive {action} response is missing {key!r}", storage_key=storage_key
        ) from e


class GoogleDriveBackend:
    """Google Drive storage backend.

    Objects are Drive files named ``{prefix}{uuid}{ext}`` inside one root
    folder. The storage key is that name.

    Root folder resolution order: the configured ``folder_id`` if it is
    accessible, else the oldest non-trashed folder named
    ``root_folder_name``, else a newly created one. Creation re-queries and
    converges on the oldest match so concurrent first uploads from several
    processes end up sharing one container.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        *,
        folder_id: str | None = None,
        prefix: str = "vault_",
        root_folder_name: str = "Vault Files",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.configured_folder_id = folder_id
        self.prefix = prefix
        self.root_folder_name = root_folder_name
        self.timeout = timeout
        self.chunk_size = chunk_size

        self._http = http_client
        self._owns_http = http_client is None

        self._access_token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

        self._root_folder_id: str | None = None
        self._root_lock = asyncio.Lock()

        self._ids: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    async def open(self) -> None:
        self._client()

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Auth + transport
    # ------------------------------------------------------------------

    async def _token(self, *, force: bool = False) -> str:
        async with self._token_lock:
            if (
                not force
                and self._access_token is not None
                and time.monotonic() < self._token_expires_at
            ):
                return self._access_token

            try:
                response = await self._client().post(
                    TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "refresh_token": self.refresh_token,
                        "grant_type": "refresh_token",
                    },
                )
            except httpx.HTTPError as e:
                raise StorageBackendError(f"Google OAuth token refresh failed: {e}") from e
            if response.status_code != 200:
                raise StorageBackendError(
                    f"Google OAuth token refresh failed: HTTP {response.status_code}"
                )

            payload = _json(response, "token refresh")
            self._access_token = _field(payload, "access_token", "token refresh")
            try:
                expires_in = float(payload.get("expires_in", 3600))
            except (TypeError, ValueError):
                expires_in = 3600.0
            self._token_expires_at = time.monotonic() + max(0.0, expires_in - _TOKEN_SKEW_SECONDS)
            return self._access_token

    async def _request(
        self,
        method: str,
        url: str,
        *,
        stream: bool = False,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send an authorized request, refreshing the token once on 401."""
        client = self._client()
        force = False
        for _ in range(2):
            token = await self._token(force=force)
            request = client.build_request(
                method,
                url,
                headers={**(headers or {}), "Authorization": f"Bearer {token}"},
                **kwargs,
            )
            try:
                response = await client.send(request, stream=stream)
            except httpx.HTTPError as e:
                raise StorageBackendError(f"Google Drive {method} {url} failed: {e}") from e
            if response.status_code != 401:
                return response
            if stream:
                await response.aclose()
            force = True
        return response

    @staticmethod
    def _check(response: httpx.Response, action: str, storage_key: str | None = None) -> None:
        if response.status_code >= 400:
            raise StorageBackendError(
                f"Google Drive {action} failed: HTTP {response.status_code}",
                storage_key=storage_key,
            )

    # ------------------------------------------------------------------
    # Root container + name lookup
    # ------------------------------------------------------------------

    async def _find_folders_by_name(self) -> list[dict[str, Any]]:
        query = (
            f"name={_quote(self.root_folder_name)} and mimeType={_quote(FOLDER_MIME_TYPE)} "
            "and trashed=false"
        )
        response = await self._request(
            "GET",
            f"{DRIVE_API_URL}/files",
            params={
                "q": query,
                "fields": "files(id,name)",
                "orderBy": "createdTime",
                "spaces": "drive",
            },
        )
        self._check(response, "folder lookup")
        return _json(response, "folder lookup").get("files", [])

    async def root_folder_id(self) -> str:
        """Resolve (and cache) the id of the root container."""
        if self._root_folder_id is not None:
            return self._root_folder_id

        async with self._root_lock:
            if self._root_folder_id is not None:
                return self._root_folder_id

            if self.configured_folder_id:
                response = await self._request(
                    "GET",
                    f"{DRIVE_API_URL}/files/{self.configured_folder_id}",
                    params={"fields": "id,name,trashed"},
                )
                if response.status_code == 200 and not _json(response, "folder get").get("trashed"):
                    self._root_folder_id = self.configured_folder_id
                    logger.info("Using configured Drive folder %s", self._root_folder_id)
                    return self._root_folder_id
                logger.warning(
                    "Configured Drive folder %s is inaccessible (HTTP %d); "
                    "falling back to %r",
                    self.configured_folder_id,
                    response.status_code,
                    self.root_folder_name,
                )

            existing = await self._find_folders_by_name()
            if existing:
                self._root_folder_id = _field(existing[0], "id", "folder lookup")
                logger.info("Found Drive folder %r: %s", self.root_folder_name, self._root_folder_id)
                return self._root_folder_id

            response = await self._request(
                "POST",
                f"{DRIVE_API_URL}/files",
                params={"fields": "id,name"},
                json={"name": self.root_folder_name, "mimeType": FOLDER_MIME_TYPE},
            )
            self._check(response, "folder create")
            created_id = _field(_json(response, "folder create"), "id", "folder create")

            # Another process may have created one concurrently; converge on the oldest.
            existing = await self._find_folders_by_name()
            self._root_folder_id = (
                _field(existing[0], "id", "folder lookup") if existing else created_id
            )
            logger.info("Created Drive folder %r: %s", self.root_folder_name, self._root_folder_id)
            return self._root_folder_id

    async def _lookup_id(self, storage_key: str) -> str | None:
        cached = self._ids.get(storage_key)
        if cached is not None:
            return cached
        return await self._query_id(storage_key)

    async def _query_id(self, storage_key: str) -> str | None:
        """Ask Drive for the key's file id and refresh the cache entry."""
        folder_id = await self.root_folder_id()
        response = await self._request(
            "GET",
            f"{DRIVE_API_URL}/files",
            params={
                "q": f"name={_quote(storage_key)} and {_quote(folder_id)} in parents and trashed=false",
                "fields": "files(id,name,size)",
                "spaces": "drive",
            },
        )
        self._check(response, "lookup", storage_key)
        files = _json(response, "lookup", storage_key).get("files", [])
        if not files:
            self._ids.pop(storage_key, None)
            return None
        file_id = _field(files[0], "id", "lookup", storage_key)
        self._ids[storage_key] = file_id
        return file_id

    async def _require_id(self, storage_key: str) -> str:
        file_id = await self._lookup_id(storage_key)
        if file_id is None:
            raise ObjectNotFoundError(storage_key)
        return file_id

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def save(self, content: Content, metadata: ObjectMetadata) -> StoredObject:
        storage_key = generate_storage_name(metadata.original_name, self.prefix)
        folder_id = await self.root_folder_id()
        data = await asyncio.to_thread(read_content, content)

        boundary = uuid.uuid4().hex
        file_meta = json.dumps(
            {"name": storage_key, "parents": [folder_id], "mimeType": metadata.mime_type}
        )
        body = (
            (
                f"--{boundary}\r\n"
                "Content-Type: application/json; charset=UTF-8\r\n\r\n"
                f"{file_meta}\r\n"
                f"--{boundary}\r\n"
                f"Content-Type: {metadata.mime_type}\r\n\r\n"
            ).encode()
            + data
            + f"\r\n--{boundary}--\r\n".encode()
        )

        response = await self._request(
            "POST",
            f"{DRIVE_UPLOAD_URL}/files",
            params={"uploadType": "multipart", "fields": "id,name"},
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            content=body,
        )
        self._check(response, "upload", storage_key)
        payload = _json(response, "upload", storage_key)
        self._ids[storage_key] = _field(payload, "id", "upload", storage_key)

        logger.debug("Uploaded %s (%d bytes) to Drive", storage_key, len(data))
        return StoredObject(storage_key=storage_key, size=len(data))

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def read_all(self, storage_key: str) -> bytes:
        file_id = await self._require_id(storage_key)
        response = await self._request(
            "GET", f"{DRIVE_API_URL}/files/{file_id}", params={"alt": "media"}
        )
        if response.status_code == 404:
            self._ids.pop(storage_key, None)
            raise ObjectNotFoundError(storage_key)
        self._check(response, "download", storage_key)
        return response.content

    async def read_stream(
        self,
        storage_key: str,
        byte_range: ByteRange | None = None,
    ) -> AsyncIterator[bytes]:
        file_id = await self._require_id(storage_key)
        headers = {"Range": byte_range.as_header()} if byte_range is not None else None
        response = await self._request(
            "GET",
            f"{DRIVE_API_URL}/files/{file_id}",
            params={"alt": "media"},
            headers=headers,
            stream=True,
        )
        if response.status_code == 404:
            await response.aclose()
            self._ids.pop(storage_key, None)
            raise ObjectNotFoundError(storage_key)
        if response.status_code == 416:
            await response.aclose()
            return _empty()
        if response.status_code >= 400:
            await response.aclose()
            self._check(response, "download", storage_key)
        return self._iter_response(response, storage_key)

    async def _iter_response(
        self, response: httpx.Response, storage_key: str
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes(self.chunk_size):
                yield chunk
        except httpx.HTTPError as e:
            raise StorageBackendError(
                f"Google Drive download failed: {e}", storage_key=storage_key
            ) from e
        finally:
            await response.aclose()

    async def exists(self, storage_key: str) -> bool:
        # The id cache can outlive out-of-band deletes, so always ask Drive.
        return await self._query_id(storage_key) is not None

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, storage_key: str) -> None:
        """Delete the Drive file. A missing file is not an error."""
        file_id = await self._lookup_id(storage_key)
        if file_id is None:
            return
        response = await self._request("DELETE", f"{DRIVE_API_URL}/files/{file_id}")
        self._ids.pop(storage_key, None)
        if response.status_code == 404:
            return
        self._check(response, "delete", storage_key)
        logger.debug("Deleted %s from Drive", storage_key)

    def public_url(self, storage_key: str) -> str | None:
        """Drive files are served through the API; there is no stable public URL."""
        return None


async def _empty() -> AsyncIterator[bytes]:
    return
    yield
