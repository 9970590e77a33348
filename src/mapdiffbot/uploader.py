from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from pathlib import Path
import logging
from typing import cast

import httpx

from mapdiffbot.observability import log_event


LOGGER = logging.getLogger("mapdiffbot.uploader")
IMGUR_UPLOAD_URL = "https://api.imgur.com/3/image"


class UploadError(RuntimeError):
    """An image could not be uploaded."""


class FileUploader(ABC):
    @abstractmethod
    async def upload(self, path: Path, credentials: str) -> str:
        """Upload the file at ``path`` and return its public URL.

        ``credentials`` is formatted as ``"<client id>/<client secret>"``.
        """


def split_credentials(credentials: str) -> tuple[str, str]:
    client_id, sep, client_secret = credentials.partition("/")
    if not sep or not client_id:
        raise UploadError("Upload credentials must be formatted as '<id>/<secret>'")
    return client_id, client_secret


class ImgurUploader(FileUploader):
    def __init__(
        self,
        *,
        upload_url: str = IMGUR_UPLOAD_URL,
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._upload_url = upload_url
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def upload(self, path: Path, credentials: str) -> str:
        client_id, _client_secret = split_credentials(credentials)
        content = await asyncio.to_thread(path.read_bytes)
        log_event(LOGGER, "upload_started", path=path, size_bytes=len(content))
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    self._upload_url,
                    headers={"Authorization": f"Client-ID {client_id}"},
                    files={"image": (path.name, content, "image/png")},
                    data={"type": "file", "name": path.name},
                )
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            log_event(
                LOGGER,
                "upload_failed",
                path=path,
                error_type=type(exc).__name__,
            )
            raise UploadError(f"Uploading {path} failed: {exc}") from exc

        link = _extract_link(payload)
        if link is None:
            log_event(LOGGER, "upload_failed", path=path, error_type="missing_link")
            raise UploadError(f"Upload response for {path} did not contain an image link")
        log_event(LOGGER, "upload_finished", path=path, url=link)
        return link


def _extract_link(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return None
    data = cast(dict[str, object], payload).get("data")
    if not isinstance(data, dict):
        return None
    link = cast(dict[str, object], data).get("link")
    if isinstance(link, str) and link:
        return link
    return None
