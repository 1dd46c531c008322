"""Telegram Bot API transport used to deliver broadcast messages."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp

from .logger import get_logger

DEFAULT_API_BASE = "https://api.telegram.org"
MAX_CAPTION_LENGTH = 1024


class TelegramAPIError(RuntimeError):
    """Raised when the Bot API answers with ``ok: false``."""

    def __init__(self, error_code: Optional[int], description: str, retry_after: Optional[int] = None):
        super().__init__(f"Telegram API error {error_code}: {description}")
        self.error_code = error_code
        self.description = description
        self.retry_after = retry_after


def is_remote(path: str) -> bool:
    return path.startswith("http://") or path.startswith("https://")


class MediaPathError(ValueError):
    """Raised for a local image path that does not point inside the media root.

    Carries a 400 ``error_code`` so the delivery fails permanently.
    """

    error_code = 400


def resolve_media_path(media_root: str | Path, image: str) -> Path:
    """Resolve ``image`` against ``media_root``, refusing anything that escapes it."""
    root = Path(media_root).resolve()
    path = (root / image).resolve()
    if not path.is_relative_to(root):
        raise MediaPathError(f"Image path {image!r} is outside the media root")
    return path


class TelegramTransport:
    """Send text and photo messages to chats through the Bot API.

    Local image paths are resolved against ``media_root`` and uploaded as
    multipart form data; ``http(s)`` URLs are handed to Telegram unchanged.
    """

    def __init__(
        self,
        bot_token: Optional[str],
        *,
        api_base: str = DEFAULT_API_BASE,
        media_root: str = ".",
        timeout: float = 15.0,
        logger=None,
    ):
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self.media_root = Path(media_root)
        self.timeout = aiohttp.ClientTimeout(total=float(timeout))
        self.logger = logger or get_logger()

    def _method_url(self, method: str) -> str:
        return f"{self.api_base}/bot{self.bot_token}/{method}"

    async def send(self, address: str, message: str, attachments: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """Deliver ``message`` (plus optional images) to the chat ``address``.

        Returns ``{"message_id": str}`` for the first message Telegram created.
        """
        if not self.bot_token:
            raise RuntimeError("Telegram bot token is not configured")
        images = [path for path in (attachments or []) if path]
        if not images:
            result = await self._call("sendMessage", {"chat_id": address, "text": message})
            return {"message_id": str(result.get("message_id"))}

        caption = message if len(message) <= MAX_CAPTION_LENGTH else None
        if len(images) == 1:
            result = await self._send_photo(address, images[0], caption)
            message_id = result.get("message_id")
        else:
            results = await self._send_media_group(address, images, caption)
            message_id = results[0].get("message_id") if results else None
        if caption is None and message:
            # The media already went out; a failed follow-up must not trigger a resend
            try:
                await self._call("sendMessage", {"chat_id": address, "text": message})
            except (aiohttp.ClientError, asyncio.TimeoutError, TelegramAPIError) as exc:
                self.logger.warning("Follow-up text to %s failed after media was sent: %s", address, exc)
        return {"message_id": str(message_id)}

    async def _send_photo(self, address: str, image: str, caption: Optional[str]) -> Dict[str, Any]:
        if is_remote(image):
            data: Dict[str, Any] = {"chat_id": address, "photo": image}
            if caption:
                data["caption"] = caption
            return await self._call("sendPhoto", data)
        form = aiohttp.FormData()
        form.add_field("chat_id", str(address))
        if caption:
            form.add_field("caption", caption)
        path = resolve_media_path(self.media_root, image)
        form.add_field("photo", await asyncio.to_thread(path.read_bytes), filename=path.name)
        return await self._call("sendPhoto", form=form)

    async def _send_media_group(self, address: str, images: Sequence[str], caption: Optional[str]) -> List[Dict[str, Any]]:
        media: List[Dict[str, Any]] = []
        uploads: List[Tuple[str, Path]] = []
        for idx, image in enumerate(images):
            if is_remote(image):
                item: Dict[str, Any] = {"type": "photo", "media": image}
            else:
                field = f"photo{idx}"
                uploads.append((field, resolve_media_path(self.media_root, image)))
                item = {"type": "photo", "media": f"attach://{field}"}
            if idx == 0 and caption:
                item["caption"] = caption
            media.append(item)

        if not uploads:
            return await self._call("sendMediaGroup", {"chat_id": address, "media": media})
        form = aiohttp.FormData()
        form.add_field("chat_id", str(address))
        form.add_field("media", json.dumps(media))
        for field, path in uploads:
            form.add_field(field, await asyncio.to_thread(path.read_bytes), filename=path.name)
        return await self._call("sendMediaGroup", form=form)

    async def _call(self, method: str, data: Optional[Dict[str, Any]] = None, *, form: Optional[aiohttp.FormData] = None) -> Any:
        """POST one Bot API method and return its ``result``."""
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            if form is not None:
                request = session.post(self._method_url(method), data=form)
            else:
                request = session.post(self._method_url(method), json=data)
            async with request as resp:
                try:
                    body = await resp.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError):
                    resp.raise_for_status()
                    raise TelegramAPIError(resp.status, f"Unexpected response from {method}")
        if not isinstance(body, dict) or not body.get("ok"):
            body = body if isinstance(body, dict) else {}
            params = body.get("parameters") or {}
            raise TelegramAPIError(
                body.get("error_code"),
                body.get("description") or "Unknown Telegram API error",
                retry_after=params.get("retry_after"),
            )
        self.logger.debug("Telegram %s succeeded", method)
        return body.get("result") or {}
