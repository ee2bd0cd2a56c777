"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from prestrack.models import MediaDescriptor

_CHAT_ID_PATHS = (
    ("chatId",), ("from",), ("message", "from"), ("contact",),
    ("payload", "from"), ("payload", "chatId"), ("media", "from"),
)
_TEXT_PATHS = (
    ("text",), ("message",), ("message", "text"), ("message", "body"),
    ("body",), ("payload", "text"), ("payload", "body"), ("media", "body"),
)
_MEDIA_PATHS = (("payload", "media"), ("media",))


def _dig(body: dict[str, Any], path: tuple[str, ...]) -> Any:
    node: Any = body
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _first_string(body: dict[str, Any], paths: tuple[tuple[str, ...], ...]) -> str:
    for path in paths:
        value = _dig(body, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _media(body: dict[str, Any]) -> MediaDescriptor | None:
    for path in _MEDIA_PATHS:
        raw = _dig(body, path)
        if not isinstance(raw, dict):
            continue
        if not any(raw.get(k) for k in ("mimetype", "url", "filename")):
            continue
        try:
            size = int(raw["size"]) if raw.get("size") is not None else None
        except (TypeError, ValueError):
            size = None
        return MediaDescriptor(
            mime_type=raw.get("mimetype"),
            url=raw.get("url"),
            filename=raw.get("filename"),
            size_bytes=size,
        )
    return None


class InboundMessage(BaseModel):
    """One gateway webhook delivery, whatever shape the gateway used."""

    chat_id: str = ""
    text: str = ""
    media: MediaDescriptor | None = None

    @classmethod
    def from_payload(cls, body: dict[str, Any]) -> InboundMessage:
        return cls(
            chat_id=_first_string(body, _CHAT_ID_PATHS),
            text=_first_string(body, _TEXT_PATHS),
            media=_media(body),
        )


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the gateway."""

    status: str = Field(..., description="ok, ignored_invalid_chatId or ignored_empty")
    answer: str | None = Field(default=None, description="The reply sent back to the sender")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "prestrack-agent"
    schema_version: int | None = None
    sweeper_running: bool | None = None
