"""Outbound WhatsApp gateway adapter.

Fire-and-forget: one POST per message, no retries.  Non-2xx answers are
logged and raised as ``GatewaySendFailure``; every caller in the core
treats sends as best-effort and catches that error.
"""

from __future__ import annotations

import logging
import re

import httpx

from prestrack.config import WHATSAPP_GATEWAY_URL, WHATSAPP_LID
from prestrack.errors import GatewaySendFailure
from prestrack.identity import is_e164
from prestrack.services.metrics import metrics

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 20.0


def format_whatsapp(text: str) -> str:
    """Strip markdown that WhatsApp renders badly."""
    text = re.sub(r"\s+$", "", str(text or ""))
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"^#+\s*", "", text, flags=re.MULTILINE)
    text = re.sub(r"\*{2,}", "*", text)
    return text.strip()


class WhatsAppGateway:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        lid: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._lid = (lid if lid is not None else WHATSAPP_LID) or None
        self._client = http_client or httpx.AsyncClient(
            base_url=(base_url or WHATSAPP_GATEWAY_URL).rstrip("/"),
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    async def send(self, phone_e164: str, message: str) -> dict:
        if not is_e164(phone_e164):
            raise GatewaySendFailure(f"invalid E.164 phone: {phone_e164!r}")
        body = (message or "").strip()
        if not body:
            raise GatewaySendFailure("empty message")

        payload = {"phoneE164": phone_e164, "message": body}
        if self._lid:
            payload["lid"] = self._lid

        async with metrics.track("gateway", "send-whatsapp"):
            try:
                response = await self._client.post("/send-whatsapp", json=payload)
            except httpx.HTTPError as exc:
                logger.error("Gateway send to %s failed: %s", phone_e164, exc)
                raise GatewaySendFailure(f"Gateway unreachable: {exc}") from exc

            if response.status_code >= 300 or response.status_code < 200:
                logger.error(
                    "Gateway send to %s rejected: %d %s",
                    phone_e164, response.status_code, response.text[:300],
                )
                raise GatewaySendFailure(
                    f"Gateway error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
        try:
            return response.json()
        except ValueError:
            return {}

    async def aclose(self) -> None:
        await self._client.aclose()
