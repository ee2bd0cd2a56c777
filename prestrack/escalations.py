"""Escalation records and provider fan-out.

An escalation is written once; the provider notification that follows is
best-effort.  One provider's failed send never blocks the others and never
fails the escalation itself.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from prestrack.models import Escalation, MediaDescriptor, SubjectType, utcnow
from prestrack.services.gateway import WhatsAppGateway
from prestrack.services.metrics import metrics
from prestrack.services.store import ClinicStore, new_id

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 180


def format_escalation_message(escalation: Escalation, display_name: str | None = None) -> str:
    name = display_name or "Patient"
    return (
        f"Medical escalation: {name} ({escalation.phone_e164})\n"
        f"{escalation.summary or 'Media received'}"
    )


class EscalationNotifier:
    def __init__(
        self,
        store: ClinicStore,
        gateway: WhatsAppGateway,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._clock = clock

    async def create_escalation(
        self,
        phone_e164: str,
        summary: str | None,
        subject_type: SubjectType,
        subject_id: str | None = None,
        media: MediaDescriptor | None = None,
        *,
        display_name: str | None = None,
    ) -> Escalation:
        escalation = Escalation(
            id=new_id("esc"),
            phone_e164=phone_e164,
            summary=(summary or "").strip()[:SUMMARY_MAX_CHARS],
            subject_type=subject_type,
            subject_id=subject_id,
            media=media,
            created_at=self._clock(),
        )
        await asyncio.to_thread(self._store.insert_escalation, escalation)
        logger.warning(
            "Escalation %s created for %s %s (media=%s)",
            escalation.id, subject_type, phone_e164, bool(media),
        )
        metrics.record_event("EscalationCreated", subject_type=subject_type)
        await self._record_in_conversation(escalation)
        await self.notify(escalation, display_name=display_name)
        return escalation

    async def _record_in_conversation(self, escalation: Escalation) -> None:
        """Leave a system entry in the sender's conversation log."""
        try:
            await asyncio.to_thread(
                self._store.log_message,
                escalation.phone_e164,
                "system",
                f"System escalation created ({escalation.id})",
                now=escalation.created_at,
            )
        except Exception:
            logger.exception("Escalation %s: could not write conversation entry", escalation.id)

    async def notify(self, escalation: Escalation, *, display_name: str | None = None) -> int:
        """Send the escalation to every provider with a phone; returns the success count."""
        providers = await asyncio.to_thread(self._store.list_providers)
        targets = [p for p in providers if p.phone_e164]
        if not targets:
            logger.warning("Escalation %s: no provider phone on file", escalation.id)
            return 0

        body = format_escalation_message(escalation, display_name)
        results = await asyncio.gather(
            *(self._gateway.send(p.phone_e164, body) for p in targets),
            return_exceptions=True,
        )
        delivered = 0
        for provider, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Escalation %s: notify %s (%s) failed: %s",
                    escalation.id, provider.name, provider.phone_e164, result,
                )
            else:
                delivered += 1
        logger.info("Escalation %s delivered to %d/%d providers", escalation.id, delivered, len(targets))
        return delivered
