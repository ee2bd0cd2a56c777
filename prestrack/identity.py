"""Scope resolution: who is behind an inbound WhatsApp number.

There is no session protocol on the messaging channel, so the scope is
re-derived from the phone number on every message:

1. a provider with that phone on file     → ``provider``
2. a patient-linked WhatsApp channel      → ``patient``
3. otherwise a visitor, created on first contact (find-or-create)
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from datetime import datetime

from prestrack.errors import InvalidIdentity
from prestrack.models import Scope, ScopeResolution, utcnow
from prestrack.services.store import ClinicStore

logger = logging.getLogger(__name__)

_E164_RE = re.compile(r"^\+\d{6,15}$")
_DIGITS_RE = re.compile(r"^\d{6,15}$")


def is_e164(value: str | None) -> bool:
    return bool(value) and bool(_E164_RE.match(value))


def to_e164(raw: str | None) -> str:
    """Normalize a phone or gateway chat id to E.164.

    A trailing ``@...`` suffix (``23276123456@c.us``) is dropped, then every
    non-digit.  Anything left that is not 6–15 digits is rejected.
    """
    if not raw:
        raise InvalidIdentity("empty phone / chat id")
    local = re.sub(r"@.*$", "", str(raw))
    digits = re.sub(r"\D", "", local)
    if not _DIGITS_RE.match(digits):
        raise InvalidIdentity(f"not an E.164-like number: {raw!r}")
    return f"+{digits}"


class ScopeResolver:
    def __init__(self, store: ClinicStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    async def resolve(self, raw_phone: str) -> ScopeResolution:
        phone = to_e164(raw_phone)

        provider = await asyncio.to_thread(self._store.find_provider_by_phone, phone)
        if provider is not None:
            return ScopeResolution(
                scope=Scope.PROVIDER, phone_e164=phone,
                subject_id=provider.id, display_name=provider.name,
            )

        patient = await asyncio.to_thread(self._store.find_patient_by_phone, phone)
        if patient is not None:
            patient_id, name = patient
            return ScopeResolution(
                scope=Scope.PATIENT, phone_e164=phone,
                subject_id=patient_id, display_name=name,
            )

        visitor, created = await asyncio.to_thread(
            self._store.find_or_create_visitor, phone, now=self._clock(),
        )
        if created:
            logger.info("New visitor %s for %s", visitor.id, phone)
        return ScopeResolution(
            scope=Scope.VISITOR, phone_e164=phone,
            subject_id=visitor.id, display_name=visitor.display_name,
        )

    async def set_visitor_name(self, visitor_id: str, name: str) -> None:
        await asyncio.to_thread(self._store.set_visitor_name, visitor_id, name.strip())
        logger.info("Visitor %s onboarded as %r", visitor_id, name)
