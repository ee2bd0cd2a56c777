"""Short-lived (30 minute) scheduling sessions.

A session captures a requester's intent to meet a provider and moves
``selecting_time → awaiting_approval → completed``.  Expiry is checked on
every read; an expired session is treated exactly like a missing one.
New sessions simply shadow older ones for the same requester.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from prestrack.config import CLINIC_TIMEZONE
from prestrack.errors import ConcurrentModification, NoProviderAvailable, SessionExpired
from prestrack.models import (
    SESSION_TTL,
    ApprovalRequestInput,
    PendingMeetingRequest,
    Provider,
    SchedulingSession,
    SessionStatus,
    SubjectType,
    utcnow,
)
from prestrack.scheduling.timeparse import parse_preferred_time
from prestrack.services.store import ClinicStore, new_id

if TYPE_CHECKING:
    from prestrack.scheduling.approvals import ProviderApprovalWorkflow

logger = logging.getLogger(__name__)

_HONORIFICS_RE = re.compile(r"\b(dr|doctor|nurse|midwife|mr|mrs|ms|miss|prof)\b\.?", re.IGNORECASE)


def _bare_name(name: str) -> str:
    return re.sub(r"\s+", " ", _HONORIFICS_RE.sub(" ", name or "")).strip().lower()


def match_provider(providers: list[Provider], name: str | None) -> Provider | None:
    """Fuzzy provider lookup: case-insensitive substring, honorifics ignored.

    Falls back to the first provider when *name* is empty or matches nobody.
    """
    if not providers:
        return None
    wanted = _bare_name(name or "")
    if wanted:
        for provider in providers:
            have = _bare_name(provider.name)
            if have and (wanted in have or have in wanted):
                return provider
        tokens = [t for t in wanted.split() if len(t) >= 3]
        for provider in providers:
            have = _bare_name(provider.name).split()
            if any(t in have for t in tokens):
                return provider
        logger.info("No provider matches %r, falling back to %s", name, providers[0].name)
    return providers[0]


def finish_session(store: ClinicStore, session_id: str | None) -> SchedulingSession | None:
    """Mark a session ``completed`` once its meeting request is terminal.

    Missing sessions are ignored; a lost compare-and-set is retried once
    against the fresh row.
    """
    if not session_id:
        return None
    for _ in range(2):
        session = store.get_session(session_id)
        if session is None or session.status is SessionStatus.COMPLETED:
            return session
        try:
            return store.update_session(
                session.model_copy(update={"status": SessionStatus.COMPLETED}),
            )
        except ConcurrentModification:
            logger.debug("Session %s changed while completing, retrying", session_id)
    logger.warning("Could not complete session %s after retry", session_id)
    return None


class SchedulingSessionManager:
    def __init__(
        self,
        store: ClinicStore,
        approvals: ProviderApprovalWorkflow,
        *,
        clock: Callable[[], datetime] = utcnow,
        timezone: str = CLINIC_TIMEZONE,
    ) -> None:
        self._store = store
        self._approvals = approvals
        self._clock = clock
        self._timezone = timezone

    async def start(
        self,
        requester_id: str,
        subject_type: SubjectType = "patient",
        provider_name: str | None = None,
    ) -> SchedulingSession:
        providers = await asyncio.to_thread(self._store.list_providers)
        provider = match_provider(providers, provider_name)
        if provider is None:
            raise NoProviderAvailable("No healthcare provider available")

        now = self._clock()
        session = SchedulingSession(
            id=new_id("session"),
            patient_id=requester_id,
            subject_type=subject_type,
            provider_id=provider.id,
            created_at=now,
            expires_at=now + SESSION_TTL,
        )
        await asyncio.to_thread(self._store.insert_session, session)
        logger.info(
            "Scheduling session %s started for %s %s with %s",
            session.id, subject_type, requester_id, provider.name,
        )
        return session

    async def get(self, session_id: str) -> SchedulingSession | None:
        session = await asyncio.to_thread(self._store.get_session, session_id)
        if session is None or session.is_expired(self._clock()):
            return None
        return session

    async def active_for(self, requester_id: str) -> SchedulingSession | None:
        """The requester's most recent session, unless expired or completed."""
        session = await asyncio.to_thread(self._store.latest_session_for, requester_id)
        if session is None or session.is_expired(self._clock()):
            return None
        if session.status is SessionStatus.COMPLETED:
            return None
        return session

    async def submit_time(
        self,
        session_id: str,
        raw_time_text: str | None,
        reason: str | None = None,
        *,
        patient_phone: str,
        patient_name: str,
    ) -> tuple[SchedulingSession, PendingMeetingRequest]:
        """Fix the requested time and hand the request to the provider.

        Raises ``SessionExpired`` when the session is missing, past its
        deadline, or no longer selecting a time.
        """
        session = await self.get(session_id)
        if session is None or session.status is not SessionStatus.SELECTING_TIME:
            raise SessionExpired(session_id)

        provider = await asyncio.to_thread(self._store.get_provider, session.provider_id)
        if provider is None:
            raise NoProviderAvailable(f"Provider {session.provider_id} no longer exists")

        requested = parse_preferred_time(raw_time_text, self._clock(), self._timezone)

        # Claim the session first so a concurrent submit cannot create a second request
        try:
            claimed = await asyncio.to_thread(
                self._store.update_session,
                session.model_copy(update={
                    "status": SessionStatus.AWAITING_APPROVAL,
                    "selected_time": requested,
                    "reason": reason,
                }),
            )
        except ConcurrentModification as exc:
            raise SessionExpired(session_id) from exc

        request = await self._approvals.create(ApprovalRequestInput(
            patient_phone=patient_phone,
            patient_name=patient_name,
            provider_id=provider.id,
            provider_name=provider.name,
            provider_phone=provider.phone_e164 or "",
            provider_email=provider.email,
            requested_time=requested,
            reason=reason,
            session_id=claimed.id,
        ))

        linked = claimed.model_copy(update={"approval_request_id": request.id})
        try:
            linked = await asyncio.to_thread(self._store.update_session, linked)
        except ConcurrentModification:
            logger.warning("Session %s changed before linking request %s", session_id, request.id)
        logger.info(
            "Session %s awaiting approval: request %s for %s",
            session_id, request.id, requested.isoformat(),
        )
        return linked, request

    async def complete(self, session_id: str) -> SchedulingSession | None:
        return await asyncio.to_thread(finish_session, self._store, session_id)
