"""Provider approval workflow for meeting requests.

A request moves one way, ``pending → confirmed | declined | expired``,
and is kept forever as an audit record.  Every transition is a
compare-and-set on the row's ``version`` so two racing provider replies
can never both win.

Notifications are best-effort: each send is attempted independently and
its outcome recorded in ``delivery``.  The calendar call is not: if the
Meet event cannot be created the confirm transition aborts and the request
stays ``pending``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Literal

from prestrack.config import CLINIC_TIMEZONE
from prestrack.errors import (
    ApprovalAlreadyResolved,
    ApprovalExpired,
    ApprovalNotFound,
    ApprovalUnauthorized,
    CalendarAPIError,
    ConcurrentModification,
    GatewaySendFailure,
)
from prestrack.models import (
    APPROVAL_TTL,
    ApprovalOutcome,
    ApprovalRequestInput,
    ApprovalStatus,
    Delivery,
    DeliveryStatus,
    PendingMeetingRequest,
    utcnow,
)
from prestrack.scheduling import messages
from prestrack.scheduling.sessions import finish_session
from prestrack.services.calendar_client import GoogleCalendarClient
from prestrack.services.gateway import WhatsAppGateway
from prestrack.services.metrics import metrics
from prestrack.services.store import ClinicStore, new_id

logger = logging.getLogger(__name__)

Decision = Literal["confirm", "decline"]


class ProviderApprovalWorkflow:
    def __init__(
        self,
        store: ClinicStore,
        gateway: WhatsAppGateway,
        calendar: GoogleCalendarClient,
        *,
        clock: Callable[[], datetime] = utcnow,
        timezone: str = CLINIC_TIMEZONE,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._calendar = calendar
        self._clock = clock
        self._timezone = timezone

    # ── Creation ─────────────────────────────────────────────────────

    async def create(self, data: ApprovalRequestInput) -> PendingMeetingRequest:
        now = self._clock()
        request = PendingMeetingRequest(
            id=new_id("approval"),
            created_at=now,
            expires_at=now + APPROVAL_TTL,
            **data.model_dump(),
        )
        await asyncio.to_thread(self._store.insert_meeting_request, request)
        logger.info(
            "Meeting request %s created: %s -> %s at %s",
            request.id, request.patient_phone, request.provider_name,
            request.requested_time.isoformat(),
        )
        metrics.record_event("ApprovalRequested")

        delivery = Delivery(
            provider_request=await self._send(
                request.provider_phone,
                messages.provider_request_message(request, self._timezone),
            ),
            patient_ack=await self._send(
                request.patient_phone,
                messages.patient_ack_message(request, self._timezone),
            ),
        )
        return await self._record_delivery(request, delivery)

    # ── Resolution ───────────────────────────────────────────────────

    async def resolve(
        self, request_id: str, decision: Decision, provider_phone: str,
    ) -> ApprovalOutcome:
        """Apply a provider's decision to one pending request.

        Checks run in order: not found, wrong provider, already resolved,
        expired.  The last one also moves the record to ``expired``.
        """
        request = await asyncio.to_thread(self._store.get_meeting_request, request_id)
        if request is None:
            raise ApprovalNotFound(request_id)
        if request.provider_phone != provider_phone:
            logger.warning(
                "Provider %s tried to resolve request %s owned by %s",
                provider_phone, request_id, request.provider_phone,
            )
            raise ApprovalUnauthorized(request_id)
        if request.status is not ApprovalStatus.PENDING:
            raise ApprovalAlreadyResolved(request_id, request.status.value)
        if request.is_expired(self._clock()):
            await self._transition(request, status=ApprovalStatus.EXPIRED)
            raise ApprovalExpired(request_id)

        if decision == "decline":
            return await self._decline(request)
        return await self._confirm(request)

    async def resolve_latest(
        self, decision: Decision, provider_phone: str,
    ) -> ApprovalOutcome | None:
        """Resolve the provider's most recent pending request; ``None`` if there is none."""
        pending = await self.pending_for(provider_phone)
        if not pending:
            return None
        if len(pending) > 1:
            logger.info(
                "Bare %s from %s with %d pending requests, using newest %s",
                decision, provider_phone, len(pending), pending[0].id,
            )
        return await self.resolve(pending[0].id, decision, provider_phone)

    async def pending_for(self, provider_phone: str) -> list[PendingMeetingRequest]:
        return await asyncio.to_thread(
            self._store.list_pending_for_provider, provider_phone, self._clock(),
        )

    async def expire_overdue(self, now: datetime | None = None) -> list[str]:
        now = now or self._clock()
        expired = await asyncio.to_thread(self._store.expire_overdue_requests, now)
        for request_id in expired:
            request = await asyncio.to_thread(self._store.get_meeting_request, request_id)
            if request is not None:
                await asyncio.to_thread(finish_session, self._store, request.session_id)
        if expired:
            logger.info("Expired %d overdue meeting request(s)", len(expired))
        return expired

    async def _decline(self, request: PendingMeetingRequest) -> ApprovalOutcome:
        declined = await self._transition(request, status=ApprovalStatus.DECLINED)
        outcome = await self._send(
            declined.patient_phone,
            messages.patient_declined_message(declined, self._timezone),
        )
        declined = await self._record_delivery(
            declined, declined.delivery.model_copy(update={"patient_outcome": outcome}),
        )
        metrics.record_event("ApprovalResolved", status="declined")
        logger.info("Meeting request %s declined by %s", declined.id, declined.provider_name)
        return ApprovalOutcome(
            request=declined, message=messages.provider_declined_reply(declined),
        )

    async def _confirm(self, request: PendingMeetingRequest) -> ApprovalOutcome:
        event = await self._calendar.create_consultation(
            request.patient_name,
            request.provider_name,
            request.requested_time,
            provider_email=request.provider_email,
            reason=request.reason,
        )
        if not event.hangout_link:
            await self._calendar.delete_event(event.id)
            raise CalendarAPIError(f"Event {event.id} was created without a Meet link")
        try:
            confirmed = await self._transition(
                request,
                status=ApprovalStatus.CONFIRMED,
                meeting_link=event.hangout_link,
                google_meet_event_id=event.id,
            )
        except ApprovalAlreadyResolved:
            # Another reply won the race; this event must not outlive it
            try:
                await self._calendar.delete_event(event.id)
            except CalendarAPIError:
                logger.exception("Could not delete orphan calendar event %s", event.id)
            raise

        patient_outcome = await self._send(
            confirmed.patient_phone,
            messages.patient_confirmed_message(confirmed, self._timezone),
        )
        provider_outcome = await self._send(
            confirmed.provider_phone,
            messages.provider_confirmed_message(confirmed, self._timezone),
        )
        confirmed = await self._record_delivery(
            confirmed,
            confirmed.delivery.model_copy(update={
                "patient_outcome": patient_outcome,
                "provider_outcome": provider_outcome,
            }),
        )
        metrics.record_event("ApprovalResolved", status="confirmed")
        logger.info("Meeting request %s confirmed, event %s", confirmed.id, event.id)
        return ApprovalOutcome(
            request=confirmed,
            message=messages.provider_confirmed_reply(confirmed),
            meeting_link=confirmed.meeting_link,
        )

    # ── Persistence helpers ──────────────────────────────────────────

    async def _transition(
        self, request: PendingMeetingRequest, *, status: ApprovalStatus, **fields,
    ) -> PendingMeetingRequest:
        """Compare-and-set a terminal status; a lost race surfaces as AlreadyResolved."""
        try:
            updated = await asyncio.to_thread(
                self._store.update_meeting_request,
                request.model_copy(update={"status": status, **fields}),
            )
        except ConcurrentModification:
            current = await asyncio.to_thread(self._store.get_meeting_request, request.id)
            current_status = current.status.value if current else "unknown"
            logger.warning(
                "Request %s resolved concurrently (now %s)", request.id, current_status,
            )
            raise ApprovalAlreadyResolved(request.id, current_status) from None
        await asyncio.to_thread(finish_session, self._store, updated.session_id)
        return updated

    async def _record_delivery(
        self, request: PendingMeetingRequest, delivery: Delivery,
    ) -> PendingMeetingRequest:
        """Store send outcomes; on a lost race, merge them into the fresh row once."""
        current = request
        for attempt in range(2):
            merged = Delivery(**{**current.delivery.model_dump(), **delivery.model_dump(exclude_none=True)})
            try:
                return await asyncio.to_thread(
                    self._store.update_meeting_request,
                    current.model_copy(update={"delivery": merged}),
                )
            except ConcurrentModification:
                fresh = await asyncio.to_thread(self._store.get_meeting_request, request.id)
                if fresh is None or attempt == 1:
                    break
                logger.debug("Request %s changed while recording delivery, merging", request.id)
                current = fresh
        logger.warning("Delivery status for %s lost to a concurrent update", request.id)
        return current.model_copy(update={"delivery": delivery})

    async def _send(self, phone: str, body: str) -> DeliveryStatus:
        try:
            await self._gateway.send(phone, body)
            return DeliveryStatus(ok=True)
        except GatewaySendFailure as exc:
            logger.warning("Notification to %s failed: %s", phone, exc)
            return DeliveryStatus(ok=False, error=str(exc))
