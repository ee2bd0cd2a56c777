"""Typed records shared by the orchestration core.

Workflow records (scheduling sessions, meeting requests, escalations) are
decoded from their store rows through these models, so a malformed row
fails loudly at the boundary instead of deep inside a workflow.
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime, timedelta
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

SESSION_TTL = timedelta(minutes=30)
APPROVAL_TTL = timedelta(hours=2)
MEETING_DURATION = timedelta(minutes=30)


def utcnow() -> datetime:
    return datetime.now(UTC)


class Scope(str, enum.Enum):
    PATIENT = "patient"
    PROVIDER = "provider"
    VISITOR = "visitor"


SubjectType = Literal["patient", "visitor"]


class ScopeResolution(BaseModel):
    """Who sent an inbound message.  Re-derived on every message."""

    model_config = ConfigDict(frozen=True)

    scope: Scope
    phone_e164: str
    subject_id: str | None = None
    display_name: str | None = None


# ── Directory records (owned by the dashboard, read by the core) ─────


class Provider(BaseModel):
    id: str
    name: str
    email: str | None = None
    phone_e164: str | None = None


class Visitor(BaseModel):
    id: str
    display_name: str | None = None


# ── Retrieval / personal context ─────────────────────────────────────


class RetrievedSource(BaseModel):
    title: str
    text: str
    score: float
    source_url: str | None = None


class PrescriptionSummary(BaseModel):
    id: str
    medication_name: str
    strength: str | None = None
    form: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    status: str | None = None


class ReminderSummary(BaseModel):
    id: str
    when: str
    status: str
    medication_name: str | None = None


class PregnancySummary(BaseModel):
    lmp: str | None = None
    edd: str | None = None
    ga_weeks: int | None = None
    last_contact_date: str | None = None


class PatientContext(BaseModel):
    patient_id: str
    name: str | None = None
    prescriptions: list[PrescriptionSummary] = Field(default_factory=list)
    upcoming_reminders: list[ReminderSummary] = Field(default_factory=list)
    pregnancy: PregnancySummary | None = None


# ── Workflow records ─────────────────────────────────────────────────


class SessionStatus(str, enum.Enum):
    SELECTING_TIME = "selecting_time"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"


class SchedulingSession(BaseModel):
    id: str
    patient_id: str
    subject_type: SubjectType = "patient"
    provider_id: str
    status: SessionStatus = SessionStatus.SELECTING_TIME
    selected_time: datetime | None = None
    reason: str | None = None
    approval_request_id: str | None = None
    created_at: datetime
    expires_at: datetime
    version: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    EXPIRED = "expired"


class DeliveryStatus(BaseModel):
    ok: bool
    error: str | None = None


class Delivery(BaseModel):
    """Outcome of every best-effort send made for one meeting request."""

    provider_request: DeliveryStatus | None = None
    patient_ack: DeliveryStatus | None = None
    patient_outcome: DeliveryStatus | None = None
    provider_outcome: DeliveryStatus | None = None


class PendingMeetingRequest(BaseModel):
    id: str
    patient_phone: str
    patient_name: str
    provider_id: str
    provider_name: str
    provider_phone: str
    provider_email: str | None = None
    requested_time: datetime
    reason: str | None = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime
    expires_at: datetime
    meeting_link: str | None = None
    google_meet_event_id: str | None = None
    session_id: str | None = None
    delivery: Delivery = Field(default_factory=Delivery)
    version: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class ApprovalRequestInput(BaseModel):
    patient_phone: str
    patient_name: str
    provider_id: str
    provider_name: str
    provider_phone: str
    provider_email: str | None = None
    requested_time: datetime
    reason: str | None = None
    session_id: str | None = None


class ApprovalOutcome(BaseModel):
    request: PendingMeetingRequest
    message: str
    meeting_link: str | None = None


class MediaDescriptor(BaseModel):
    mime_type: str | None = None
    url: str | None = None
    filename: str | None = None
    size_bytes: int | None = None


class Escalation(BaseModel):
    id: str
    phone_e164: str
    summary: str
    subject_type: SubjectType
    subject_id: str | None = None
    media: MediaDescriptor | None = None
    status: str = "open"
    created_at: datetime


class CalendarEvent(BaseModel):
    id: str
    summary: str | None = None
    hangout_link: str | None = None
    start: datetime
    end: datetime


class HistoryItem(BaseModel):
    role: Literal["user", "assistant"]
    content: str


# ── Per-request plumbing ─────────────────────────────────────────────


class RequestContext(BaseModel):
    """Everything one inbound message carries through the core.

    Replaces any process-wide "current phone" state: concurrent requests
    each get their own instance.
    """

    model_config = ConfigDict(frozen=True)

    phone: str
    text: str = ""
    media: MediaDescriptor | None = None
    request_id: str | None = None
    rag_session_key: str | None = None


class AgentReply(BaseModel):
    text: str
    scope: Scope | None = None
    action: str
