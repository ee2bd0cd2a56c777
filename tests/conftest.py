"""Shared test fixtures for the Prestrack test suite."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from langchain_core.messages import AIMessage

PATIENT_PHONE = "+23276000001"
SMITH_PHONE = "+23276100001"
BANGURA_PHONE = "+23276100002"
VISITOR_PHONE = "+23277999888"

# Tuesday 10 March 2026, 09:00 UTC
NOW = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("METRICS_ENABLED", "false")
    os.environ.setdefault("CLINIC_TIMEZONE", "UTC")


# ── Fakes ────────────────────────────────────────────────────────────


class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """Records every send; phones in ``fail_for`` raise GatewaySendFailure."""

    def __init__(self, fail_for: tuple[str, ...] = ()):
        self.sent: list[tuple[str, str]] = []
        self.fail_for = set(fail_for)

    async def send(self, phone_e164: str, message: str) -> dict:
        from prestrack.errors import GatewaySendFailure

        if phone_e164 in self.fail_for:
            raise GatewaySendFailure(f"gateway rejected {phone_e164}", status_code=500)
        self.sent.append((phone_e164, message))
        return {"ok": True}

    def to(self, phone_e164: str) -> list[str]:
        return [m for p, m in self.sent if p == phone_e164]

    async def aclose(self) -> None:
        pass


class FakeCalendar:
    def __init__(self):
        self.created: list[Any] = []
        self.deleted: list[str] = []
        self.fail = False

    async def create_consultation(
        self, patient_name, provider_name, start, *,
        provider_email=None, patient_email=None, reason=None,
    ):
        from prestrack.errors import CalendarAPIError
        from prestrack.models import MEETING_DURATION, CalendarEvent

        if self.fail:
            raise CalendarAPIError("calendar unavailable", status_code=503)
        n = len(self.created) + 1
        event = CalendarEvent(
            id=f"evt-{n}",
            summary=f"Consultation: {provider_name} & {patient_name}",
            hangout_link=f"https://meet.google.com/abc-defg-{n:03d}",
            start=start,
            end=start + MEETING_DURATION,
        )
        self.created.append(event)
        return event

    async def delete_event(self, event_id: str) -> None:
        self.deleted.append(event_id)

    async def aclose(self) -> None:
        pass


class FakeLLM:
    """Stands in for ChatAnthropic: answers queued replies in order.

    A queued exception is raised instead of returned.
    """

    def __init__(self, *replies: Any):
        self.replies = list(replies)
        self.calls: list[list[Any]] = []

    async def ainvoke(self, messages):
        self.calls.append(messages)
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        return AIMessage(content=reply)


class FakeGeneline:
    def __init__(self, matches: list[dict] | None = None):
        self.matches = matches or []
        self.calls: list[dict] = []
        self.error: Exception | None = None

    async def embeddings_search(self, query, *, namespace, top_k=5, index_name=None, filter=None):
        self.calls.append({"query": query, "namespace": namespace, "top_k": top_k, "filter": filter})
        if self.error is not None:
            raise self.error
        return list(self.matches)

    async def aclose(self) -> None:
        pass


def make_match(title: str, text: str, score: float, **meta) -> dict:
    return {"id": title, "score": score, "metadata": {"title": title, "text": text, **meta}}


# ── Fixtures ─────────────────────────────────────────────────────────


@dataclass
class Seed:
    patient_id: str
    smith: Any
    bangura: Any


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store(tmp_path):
    from prestrack.services.store import ClinicStore

    return ClinicStore(str(tmp_path / "prestrack-test.db"))


@pytest.fixture
def seed(store, clock):
    """A patient and two providers with WhatsApp numbers on file."""
    patient_id = store.add_patient("Aminata", "Kamara", phone_e164=PATIENT_PHONE, now=clock())
    smith = store.add_provider(
        "Dr. Sarah Smith", email="smith@clinic.example", phone_e164=SMITH_PHONE, now=clock(),
    )
    bangura = store.add_provider("Nurse John Bangura", phone_e164=BANGURA_PHONE, now=clock())
    return Seed(patient_id=patient_id, smith=smith, bangura=bangura)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def geneline():
    return FakeGeneline()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def technical_llm():
    return FakeLLM()


@pytest.fixture
def runtime(store, seed, gateway, calendar, geneline, llm, technical_llm, clock):
    from prestrack.runtime import build_runtime

    return build_runtime(
        store=store,
        gateway=gateway,
        calendar=calendar,
        geneline=geneline,
        llm=llm,
        technical_llm=technical_llm,
        clock=clock,
        timezone="UTC",
    )


@pytest.fixture
def approvals(store, gateway, calendar, clock):
    from prestrack.scheduling.approvals import ProviderApprovalWorkflow

    return ProviderApprovalWorkflow(store, gateway, calendar, clock=clock, timezone="UTC")


@pytest.fixture
def sessions(store, approvals, clock):
    from prestrack.scheduling.sessions import SchedulingSessionManager

    return SchedulingSessionManager(store, approvals, clock=clock, timezone="UTC")
