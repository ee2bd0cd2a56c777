"""Tests for the decision engine graph.

Covers:
  - Routing (media, bare provider replies, technical mode, decision path)
  - Dispatch of every action variant
  - LLM failure fallbacks
  - The end-to-end escalation, scheduling and approval flows
"""

from __future__ import annotations

import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from pydantic import BaseModel

from prestrack.actions import DECODED_TYPES
from prestrack.agent import (
    DecisionEngine,
    is_bare_provider_reply,
    is_greeting,
    route_message,
)
from prestrack.models import (
    ApprovalStatus,
    MediaDescriptor,
    RequestContext,
    Scope,
    ScopeResolution,
    SessionStatus,
)
from prestrack.prompts import (
    AVAILABILITY_NUDGE,
    MEDIA_RECEIVED_MESSAGE,
    NO_SOURCES_MESSAGE,
    NOTHING_TO_APPROVE,
    REASSURANCE_MESSAGE,
    REQUEST_NOTED_MESSAGE,
    SAFE_REPLY,
    SESSION_EXPIRED_MESSAGE,
)
from prestrack.services.geneline_client import GenelineClient

from conftest import (
    BANGURA_PHONE,
    PATIENT_PHONE,
    SMITH_PHONE,
    VISITOR_PHONE,
    make_match,
)


# ── Helpers ──────────────────────────────────────────────────────────


def _envelope(**fields) -> str:
    return json.dumps(fields)


def _ctx(phone: str, text: str = "", media: MediaDescriptor | None = None) -> RequestContext:
    return RequestContext(phone=phone, text=text, media=media, request_id="test", rag_session_key=phone)


def _state(scope: Scope, text: str, media: MediaDescriptor | None = None) -> dict:
    return {
        "ctx": _ctx("+23276000009", text, media),
        "resolution": ScopeResolution(scope=scope, phone_e164="+23276000009"),
    }


# ── Routing ──────────────────────────────────────────────────────────


class TestBareProviderReply:
    @pytest.mark.parametrize(
        "text",
        ["yes", "YES", " no ", "Confirm.", "decline!", "pending", "yes approval-0123abcd"],
    )
    def test_matches(self, text):
        assert is_bare_provider_reply(text)

    @pytest.mark.parametrize(
        "text",
        ["yes please book it for friday", "no idea", "is this pending?", "", None],
    )
    def test_does_not_match(self, text):
        assert not is_bare_provider_reply(text)

    def test_greetings(self):
        assert is_greeting("Good morning!")
        assert is_greeting("thanks")
        assert not is_greeting("What is the dose of oxytocin for PPH?")


class TestRouteMessage:
    def test_media_from_patient(self):
        media = MediaDescriptor(mime_type="image/jpeg")
        assert route_message(_state(Scope.PATIENT, "", media)) == "media_escalation"

    def test_media_from_visitor(self):
        media = MediaDescriptor(mime_type="audio/ogg")
        assert route_message(_state(Scope.VISITOR, "listen", media)) == "media_escalation"

    def test_provider_bare_reply(self):
        assert route_message(_state(Scope.PROVIDER, "Yes")) == "approval_response"

    def test_provider_question_is_technical(self):
        assert route_message(_state(Scope.PROVIDER, "Magnesium sulfate loading dose?")) == "technical"

    def test_provider_greeting_uses_decision_path(self):
        assert route_message(_state(Scope.PROVIDER, "hello")) == "gather_context"

    def test_patient_yes_is_not_an_approval(self):
        assert route_message(_state(Scope.PATIENT, "yes")) == "gather_context"


class TestHandlerTable:
    def test_every_decoded_type_needs_a_handler(self, runtime):
        class Unhandled(BaseModel):
            pass

        with patch("prestrack.agent.DECODED_TYPES", (*DECODED_TYPES, Unhandled)):
            with pytest.raises(RuntimeError, match="Unhandled"):
                DecisionEngine(
                    store=runtime.store,
                    resolver=runtime.resolver,
                    retrieval=runtime.retrieval,
                    context_fetcher=runtime.context_fetcher,
                    sessions=runtime.sessions,
                    approvals=runtime.approvals,
                    escalations=runtime.escalations,
                    llm=object(),
                    technical_llm=object(),
                )


# ── Escalation ───────────────────────────────────────────────────────


class TestEscalation:
    @pytest.mark.asyncio
    async def test_patient_escalation_uses_fixed_reassurance(self, runtime, llm, gateway, store):
        llm.replies.append(_envelope(
            action="escalate",
            answer="Oh no, that sounds terrible, take two painkillers.",
            escalate_summary="Severe abdominal pain, 32 weeks pregnant",
        ))

        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "I have severe abdominal pain"))

        assert reply.action == "escalate"
        assert reply.text == REASSURANCE_MESSAGE
        (esc,) = store.list_escalations()
        assert esc.subject_type == "patient"
        assert esc.summary == "Severe abdominal pain, 32 weeks pregnant"
        assert "Aminata Kamara" in gateway.to(SMITH_PHONE)[0]
        assert gateway.to(BANGURA_PHONE)

    @pytest.mark.asyncio
    async def test_visitor_escalation_is_recorded_as_visitor(self, runtime, llm, store):
        llm.replies.append(_envelope(action="escalate", escalate_summary="Fever and convulsions"))
        reply = await runtime.handle_message(_ctx(VISITOR_PHONE, "my sister is convulsing"))
        assert reply.text == REASSURANCE_MESSAGE
        (esc,) = store.list_escalations()
        assert esc.subject_type == "visitor"

    @pytest.mark.asyncio
    async def test_escalation_survives_failed_notifications(self, runtime, llm, store, gateway):
        gateway.fail_for = {SMITH_PHONE, BANGURA_PHONE}
        llm.replies.append(_envelope(action="escalate", escalate_summary="Bleeding"))
        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "I am bleeding"))
        assert reply.text == REASSURANCE_MESSAGE
        assert len(store.list_escalations()) == 1

    @pytest.mark.asyncio
    async def test_broken_search_backend_does_not_block_escalation(
        self, runtime, llm, geneline, store,
    ):
        geneline.error = json.JSONDecodeError("Expecting value", "<html>proxy</html>", 0)
        llm.replies.append(_envelope(action="escalate", escalate_summary="Severe abdominal pain"))

        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "I have severe abdominal pain"))

        assert reply.text == REASSURANCE_MESSAGE
        (esc,) = store.list_escalations()
        assert esc.summary == "Severe abdominal pain"

    @pytest.mark.asyncio
    async def test_real_client_with_malformed_body_still_answers(self, runtime, llm, store):
        client = GenelineClient(api_key="gx-key", base_url="https://geneline.test")
        runtime.retrieval._client = client
        response = MagicMock(status_code=200, text="[]")
        response.json.return_value = []
        llm.replies.append(_envelope(action="escalate", escalate_summary="Bleeding"))

        with patch.object(client._client, "post", new=AsyncMock(return_value=response)):
            reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "I am bleeding"))

        assert reply.text == REASSURANCE_MESSAGE
        assert len(store.list_escalations()) == 1

    @pytest.mark.asyncio
    async def test_media_goes_straight_to_care_team(self, runtime, llm, store, gateway):
        media = MediaDescriptor(mime_type="image/jpeg", url="https://files.example/rash.jpg")
        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "", media))

        assert reply.text == MEDIA_RECEIVED_MESSAGE
        assert reply.action == "media_escalation"
        assert llm.calls == []
        (esc,) = store.list_escalations()
        assert esc.media.url == "https://files.example/rash.jpg"
        assert "Media received" in gateway.to(SMITH_PHONE)[0]


# ── Scheduling ───────────────────────────────────────────────────────


class TestScheduling:
    @pytest.mark.asyncio
    async def test_schedule_with_time_goes_straight_to_provider(
        self, runtime, llm, gateway, store, seed,
    ):
        llm.replies.append(_envelope(
            action="start_interactive_scheduling",
            provider_name="Dr. Smith",
            preferred_time="tomorrow at 3pm",
            reason="Check-up",
        ))

        reply = await runtime.handle_message(
            _ctx(PATIENT_PHONE, "schedule with Dr. Smith tomorrow at 3pm"),
        )

        assert reply.action == "start_interactive_scheduling"
        assert "has been sent" in reply.text
        session = store.latest_session_for(seed.patient_id)
        assert session.status is SessionStatus.AWAITING_APPROVAL
        request = store.get_meeting_request(session.approval_request_id)
        assert request.requested_time == datetime.fromisoformat("2026-03-11T15:00:00+00:00")
        assert request.provider_phone == SMITH_PHONE
        assert request.patient_name == "Aminata Kamara"
        assert any(request.id in m for m in gateway.to(SMITH_PHONE))

    @pytest.mark.asyncio
    async def test_schedule_then_provider_yes_confirms_for_both(
        self, runtime, llm, gateway, calendar, store, seed,
    ):
        llm.replies.append(_envelope(
            action="start_interactive_scheduling",
            provider_name="Dr. Smith",
            preferred_time="tomorrow at 3pm",
        ))
        await runtime.handle_message(_ctx(PATIENT_PHONE, "schedule with Dr. Smith tomorrow at 3pm"))
        gateway.sent.clear()
        calls_before = len(llm.calls)

        reply = await runtime.handle_message(_ctx(SMITH_PHONE, "yes"))

        assert reply.action == "approval_confirm"
        assert len(llm.calls) == calls_before
        link = calendar.created[0].hangout_link
        assert link in reply.text
        assert link in gateway.to(PATIENT_PHONE)[0]
        assert link in gateway.to(SMITH_PHONE)[0]
        session = store.latest_session_for(seed.patient_id)
        request = store.get_meeting_request(session.approval_request_id)
        assert request.status is ApprovalStatus.CONFIRMED
        assert request.meeting_link == link
        assert session.status is SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_schedule_without_time_asks_for_one_then_resumes(
        self, runtime, llm, store, seed,
    ):
        llm.replies.append(_envelope(action="start_interactive_scheduling", provider_name="Bangura"))
        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "I want to see Nurse Bangura"))
        assert "Nurse John Bangura" in reply.text
        session = store.latest_session_for(seed.patient_id)
        assert session.status is SessionStatus.SELECTING_TIME

        llm.replies.append(_envelope(
            action="process_time_selection", session_id=session.id, preferred_time="friday 10am",
        ))
        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "friday 10am"))

        assert "has been sent" in reply.text
        session = store.get_session(session.id)
        request = store.get_meeting_request(session.approval_request_id)
        assert request.provider_phone == BANGURA_PHONE
        assert request.requested_time.isoformat() == "2026-03-13T10:00:00+00:00"

    @pytest.mark.asyncio
    async def test_active_session_is_shown_to_the_model(self, runtime, llm, store, seed):
        llm.replies.append(_envelope(action="start_interactive_scheduling"))
        await runtime.handle_message(_ctx(PATIENT_PHONE, "book a consultation"))
        session = store.latest_session_for(seed.patient_id)

        # No session_id from the model: the active session is used
        llm.replies.append(_envelope(action="process_time_selection", preferred_time="tomorrow 9am"))
        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "tomorrow 9am"))

        system = llm.calls[-1][0]
        assert isinstance(system, SystemMessage)
        assert f"session_id: {session.id}" in system.content
        assert "has been sent" in reply.text

    @pytest.mark.asyncio
    async def test_expired_session_asks_to_start_again(self, runtime, llm, store, seed, clock, gateway):
        llm.replies.append(_envelope(action="start_interactive_scheduling"))
        await runtime.handle_message(_ctx(PATIENT_PHONE, "book a consultation"))
        session = store.latest_session_for(seed.patient_id)
        clock.advance(minutes=31)
        gateway.sent.clear()

        llm.replies.append(_envelope(
            action="process_time_selection", session_id=session.id, preferred_time="tomorrow 9am",
        ))
        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "tomorrow 9am"))

        assert reply.text == SESSION_EXPIRED_MESSAGE
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_someone_elses_session_is_rejected(self, runtime, llm, store, seed):
        other = await runtime.sessions.start("vis-someone-else", "visitor")
        llm.replies.append(_envelope(
            action="process_time_selection", session_id=other.id, preferred_time="tomorrow",
        ))
        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "tomorrow"))
        assert reply.text == SESSION_EXPIRED_MESSAGE
        assert store.get_session(other.id).status is SessionStatus.SELECTING_TIME

    @pytest.mark.asyncio
    async def test_visitor_can_schedule(self, runtime, llm, store):
        llm.replies.append(_envelope(
            action="schedule_meeting", preferred_time="tomorrow at 11am",
        ))
        reply = await runtime.handle_message(_ctx(VISITOR_PHONE, "can I see a doctor tomorrow 11am"))
        assert "has been sent" in reply.text
        (request,) = store.list_pending_for_provider(SMITH_PHONE, runtime.clock())
        assert request.patient_name == "Visitor"
        assert request.patient_phone == VISITOR_PHONE

    @pytest.mark.asyncio
    async def test_check_availability_creates_nothing(self, runtime, llm, store, seed):
        llm.replies.append(_envelope(action="check_availability", provider_name="Smith"))
        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "When is Dr Smith free?"))
        assert reply.text == AVAILABILITY_NUDGE
        assert store.latest_session_for(seed.patient_id) is None


# ── Provider approvals ───────────────────────────────────────────────


class TestProviderApprovals:
    @pytest.mark.asyncio
    async def test_yes_with_nothing_pending(self, runtime, llm):
        reply = await runtime.handle_message(_ctx(SMITH_PHONE, "YES"))
        assert reply.text == NOTHING_TO_APPROVE
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_yes_resolves_only_the_newest(self, runtime, store, seed, clock):
        first = await runtime.sessions.start(seed.patient_id, "patient", "Smith")
        _, older = await runtime.sessions.submit_time(
            first.id, "tomorrow 9am", patient_phone=PATIENT_PHONE, patient_name="Aminata Kamara",
        )
        clock.advance(minutes=1)
        visitor = await runtime.resolver.resolve(VISITOR_PHONE)
        second = await runtime.sessions.start(visitor.subject_id, "visitor", "Smith")
        _, newer = await runtime.sessions.submit_time(
            second.id, "tomorrow 10am", patient_phone=VISITOR_PHONE, patient_name="Visitor",
        )

        await runtime.handle_message(_ctx(SMITH_PHONE, "yes"))

        assert store.get_meeting_request(newer.id).status is ApprovalStatus.CONFIRMED
        assert store.get_meeting_request(older.id).status is ApprovalStatus.PENDING

    @pytest.mark.asyncio
    async def test_explicit_ref_and_decline(self, runtime, store, seed, gateway):
        session = await runtime.sessions.start(seed.patient_id, "patient", "Smith")
        _, request = await runtime.sessions.submit_time(
            session.id, "tomorrow", patient_phone=PATIENT_PHONE, patient_name="Aminata Kamara",
        )
        gateway.sent.clear()

        reply = await runtime.handle_message(_ctx(SMITH_PHONE, f"no {request.id}"))

        assert reply.action == "approval_decline"
        assert "Declined" in reply.text
        assert store.get_meeting_request(request.id).status is ApprovalStatus.DECLINED
        assert "Meeting Request Declined" in gateway.to(PATIENT_PHONE)[0]

    @pytest.mark.asyncio
    async def test_other_providers_request_is_refused(self, runtime, store, seed):
        session = await runtime.sessions.start(seed.patient_id, "patient", "Smith")
        _, request = await runtime.sessions.submit_time(
            session.id, "tomorrow", patient_phone=PATIENT_PHONE, patient_name="Aminata Kamara",
        )
        reply = await runtime.handle_message(_ctx(BANGURA_PHONE, f"yes {request.id}"))
        assert "another provider" in reply.text
        assert store.get_meeting_request(request.id).status is ApprovalStatus.PENDING

    @pytest.mark.asyncio
    async def test_second_yes_reports_already_resolved(self, runtime, seed, calendar):
        session = await runtime.sessions.start(seed.patient_id, "patient", "Smith")
        _, request = await runtime.sessions.submit_time(
            session.id, "tomorrow", patient_phone=PATIENT_PHONE, patient_name="Aminata Kamara",
        )
        await runtime.handle_message(_ctx(SMITH_PHONE, f"yes {request.id}"))
        reply = await runtime.handle_message(_ctx(SMITH_PHONE, f"yes {request.id}"))
        assert reply.text == "That meeting request was already confirmed."
        assert len(calendar.created) == 1

    @pytest.mark.asyncio
    async def test_calendar_failure_leaves_request_pending(self, runtime, store, seed, calendar):
        session = await runtime.sessions.start(seed.patient_id, "patient", "Smith")
        _, request = await runtime.sessions.submit_time(
            session.id, "tomorrow", patient_phone=PATIENT_PHONE, patient_name="Aminata Kamara",
        )
        calendar.fail = True
        reply = await runtime.handle_message(_ctx(SMITH_PHONE, "yes"))
        assert "couldn't create the meeting link" in reply.text
        assert store.get_meeting_request(request.id).status is ApprovalStatus.PENDING

    @pytest.mark.asyncio
    async def test_pending_lists_requests(self, runtime, seed):
        session = await runtime.sessions.start(seed.patient_id, "patient", "Smith")
        _, request = await runtime.sessions.submit_time(
            session.id, "tomorrow", "Swollen feet",
            patient_phone=PATIENT_PHONE, patient_name="Aminata Kamara",
        )
        reply = await runtime.handle_message(_ctx(SMITH_PHONE, "pending"))
        assert reply.action == "approval_pending"
        assert request.id in reply.text
        assert "Swollen feet" in reply.text


# ── Provider technical mode ──────────────────────────────────────────


class TestTechnicalMode:
    @pytest.mark.asyncio
    async def test_quote_only_answer_over_unfiltered_sources(
        self, runtime, geneline, technical_llm, llm,
    ):
        geneline.matches = [make_match("WHO PPH guideline", "Give oxytocin 10 IU IM.", 0.9)]
        technical_llm.replies.append('"Give oxytocin 10 IU IM." [S1]')

        reply = await runtime.handle_message(_ctx(SMITH_PHONE, "First-line drug for PPH?"))

        assert reply.action == "technical"
        assert reply.text == '"Give oxytocin 10 IU IM." [S1]'
        assert geneline.calls[0]["filter"] is None
        assert "[S1] WHO PPH guideline" in technical_llm.calls[0][0].content
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_no_sources_means_no_llm_call(self, runtime, technical_llm, llm):
        reply = await runtime.handle_message(_ctx(SMITH_PHONE, "First-line drug for PPH?"))
        assert reply.text == NO_SOURCES_MESSAGE
        assert technical_llm.calls == []
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_raw_sources(self, runtime, geneline, technical_llm):
        geneline.matches = [make_match("WHO PPH guideline", "Give oxytocin 10 IU IM. " * 40, 0.9)]
        technical_llm.replies.append(RuntimeError("overloaded"))

        reply = await runtime.handle_message(_ctx(SMITH_PHONE, "First-line drug for PPH?"))

        assert reply.text.startswith("Relevant sources:")
        assert "[S1] *WHO PPH guideline*" in reply.text
        assert reply.text.endswith("…")

    @pytest.mark.asyncio
    async def test_provider_greeting_gets_a_normal_answer(self, runtime, llm, technical_llm):
        llm.replies.append(_envelope(action="answer", answer="Good morning, Dr. Smith!"))
        reply = await runtime.handle_message(_ctx(SMITH_PHONE, "Good morning"))
        assert reply.text == "Good morning, Dr. Smith!"
        assert technical_llm.calls == []


# ── Decision path ────────────────────────────────────────────────────


class TestDecisionPath:
    @pytest.mark.asyncio
    async def test_patient_prompt_carries_scope_context_and_sources(
        self, runtime, llm, geneline, store, seed, clock,
    ):
        store.add_prescription(seed.patient_id, "Ferrous sulfate", now=clock(), strength="200mg")
        geneline.matches = [make_match("Iron in pregnancy", "Take iron with vitamin C.", 0.8)]
        llm.replies.append(_envelope(action="answer", answer="Take it with orange juice [S1]."))

        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "How do I take my iron?"))

        assert reply.text == "Take it with orange juice [S1]."
        assert geneline.calls[0]["filter"] == {"patientPhoneE164": PATIENT_PHONE}
        system = llm.calls[0][0].content
        assert "registered patient" in system
        assert "Ferrous sulfate 200mg" in system
        assert "[S1] Iron in pregnancy" in system
        assert "2026-03-10" in system

    @pytest.mark.asyncio
    async def test_history_is_replayed(self, runtime, llm):
        llm.replies.extend([
            _envelope(action="answer", answer="Hello! What's your name?"),
            _envelope(action="answer", answer="Thanks."),
        ])
        await runtime.handle_message(_ctx(VISITOR_PHONE, "hi"))
        await runtime.handle_message(_ctx(VISITOR_PHONE, "I have a question"))

        prompt = llm.calls[1]
        assert isinstance(prompt[1], HumanMessage) and prompt[1].content == "hi"
        assert isinstance(prompt[2], AIMessage) and prompt[2].content == "Hello! What's your name?"
        assert prompt[-1].content == "I have a question"

    @pytest.mark.asyncio
    async def test_malformed_json_is_never_echoed(self, runtime, llm):
        llm.replies.append('{"action": "answer", "answer": "oops')
        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "hello"))
        assert reply.text == REQUEST_NOTED_MESSAGE
        assert reply.action == "request_noted"

    @pytest.mark.asyncio
    async def test_empty_model_output(self, runtime, llm):
        llm.replies.append("")
        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "hello"))
        assert reply.text == SAFE_REPLY

    @pytest.mark.asyncio
    async def test_llm_failure_with_sources_sends_raw_summary(self, runtime, llm, geneline):
        geneline.matches = [make_match(f"Doc {i}", f"text {i}", 1 - i / 10) for i in range(5)]
        llm.replies.append(RuntimeError("anthropic 529"))

        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "what should I eat?"))

        assert reply.action == "llm_fallback"
        assert "[S3] *Doc 2*" in reply.text
        assert "Doc 3" not in reply.text

    @pytest.mark.asyncio
    async def test_llm_failure_without_sources(self, runtime, llm):
        llm.replies.append(RuntimeError("anthropic 529"))
        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "what should I eat?"))
        assert reply.text == SAFE_REPLY

    @pytest.mark.asyncio
    async def test_visitor_onboarding(self, runtime, llm, store):
        llm.replies.append(_envelope(action="onboard_name", name="Fatmata"))
        reply = await runtime.handle_message(_ctx(VISITOR_PHONE, "My name is Fatmata"))

        assert reply.text == "Nice to meet you, Fatmata! How can I help you today?"
        resolution = await runtime.resolver.resolve(VISITOR_PHONE)
        assert resolution.display_name == "Fatmata"

    @pytest.mark.asyncio
    async def test_patient_onboard_name_does_not_touch_records(self, runtime, llm, store):
        llm.replies.append(_envelope(action="onboard_name", name="Ami", answer="Hi Ami!"))
        reply = await runtime.handle_message(_ctx(PATIENT_PHONE, "call me Ami"))
        assert reply.text == "Hi Ami!"
        assert store.find_patient_by_phone(PATIENT_PHONE)[1] == "Aminata Kamara"
        assert store.count_visitors() == 0

    @pytest.mark.asyncio
    async def test_conversation_is_logged(self, runtime, llm, store):
        llm.replies.append(_envelope(action="answer", answer="Hello!"))
        await runtime.handle_message(_ctx(PATIENT_PHONE, "hi"))
        assert store.recent_messages(PATIENT_PHONE) == [("inbound", "hi"), ("outbound", "Hello!")]

    @pytest.mark.asyncio
    async def test_system_entries_are_not_replayed_as_history(self, runtime, llm, store):
        llm.replies.extend([
            _envelope(action="escalate", escalate_summary="Headache and blurred vision"),
            _envelope(action="answer", answer="A provider will call you."),
        ])
        await runtime.handle_message(_ctx(PATIENT_PHONE, "terrible headache, blurry eyes"))
        await runtime.handle_message(_ctx(PATIENT_PHONE, "when will they call?"))

        assert ("system", f"System escalation created ({store.list_escalations()[0].id})") in (
            store.recent_messages(PATIENT_PHONE)
        )
        replayed = [m.content for m in llm.calls[1][1:]]
        assert replayed == [
            "terrible headache, blurry eyes", REASSURANCE_MESSAGE, "when will they call?",
        ]
