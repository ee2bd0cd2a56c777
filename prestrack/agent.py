"""LangGraph decision engine for inbound WhatsApp messages.

Architecture:
  Every inbound message runs once through a StateGraph:

    1. **resolve_scope**     — who sent it (patient, provider, visitor)
    2. **media_escalation**  — media from a patient/visitor goes straight to
                               the care team, no LLM call
    3. **approval_response** — a provider's bare "yes"/"no"/"pending" is
                               handled by the approval workflow directly
    4. **technical**         — other provider questions get a quote-only
                               answer over the knowledge base
    5. **gather_context**    — retrieval, personal records, the active
                               scheduling session and recent history
    6. **decide**            — one LLM call returning a JSON action envelope
    7. **dispatch**          — runs the handler for the decoded action

  Routing:
    resolve_scope → media from patient/visitor           → media_escalation → END
                  → provider + bare confirm/decline/pending → approval_response → END
                  → provider + non-greeting               → technical → END
                  → otherwise                              → gather_context → decide → dispatch → END

  The bare provider reply deliberately takes precedence over anything
  the model would have decided; providers must always be able to approve.
  Nothing is held between messages except what lives in the store.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage
from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from prestrack.actions import (
    DECODED_TYPES,
    AnswerAction,
    CheckAvailabilityAction,
    Decoded,
    EmptyReply,
    EscalateAction,
    OnboardNameAction,
    ProcessTimeSelectionAction,
    RequestNoted,
    StartSchedulingAction,
    parse_action,
)
from prestrack.config import ANTHROPIC_API_KEY, CLINIC_TIMEZONE, FAST_MODEL_NAME, MODEL_NAME
from prestrack.errors import (
    ApprovalAlreadyResolved,
    ApprovalError,
    ApprovalExpired,
    ApprovalNotFound,
    ApprovalUnauthorized,
    CalendarAPIError,
    LLMFailure,
    NoProviderAvailable,
    SessionExpired,
)
from prestrack.escalations import EscalationNotifier
from prestrack.identity import ScopeResolver
from prestrack.models import (
    AgentReply,
    HistoryItem,
    PatientContext,
    RequestContext,
    RetrievedSource,
    SchedulingSession,
    Scope,
    ScopeResolution,
    utcnow,
)
from prestrack.patient_context import PersonalContextFetcher, render_context
from prestrack.prompts import (
    AVAILABILITY_NUDGE,
    CALENDAR_FAILED_MESSAGE,
    FALLBACK_GREETING,
    MEDIA_RECEIVED_MESSAGE,
    NO_PROVIDER_MESSAGE,
    NO_SOURCES_MESSAGE,
    NOTHING_TO_APPROVE,
    REASSURANCE_MESSAGE,
    REQUEST_NOTED_MESSAGE,
    SAFE_REPLY,
    SESSION_EXPIRED_MESSAGE,
    get_system_prompt,
    get_technical_prompt,
    raw_sources_fallback,
)
from prestrack.retrieval import RetrievalCache, patient_filter
from prestrack.scheduling import messages
from prestrack.scheduling.approvals import ProviderApprovalWorkflow
from prestrack.scheduling.sessions import SchedulingSessionManager
from prestrack.services.gateway import format_whatsapp
from prestrack.services.metrics import metrics
from prestrack.services.store import ClinicStore

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10

BARE_PROVIDER_RE = re.compile(
    r"^\s*(yes|no|confirm|decline|pending)\b[\s.!,:]*(approval-[0-9a-f]+)?[\s.!]*$",
    re.IGNORECASE,
)
GREETING_RE = re.compile(
    r"^\s*(hi+|hello|hey|hiya|greetings|good\s+(morning|afternoon|evening|day)|"
    r"thanks?|thank\s+you)(\s+(there|all|everyone|team|luna))?[\s.!,]*$",
    re.IGNORECASE,
)


def is_bare_provider_reply(text: str | None) -> bool:
    return bool(BARE_PROVIDER_RE.match(text or ""))


def is_greeting(text: str | None) -> bool:
    return bool(GREETING_RE.match(text or ""))


# ── State schema ─────────────────────────────────────────────────────


class AgentState(TypedDict, total=False):
    """State for one inbound message.

    ``reply`` and ``action`` are the only outputs; everything else is
    plumbing between nodes.
    """

    ctx: RequestContext
    resolution: ScopeResolution
    history: list[HistoryItem]
    sources: list[RetrievedSource]
    personal: PatientContext | None
    session: SchedulingSession | None
    decoded: Decoded | None
    llm_failed: bool
    reply: str
    action: str


# ── LLM builders ────────────────────────────────────────────────────


def _build_decision_llm() -> ChatAnthropic:
    """Build the fast model that emits the JSON action envelope."""
    return ChatAnthropic(
        model=FAST_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.0,
        max_tokens=1024,
    )


def _build_technical_llm() -> ChatAnthropic:
    """Build the stronger model used for provider quote-only answers."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.0,
        max_tokens=1500,
    )


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict):
                parts.append(str(block.get("text", "")))
            else:
                parts.append(str(block))
        return "".join(parts)
    return str(content or "")


def _action_name(decoded: Decoded) -> str:
    if isinstance(decoded, RequestNoted):
        return "request_noted"
    if isinstance(decoded, EmptyReply):
        return "empty"
    return decoded.action


def approval_error_reply(exc: ApprovalError) -> str:
    if isinstance(exc, ApprovalNotFound):
        return f"I couldn't find meeting request {exc.request_id}."
    if isinstance(exc, ApprovalUnauthorized):
        return "That meeting request belongs to another provider, so I can't change it."
    if isinstance(exc, ApprovalAlreadyResolved):
        return f"That meeting request was already {exc.status}."
    if isinstance(exc, ApprovalExpired):
        return "That meeting request has expired. The patient will need to request a new time."
    return SAFE_REPLY


# ── Conditional edge ─────────────────────────────────────────────────


def route_message(state: AgentState) -> str:
    resolution = state["resolution"]
    ctx = state["ctx"]
    if ctx.media is not None and resolution.scope is not Scope.PROVIDER:
        return "media_escalation"
    if resolution.scope is Scope.PROVIDER:
        if is_bare_provider_reply(ctx.text):
            return "approval_response"
        if not is_greeting(ctx.text):
            return "technical"
    return "gather_context"


async def _nothing() -> None:
    return None


Handler = Callable[[Any, AgentState], Awaitable[str]]


class DecisionEngine:
    """Turns one ``RequestContext`` into one ``AgentReply``."""

    def __init__(
        self,
        *,
        store: ClinicStore,
        resolver: ScopeResolver,
        retrieval: RetrievalCache,
        context_fetcher: PersonalContextFetcher,
        sessions: SchedulingSessionManager,
        approvals: ProviderApprovalWorkflow,
        escalations: EscalationNotifier,
        llm: Any = None,
        technical_llm: Any = None,
        clock: Callable[[], datetime] = utcnow,
        timezone: str = CLINIC_TIMEZONE,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._retrieval = retrieval
        self._context = context_fetcher
        self._sessions = sessions
        self._approvals = approvals
        self._escalations = escalations
        self._llm = llm if llm is not None else _build_decision_llm()
        self._technical_llm = technical_llm if technical_llm is not None else _build_technical_llm()
        self._clock = clock
        self._timezone = timezone

        self._handlers: dict[type, Handler] = {
            AnswerAction: self._on_answer,
            EscalateAction: self._on_escalate,
            OnboardNameAction: self._on_onboard_name,
            CheckAvailabilityAction: self._on_check_availability,
            StartSchedulingAction: self._on_start_scheduling,
            ProcessTimeSelectionAction: self._on_process_time_selection,
            RequestNoted: self._on_request_noted,
            EmptyReply: self._on_empty,
        }
        missing = [t.__name__ for t in DECODED_TYPES if t not in self._handlers]
        if missing:
            raise RuntimeError(f"No dispatch handler for: {', '.join(missing)}")

        self._graph = self._build_graph()

    async def respond(self, ctx: RequestContext) -> AgentReply:
        state = await self._graph.ainvoke({"ctx": ctx})
        resolution = state.get("resolution")
        return AgentReply(
            text=format_whatsapp(state.get("reply") or SAFE_REPLY),
            scope=resolution.scope if resolution else None,
            action=state.get("action", "answer"),
        )

    # ── LLM call ─────────────────────────────────────────────────────

    async def _invoke_llm(self, llm: Any, prompt: list[AnyMessage], operation: str) -> str:
        t0 = time.perf_counter()
        try:
            response = await llm.ainvoke(prompt)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", operation,
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise LLMFailure(f"{operation} failed: {exc}") from exc
        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", operation, latency_ms=elapsed)
        logger.debug("%s responded in %.0fms", operation, elapsed)
        return _message_text(response)

    # ── Nodes ────────────────────────────────────────────────────────

    async def _resolve_scope_node(self, state: AgentState) -> dict:
        resolution = await self._resolver.resolve(state["ctx"].phone)
        logger.debug(
            "Scope %s for %s (request %s)",
            resolution.scope.value, resolution.phone_e164, state["ctx"].request_id,
        )
        return {"resolution": resolution}

    async def _media_escalation_node(self, state: AgentState) -> dict:
        res = state["resolution"]
        ctx = state["ctx"]
        await self._escalations.create_escalation(
            res.phone_e164,
            ctx.text,
            res.scope.value,
            res.subject_id,
            ctx.media,
            display_name=res.display_name,
        )
        return {"reply": MEDIA_RECEIVED_MESSAGE, "action": "media_escalation"}

    async def _approval_response_node(self, state: AgentState) -> dict:
        res = state["resolution"]
        match = BARE_PROVIDER_RE.match(state["ctx"].text)
        command = match.group(1).lower()
        ref = match.group(2).lower() if match.group(2) else None
        logger.info(
            "Bare provider reply %r from %s routed to approval workflow (ref=%s)",
            command, res.phone_e164, ref,
        )

        if command == "pending":
            pending = await self._approvals.pending_for(res.phone_e164)
            return {
                "reply": messages.pending_list_message(pending, self._timezone),
                "action": "approval_pending",
            }

        decision = "confirm" if command in ("yes", "confirm") else "decline"
        try:
            if ref:
                outcome = await self._approvals.resolve(ref, decision, res.phone_e164)
            else:
                outcome = await self._approvals.resolve_latest(decision, res.phone_e164)
        except ApprovalError as exc:
            logger.info("Approval %s for %s rejected: %s", decision, exc.request_id, exc)
            return {"reply": approval_error_reply(exc), "action": f"approval_{decision}"}
        except CalendarAPIError:
            logger.exception("Calendar event creation failed; request stays pending")
            return {"reply": CALENDAR_FAILED_MESSAGE, "action": f"approval_{decision}"}

        reply = outcome.message if outcome is not None else NOTHING_TO_APPROVE
        return {"reply": reply, "action": f"approval_{decision}"}

    async def _technical_node(self, state: AgentState) -> dict:
        ctx = state["ctx"]
        sources = await self._retrieval.search(
            ctx.text, scope_filter=None, session_key=ctx.rag_session_key,
        )
        if not sources:
            return {"reply": NO_SOURCES_MESSAGE, "action": "technical", "sources": []}

        prompt = [SystemMessage(content=get_technical_prompt(sources)), HumanMessage(content=ctx.text)]
        try:
            answer = await self._invoke_llm(self._technical_llm, prompt, "technical_invoke")
        except LLMFailure as exc:
            logger.warning("Technical answer failed, sending raw sources: %s", exc)
            answer = ""
        if not answer.strip():
            answer = raw_sources_fallback(sources)
        return {"reply": answer, "action": "technical", "sources": sources}

    async def _gather_context_node(self, state: AgentState) -> dict:
        res = state["resolution"]
        ctx = state["ctx"]
        is_provider = res.scope is Scope.PROVIDER
        scope_filter = None if is_provider else patient_filter(res.phone_e164)

        sources, personal, session, history = await asyncio.gather(
            self._retrieval.search(
                ctx.text, scope_filter=scope_filter, session_key=ctx.rag_session_key,
            ),
            self._context.fetch(res.phone_e164) if res.scope is Scope.PATIENT else _nothing(),
            self._sessions.active_for(res.subject_id)
            if res.subject_id and not is_provider else _nothing(),
            self._load_history(res.phone_e164),
        )
        return {"sources": sources, "personal": personal, "session": session, "history": history}

    async def _load_history(self, phone_e164: str) -> list[HistoryItem]:
        rows = await asyncio.to_thread(self._store.recent_messages, phone_e164, HISTORY_LIMIT)
        return [
            HistoryItem(role="user" if direction == "inbound" else "assistant", content=body)
            for direction, body in rows
            if body and direction in ("inbound", "outbound")
        ]

    async def _decide_node(self, state: AgentState) -> dict:
        res = state["resolution"]
        ctx = state["ctx"]
        personal = state.get("personal")
        system = get_system_prompt(
            res.scope,
            now=self._clock(),
            timezone=self._timezone,
            display_name=res.display_name or (personal.name if personal else None),
            personal_context=render_context(personal) if res.scope is Scope.PATIENT else "None.",
            sources=state.get("sources"),
            session=state.get("session"),
        )
        prompt: list[AnyMessage] = [SystemMessage(content=system)]
        for item in state.get("history") or []:
            cls = HumanMessage if item.role == "user" else AIMessage
            prompt.append(cls(content=item.content))
        prompt.append(HumanMessage(content=ctx.text or "(no text)"))

        try:
            raw = await self._invoke_llm(self._llm, prompt, "decide_invoke")
        except LLMFailure as exc:
            logger.warning("Decision call failed for %s: %s", res.phone_e164, exc)
            return {"decoded": None, "llm_failed": True}

        decoded = parse_action(raw)
        logger.debug("Decoded action %s for %s", _action_name(decoded), res.phone_e164)
        return {"decoded": decoded, "llm_failed": False}

    async def _dispatch_node(self, state: AgentState) -> dict:
        if state.get("llm_failed"):
            sources = state.get("sources") or []
            if sources:
                reply = raw_sources_fallback(
                    sources[:3], header="I can't reply fully right now. Here is what I found:",
                )
            else:
                reply = SAFE_REPLY
            return {"reply": reply, "action": "llm_fallback"}

        decoded = state["decoded"]
        handler = self._handlers[type(decoded)]
        reply = await handler(decoded, state)
        return {"reply": reply, "action": _action_name(decoded)}

    # ── Action handlers ──────────────────────────────────────────────

    async def _on_answer(self, action: AnswerAction, state: AgentState) -> str:
        return (action.answer or "").strip() or SAFE_REPLY

    async def _on_escalate(self, action: EscalateAction, state: AgentState) -> str:
        res = state["resolution"]
        if res.scope is Scope.PROVIDER:
            return (action.answer or "").strip() or SAFE_REPLY
        summary = action.escalate_summary or action.answer or state["ctx"].text
        await self._escalations.create_escalation(
            res.phone_e164,
            summary,
            res.scope.value,
            res.subject_id,
            display_name=res.display_name,
        )
        return REASSURANCE_MESSAGE

    async def _on_onboard_name(self, action: OnboardNameAction, state: AgentState) -> str:
        res = state["resolution"]
        name = (action.name or "").strip()
        if name and res.scope is Scope.VISITOR and res.subject_id:
            await self._resolver.set_visitor_name(res.subject_id, name)
        if action.answer and action.answer.strip():
            return action.answer.strip()
        return FALLBACK_GREETING.format(name=name) if name else SAFE_REPLY

    async def _on_check_availability(self, action: CheckAvailabilityAction, state: AgentState) -> str:
        return AVAILABILITY_NUDGE

    async def _on_start_scheduling(self, action: StartSchedulingAction, state: AgentState) -> str:
        res = state["resolution"]
        if res.scope is Scope.PROVIDER or not res.subject_id:
            return (action.answer or "").strip() or SAFE_REPLY
        try:
            session = await self._sessions.start(res.subject_id, res.scope.value, action.provider_name)
        except NoProviderAvailable:
            return NO_PROVIDER_MESSAGE

        if not action.preferred_time:
            provider = await asyncio.to_thread(self._store.get_provider, session.provider_id)
            return messages.ask_for_time_reply(provider.name if provider else "our provider")
        # Availability is advisory; the provider confirms, so go straight to approval
        return await self._submit(session.id, action.preferred_time, action.reason, state)

    async def _on_process_time_selection(
        self, action: ProcessTimeSelectionAction, state: AgentState,
    ) -> str:
        res = state["resolution"]
        active = state.get("session")
        session_id = action.session_id or (active.id if active else None)
        if not session_id or not res.subject_id:
            return SESSION_EXPIRED_MESSAGE

        session = await self._sessions.get(session_id)
        if session is None or session.patient_id != res.subject_id:
            return SESSION_EXPIRED_MESSAGE
        return await self._submit(
            session_id, action.preferred_time or state["ctx"].text, action.reason, state,
        )

    async def _on_request_noted(self, action: RequestNoted, state: AgentState) -> str:
        return REQUEST_NOTED_MESSAGE

    async def _on_empty(self, action: EmptyReply, state: AgentState) -> str:
        return SAFE_REPLY

    async def _submit(
        self, session_id: str, time_text: str, reason: str | None, state: AgentState,
    ) -> str:
        res = state["resolution"]
        personal = state.get("personal")
        name = res.display_name or (personal.name if personal else None)
        if not name:
            name = "Patient" if res.scope is Scope.PATIENT else "Visitor"
        try:
            _, request = await self._sessions.submit_time(
                session_id, time_text, reason,
                patient_phone=res.phone_e164, patient_name=name,
            )
        except SessionExpired:
            logger.info("Session %s expired before a time was submitted", session_id)
            return SESSION_EXPIRED_MESSAGE
        except NoProviderAvailable:
            return NO_PROVIDER_MESSAGE
        return messages.request_sent_reply(request, self._timezone)

    # ── Graph assembly ───────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(AgentState)

        graph.add_node("resolve_scope", self._resolve_scope_node)
        graph.add_node("media_escalation", self._media_escalation_node)
        graph.add_node("approval_response", self._approval_response_node)
        graph.add_node("technical", self._technical_node)
        graph.add_node("gather_context", self._gather_context_node)
        graph.add_node("decide", self._decide_node)
        graph.add_node("dispatch", self._dispatch_node)

        graph.set_entry_point("resolve_scope")
        graph.add_conditional_edges(
            "resolve_scope",
            route_message,
            {
                "media_escalation": "media_escalation",
                "approval_response": "approval_response",
                "technical": "technical",
                "gather_context": "gather_context",
            },
        )
        graph.add_edge("gather_context", "decide")
        graph.add_edge("decide", "dispatch")
        for terminal in ("media_escalation", "approval_response", "technical", "dispatch"):
            graph.add_edge(terminal, END)

        compiled = graph.compile()
        logger.debug(
            "Decision graph compiled — decision model: %s, technical model: %s",
            FAST_MODEL_NAME, MODEL_NAME,
        )
        return compiled
