"""Wiring of the orchestration core.

``build_runtime`` constructs every collaborator once; the server keeps the
result in ``app.state`` and the CLI holds it locally.  Per-message data
never lives here; it travels in a ``RequestContext``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from prestrack.agent import DecisionEngine
from prestrack.config import CLINIC_TIMEZONE, DATABASE_PATH
from prestrack.escalations import EscalationNotifier
from prestrack.identity import ScopeResolver, to_e164
from prestrack.models import AgentReply, RequestContext, utcnow
from prestrack.patient_context import PersonalContextFetcher
from prestrack.retrieval import RetrievalCache
from prestrack.scheduling.approvals import ProviderApprovalWorkflow
from prestrack.scheduling.sessions import SchedulingSessionManager
from prestrack.scheduling.sweeper import ExpirySweeper
from prestrack.services.calendar_client import GoogleCalendarClient
from prestrack.services.gateway import WhatsAppGateway
from prestrack.services.geneline_client import GenelineClient
from prestrack.services.store import ClinicStore

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    store: ClinicStore
    gateway: WhatsAppGateway
    calendar: GoogleCalendarClient
    geneline: GenelineClient
    resolver: ScopeResolver
    retrieval: RetrievalCache
    context_fetcher: PersonalContextFetcher
    approvals: ProviderApprovalWorkflow
    sessions: SchedulingSessionManager
    escalations: EscalationNotifier
    engine: DecisionEngine
    sweeper: ExpirySweeper
    clock: Callable[[], datetime] = utcnow

    async def handle_message(self, ctx: RequestContext) -> AgentReply:
        """Answer one inbound message and record both sides in the audit log."""
        reply = await self.engine.respond(ctx)
        phone = to_e164(ctx.phone)
        inbound = ctx.text or (f"[media] {ctx.media.filename or ctx.media.mime_type or ''}".strip()
                               if ctx.media else "")
        try:
            now = self.clock()
            if inbound:
                await asyncio.to_thread(self.store.log_message, phone, "inbound", inbound, now=now)
            await asyncio.to_thread(self.store.log_message, phone, "outbound", reply.text, now=now)
        except Exception:
            logger.exception("[%s] Could not write conversation log for %s", ctx.request_id, phone)
        logger.info(
            "[%s] %s (%s) -> action=%s",
            ctx.request_id, phone, reply.scope.value if reply.scope else "?", reply.action,
        )
        return reply

    async def aclose(self) -> None:
        await self.sweeper.stop()
        for client in (self.gateway, self.calendar, self.geneline):
            await client.aclose()


def build_runtime(
    db_path: str | None = None,
    *,
    store: ClinicStore | None = None,
    gateway: Any = None,
    calendar: Any = None,
    geneline: Any = None,
    llm: Any = None,
    technical_llm: Any = None,
    clock: Callable[[], datetime] = utcnow,
    timezone: str = CLINIC_TIMEZONE,
    sweeper_interval: float | None = None,
) -> Runtime:
    store = store or ClinicStore(db_path or DATABASE_PATH)
    gateway = gateway or WhatsAppGateway()
    calendar = calendar or GoogleCalendarClient()
    geneline = geneline or GenelineClient()

    resolver = ScopeResolver(store, clock=clock)
    retrieval = RetrievalCache(geneline)
    context_fetcher = PersonalContextFetcher(store, clock=clock)
    approvals = ProviderApprovalWorkflow(store, gateway, calendar, clock=clock, timezone=timezone)
    sessions = SchedulingSessionManager(store, approvals, clock=clock, timezone=timezone)
    escalations = EscalationNotifier(store, gateway, clock=clock)
    engine = DecisionEngine(
        store=store,
        resolver=resolver,
        retrieval=retrieval,
        context_fetcher=context_fetcher,
        sessions=sessions,
        approvals=approvals,
        escalations=escalations,
        llm=llm,
        technical_llm=technical_llm,
        clock=clock,
        timezone=timezone,
    )
    sweeper_kwargs = {"interval_seconds": sweeper_interval} if sweeper_interval else {}
    sweeper = ExpirySweeper(store, approvals, clock=clock, **sweeper_kwargs)

    logger.info("Runtime ready (store=%s, schema v%d)", store.path, store.schema_version)
    return Runtime(
        store=store,
        gateway=gateway,
        calendar=calendar,
        geneline=geneline,
        resolver=resolver,
        retrieval=retrieval,
        context_fetcher=context_fetcher,
        approvals=approvals,
        sessions=sessions,
        escalations=escalations,
        engine=engine,
        sweeper=sweeper,
        clock=clock,
    )
