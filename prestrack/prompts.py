"""System prompts and fixed replies for the Prestrack WhatsApp assistant."""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

from prestrack.models import RetrievedSource, SchedulingSession, Scope

RAW_SNIPPET_CHARS = 400

# ── Fixed replies ────────────────────────────────────────────────────

REASSURANCE_MESSAGE = (
    "Thank you for telling us. I've alerted our care team and a provider "
    "will contact you shortly.\n\n"
    "If you feel very unwell, have heavy bleeding, severe pain or trouble "
    "breathing, please go to the nearest health facility right away."
)
FALLBACK_GREETING = "Nice to meet you, {name}! How can I help you today?"
REQUEST_NOTED_MESSAGE = (
    "Thanks, your request has been noted. Our team will follow up if anything else is needed."
)
AVAILABILITY_NUDGE = (
    "Our providers confirm times directly, so there's no need to check a calendar first. "
    "Just tell me the day and time that suits you, for example \"tomorrow at 3pm\", "
    "and I'll send the request."
)
NOTHING_TO_APPROVE = "There are no pending meeting requests to approve or decline."
SAFE_REPLY = "Sorry, I couldn't process that right now. Please try again in a moment."
SESSION_EXPIRED_MESSAGE = (
    "That scheduling request has expired. Tell me again which day and time "
    "you'd like and I'll start a new request."
)
NO_PROVIDER_MESSAGE = (
    "Sorry, no healthcare provider is available for scheduling right now. Please try again later."
)
MEDIA_RECEIVED_MESSAGE = (
    "Thanks, we've received your file and shared it with our care team. "
    "A provider will review it and get back to you."
)
NO_SOURCES_MESSAGE = (
    "I couldn't find anything in the clinical knowledge base for that question."
)
CALENDAR_FAILED_MESSAGE = (
    "I couldn't create the meeting link right now, so the request is still pending. "
    "Please reply YES again in a few minutes."
)


# ── Decision prompt ──────────────────────────────────────────────────

ACTION_PROTOCOL = """## Response Format
Reply with ONE JSON object and nothing else. No markdown, no code fences.

{{"action": "<action>", "answer": "<message to send>", ...}}

Actions:
- "answer": reply to the user. Put the reply in "answer".
- "escalate": the user describes a danger sign (heavy bleeding, severe
  abdominal pain, convulsions, severe headache with blurred vision, fever,
  reduced fetal movement, thoughts of self-harm). Add "escalate_summary"
  (one short sentence, under 180 characters).
- "onboard_name": the user told you their name. Add "name".
- "check_availability": the user asks when a provider is free without
  giving a time. Add "provider_name" if mentioned.
- "start_interactive_scheduling": the user wants a consultation. Add
  "provider_name" if mentioned, "preferred_time" exactly as the user said
  it (e.g. "tomorrow at 3pm") if given, and "reason" if given.
- "process_time_selection": there is an active scheduling session below
  and the user is giving the time. Add "session_id", "preferred_time" and
  "reason" if given.

Never diagnose. Never invent medication doses. Keep "answer" short and
suitable for WhatsApp (plain text, at most a few short paragraphs)."""

SCOPE_INSTRUCTIONS = {
    Scope.PATIENT: (
        "You are talking with a registered patient. Use their personal records "
        "below to personalise answers, but only mention details they ask about."
    ),
    Scope.VISITOR: (
        "You are talking with a visitor who is not registered as a patient. "
        "If you don't know their name yet, greet them warmly and ask for it. "
        "Answer general health questions from the knowledge base only."
    ),
    Scope.PROVIDER: (
        "You are talking with one of the clinic's healthcare providers. "
        "Be brief and professional."
    ),
}

SYSTEM_PROMPT_TEMPLATE = """You are **Luna**, the caring WhatsApp assistant for the Prestrack maternal health clinic.

## Current Date & Time
Today is **{current_date}** ({current_day_of_week}). The local time is **{current_time}** ({timezone}).

## Who You Are Talking To
{scope_instructions}
Name on file: {display_name}

## Personal Records
{personal_context}

## Active Scheduling Session
{session_block}

## Knowledge Base Excerpts
{sources_block}

{action_protocol}
"""


def format_sources(sources: list[RetrievedSource]) -> str:
    """Number sources as ``[S1]``, ``[S2]`` ... for citation."""
    if not sources:
        return "No relevant excerpts found."
    blocks = []
    for i, src in enumerate(sources, start=1):
        header = f"[S{i}] {src.title}"
        if src.source_url:
            header += f" ({src.source_url})"
        blocks.append(f"{header}\n{src.text}")
    return "\n\n".join(blocks)


def _session_block(session: SchedulingSession | None, tz: ZoneInfo) -> str:
    if session is None:
        return "None."
    return (
        f"session_id: {session.id}\n"
        f"status: {session.status.value}\n"
        f"expires: {session.expires_at.astimezone(tz):%H:%M}"
    )


def get_system_prompt(
    scope: Scope,
    *,
    now: datetime,
    timezone: str,
    display_name: str | None = None,
    personal_context: str = "None.",
    sources: list[RetrievedSource] | None = None,
    session: SchedulingSession | None = None,
) -> str:
    tz = ZoneInfo(timezone)
    local = now.astimezone(tz)
    return SYSTEM_PROMPT_TEMPLATE.format(
        current_date=local.strftime("%Y-%m-%d"),
        current_day_of_week=local.strftime("%A"),
        current_time=local.strftime("%H:%M"),
        timezone=timezone,
        scope_instructions=SCOPE_INSTRUCTIONS[scope],
        display_name=display_name or "unknown",
        personal_context=personal_context,
        session_block=_session_block(session, tz),
        sources_block=format_sources(sources or []),
        action_protocol=ACTION_PROTOCOL.format(),
    )


# ── Provider technical mode ──────────────────────────────────────────

TECHNICAL_PROMPT_TEMPLATE = """You are a clinical reference assistant for healthcare providers at the Prestrack clinic.

## Quote-Only Policy
- Answer ONLY with near-verbatim excerpts from the sources below.
- Cite every excerpt with its number, e.g. [S1], [S2].
- Do not paraphrase dosing, thresholds or protocols; quote them.
- If the sources do not answer the question, say so in one sentence.
- Plain text suitable for WhatsApp, no headings.

## Sources
{sources_block}
"""


def get_technical_prompt(sources: list[RetrievedSource]) -> str:
    return TECHNICAL_PROMPT_TEMPLATE.format(sources_block=format_sources(sources))


def raw_sources_fallback(sources: list[RetrievedSource], header: str = "Relevant sources:") -> str:
    """Non-LLM answer: titles with the first few hundred characters of each."""
    lines = [header]
    for i, src in enumerate(sources, start=1):
        snippet = src.text[:RAW_SNIPPET_CHARS].strip()
        if len(src.text) > RAW_SNIPPET_CHARS:
            snippet += "…"
        lines.append(f"\n[S{i}] *{src.title}*\n{snippet}")
    return "\n".join(lines)
