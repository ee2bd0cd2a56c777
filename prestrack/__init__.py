"""Prestrack Agent — the orchestration core of a clinic WhatsApp assistant.

Architecture Overview
=====================

Each inbound WhatsApp message is handled independently:

1. **Scope Resolver** — maps the sender's phone to a patient, a provider or
   an anonymous visitor (visitors are created on first contact).
2. **Retrieval + personal context** — scoped knowledge-base search (cached
   4 minutes) and the patient's prescriptions, reminders and ANC summary
   (cached 2 minutes), fetched concurrently.
3. **Decision Engine** — a LangGraph StateGraph that makes one LLM call,
   decodes a JSON action envelope into a typed variant and dispatches it.
4. **Workflows** — 30-minute scheduling sessions feed a 2-hour provider
   approval workflow that creates a Google Meet event on confirmation.
   Danger signs and media are escalated to every provider.

Key Design Decisions
--------------------
- **Typed state store**: one SQLite table per workflow, schema versioned
  with ``PRAGMA user_version``, compare-and-set updates on a ``version``
  column so two provider replies can never both resolve a request.
- **Explicit request context**: phone, request id and retrieval session
  key travel in a ``RequestContext``; there is no ambient "current user".
- **Provider precedence**: a provider's bare "yes"/"no" goes straight to
  the approval workflow, whatever the model would have decided.
- **Best-effort notifications**: gateway sends are never retried and never
  roll back a workflow transition; calendar failures do.
- **Active expiry**: a background sweeper expires overdue requests, on top
  of the expiry check made on every read.

Package Structure
-----------------
- ``prestrack/agent.py`` — LangGraph decision engine
- ``prestrack/actions.py`` — action envelope decoding
- ``prestrack/prompts.py`` — system prompts and fixed replies
- ``prestrack/identity.py`` — scope resolution
- ``prestrack/retrieval.py`` / ``prestrack/patient_context.py`` — context caches
- ``prestrack/scheduling/`` — sessions, approvals, messages, sweeper
- ``prestrack/escalations.py`` — escalation fan-out
- ``prestrack/services/`` — store, gateway, Geneline, Google Calendar, cache, metrics
- ``prestrack/runtime.py`` — wiring; ``prestrack/server.py`` — FastAPI app
- ``prestrack/main.py`` — CLI chat
"""
