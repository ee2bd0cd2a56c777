"""Decoding of the model's JSON action envelope into typed variants.

The model is asked for exactly one JSON object.  Whatever it actually
returns is decoded into one of the ``Action`` variants, or into one of
two decode outcomes:

- ``RequestNoted``: the output looked like JSON but did not validate.
  It must never be echoed back to the user.
- ``EmptyReply``: the model returned nothing usable.

Plain prose (no JSON at all) is treated as an answer.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    answer: str | None = None


class AnswerAction(_Envelope):
    action: Literal["answer"]


class EscalateAction(_Envelope):
    action: Literal["escalate"]
    escalate_summary: str | None = None


class OnboardNameAction(_Envelope):
    action: Literal["onboard_name"]
    name: str | None = None


class CheckAvailabilityAction(_Envelope):
    action: Literal["check_availability"]
    provider_name: str | None = None


class StartSchedulingAction(_Envelope):
    action: Literal["start_interactive_scheduling", "schedule_meeting"]
    provider_name: str | None = None
    preferred_time: str | None = None
    reason: str | None = None


class ProcessTimeSelectionAction(_Envelope):
    action: Literal["process_time_selection"]
    session_id: str | None = None
    preferred_time: str | None = None
    reason: str | None = None


Action = Annotated[
    Union[
        AnswerAction,
        EscalateAction,
        OnboardNameAction,
        CheckAvailabilityAction,
        StartSchedulingAction,
        ProcessTimeSelectionAction,
    ],
    Field(discriminator="action"),
]

ACTION_TYPES: tuple[type[BaseModel], ...] = (
    AnswerAction,
    EscalateAction,
    OnboardNameAction,
    CheckAvailabilityAction,
    StartSchedulingAction,
    ProcessTimeSelectionAction,
)

_action_adapter: TypeAdapter = TypeAdapter(Action)


class RequestNoted(BaseModel):
    """JSON-looking output that failed validation."""

    raw: str


class EmptyReply(BaseModel):
    """The model produced no content."""


Decoded = Union[
    AnswerAction,
    EscalateAction,
    OnboardNameAction,
    CheckAvailabilityAction,
    StartSchedulingAction,
    ProcessTimeSelectionAction,
    RequestNoted,
    EmptyReply,
]

DECODED_TYPES: tuple[type[BaseModel], ...] = (*ACTION_TYPES, RequestNoted, EmptyReply)


_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def _strip_fences(text: str) -> str:
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text


def _looks_like_json(text: str) -> bool:
    """Object-shaped output, or a complete JSON array.

    Prose that merely opens with a bracket (``[S1] Iron tablets…``) is not JSON.
    """
    stripped = text.strip()
    if stripped.startswith("{") or '"action"' in text:
        return True
    if stripped.startswith("["):
        try:
            json.loads(stripped)
        except json.JSONDecodeError:
            return False
        return True
    return False


def _extract_object(text: str) -> Any:
    """Best-effort JSON load: the whole string, then the outermost braces."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(text[start:end + 1])
        except json.JSONDecodeError:
            return None
    return None


def parse_action(raw: str | None) -> Decoded:
    """Decode raw model output into an action variant or a decode outcome."""
    text = (raw or "").strip()
    if not text:
        return EmptyReply()

    candidate = _strip_fences(text)
    if not candidate:
        return EmptyReply()
    data = _extract_object(candidate) if _looks_like_json(candidate) else None

    if data is None:
        if _looks_like_json(candidate):
            logger.warning("Model returned malformed JSON: %.200s", text)
            return RequestNoted(raw=text)
        return AnswerAction(action="answer", answer=candidate)

    if not isinstance(data, dict):
        logger.warning("Model returned non-object JSON: %.200s", text)
        return RequestNoted(raw=text)

    try:
        return _action_adapter.validate_python(data)
    except ValidationError as exc:
        answer = data.get("answer")
        if isinstance(answer, str) and answer.strip():
            logger.info("Unknown action %r, using its answer text", data.get("action"))
            return AnswerAction(action="answer", answer=answer.strip())
        logger.warning("Action envelope failed validation: %s", exc.errors()[:3])
        return RequestNoted(raw=text)
