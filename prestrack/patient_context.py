"""Compact per-patient context bundle injected into the decision prompt."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from prestrack.models import PatientContext, PregnancySummary, utcnow
from prestrack.services.cache import MISSING, TTLCache
from prestrack.services.store import ClinicStore

logger = logging.getLogger(__name__)

CONTEXT_TTL_SECONDS = 2 * 60


class PersonalContextFetcher:
    """Reads prescriptions, reminders and the ANC summary for a phone.

    Any failure caches "no context" for the full TTL so a failing database
    is not hammered by every inbound message.
    """

    def __init__(
        self,
        store: ClinicStore,
        *,
        cache: TTLCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._cache = cache or TTLCache(ttl_seconds=CONTEXT_TTL_SECONDS)
        self._clock = clock

    async def fetch(self, phone_e164: str) -> PatientContext | None:
        key = f"pc:{phone_e164}"
        cached = self._cache.get(key, MISSING)
        if cached is not MISSING:
            return cached

        try:
            data = await asyncio.to_thread(self._load, phone_e164)
        except Exception:
            logger.exception("Personal context lookup failed for %s", phone_e164)
            data = None
        self._cache.put(key, data)
        return data

    def _load(self, phone_e164: str) -> PatientContext | None:
        patient = self._store.find_patient_by_phone(phone_e164)
        if patient is None:
            return None
        patient_id, name = patient
        now = self._clock()
        return PatientContext(
            patient_id=patient_id,
            name=name,
            prescriptions=self._store.list_prescriptions(patient_id),
            upcoming_reminders=self._store.list_upcoming_reminders(patient_id, now),
            pregnancy=_with_gestational_age(self._store.get_active_pregnancy(patient_id), now),
        )


def _with_gestational_age(
    pregnancy: PregnancySummary | None, now: datetime,
) -> PregnancySummary | None:
    if pregnancy is None or not pregnancy.lmp:
        return pregnancy
    try:
        lmp = datetime.fromisoformat(pregnancy.lmp.replace("Z", "+00:00"))
    except ValueError:
        return pregnancy
    if lmp.tzinfo is None:
        lmp = lmp.replace(tzinfo=now.tzinfo)
    weeks = max(0, round((now - lmp).days / 7))
    return pregnancy.model_copy(update={"ga_weeks": weeks})


def render_context(ctx: PatientContext | None) -> str:
    """Render the bundle as a short plain-text block for the system prompt."""
    if ctx is None:
        return "No personal records on file."

    lines = [f"Patient name: {ctx.name or 'unknown'}"]
    if ctx.prescriptions:
        lines.append("Active prescriptions:")
        for rx in ctx.prescriptions:
            detail = " ".join(p for p in (rx.strength, rx.form) if p)
            status = f" [{rx.status}]" if rx.status else ""
            lines.append(f"  - {rx.medication_name} {detail}".rstrip() + status)
    else:
        lines.append("Active prescriptions: none")

    if ctx.upcoming_reminders:
        lines.append("Upcoming medication reminders:")
        for rem in ctx.upcoming_reminders:
            lines.append(f"  - {rem.when} {rem.medication_name or ''}".rstrip())

    if ctx.pregnancy:
        p = ctx.pregnancy
        parts = [
            f"GA {p.ga_weeks} weeks" if p.ga_weeks is not None else None,
            f"EDD {p.edd[:10]}" if p.edd else None,
            f"last ANC contact {p.last_contact_date[:10]}" if p.last_contact_date else None,
        ]
        lines.append("Pregnancy: " + (", ".join(x for x in parts if x) or "active"))
    return "\n".join(lines)
