"""Google Calendar client that creates consultation events with Meet links.

Authentication uses a service account through ``google-auth``; the bearer
token it mints is cached until one minute before it expires.  Calendar
calls themselves go over ``httpx``.

Calendar docs: https://developers.google.com/calendar/api/v3/reference/events
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from prestrack.config import GCS_CREDENTIALS_JSON, GOOGLE_CALENDAR_ID
from prestrack.errors import CalendarAPIError
from prestrack.models import MEETING_DURATION, CalendarEvent
from prestrack.services.metrics import metrics

logger = logging.getLogger(__name__)

CALENDAR_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
TOKEN_LIFETIME_SECONDS = 3600
TOKEN_REFRESH_MARGIN_SECONDS = 60
REQUEST_TIMEOUT_SECONDS = 15.0


class GoogleCalendarClient:
    def __init__(
        self,
        credentials: dict[str, Any] | str | None = None,
        *,
        calendar_id: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._raw_credentials = credentials if credentials is not None else GCS_CREDENTIALS_JSON
        self._credentials: service_account.Credentials | None = None
        self._calendar_id = calendar_id or GOOGLE_CALENDAR_ID
        self._client = http_client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS)
        self._clock = clock
        self._access_token: str | None = None
        self._token_expiry: float = 0.0

    # ── Auth ─────────────────────────────────────────────────────────

    def _service_account(self) -> service_account.Credentials:
        """Load the service-account credentials on first use."""
        if self._credentials is None:
            raw = self._raw_credentials
            if not raw:
                raise CalendarAPIError("GCS_CREDENTIALS_JSON environment variable is not set")
            if isinstance(raw, str):
                try:
                    raw = json.loads(raw)
                except json.JSONDecodeError as exc:
                    raise CalendarAPIError("Invalid GCS credentials JSON format") from exc
            try:
                self._credentials = service_account.Credentials.from_service_account_info(
                    raw, scopes=[CALENDAR_SCOPE],
                )
            except (ValueError, KeyError, TypeError) as exc:
                raise CalendarAPIError(f"Invalid service-account credentials: {exc}") from exc
        return self._credentials

    async def _get_access_token(self) -> str:
        if self._access_token and self._clock() < self._token_expiry:
            return self._access_token

        creds = self._service_account()
        try:
            await asyncio.to_thread(creds.refresh, GoogleAuthRequest())
        except GoogleAuthError as exc:
            raise CalendarAPIError(f"Failed to get access token: {exc}") from exc
        if not creds.token:
            raise CalendarAPIError("Google returned no access token")

        lifetime: float = TOKEN_LIFETIME_SECONDS
        if creds.expiry is not None:
            # google-auth keeps expiry as naive UTC
            lifetime = (creds.expiry - datetime.now(UTC).replace(tzinfo=None)).total_seconds()
        self._access_token = creds.token
        self._token_expiry = self._clock() + lifetime - TOKEN_REFRESH_MARGIN_SECONDS
        logger.debug("Google access token refreshed (expires in %.0fs)", lifetime)
        return self._access_token

    def _events_url(self, event_id: str | None = None) -> str:
        url = f"{CALENDAR_BASE_URL}/calendars/{quote(self._calendar_id, safe='')}/events"
        return f"{url}/{event_id}" if event_id else url

    # ── Events ───────────────────────────────────────────────────────

    async def create_meet_event(
        self,
        title: str,
        description: str,
        start_iso: str,
        end_iso: str,
        attendee_emails: list[str] | None = None,
        timezone: str = "UTC",
    ) -> CalendarEvent:
        """Create an event with a Google Meet conference attached."""
        event: dict[str, Any] = {
            "summary": title,
            "description": description,
            "start": {"dateTime": start_iso, "timeZone": timezone},
            "end": {"dateTime": end_iso, "timeZone": timezone},
            "conferenceData": {
                "createRequest": {
                    "requestId": f"prestrack-meet-{uuid.uuid4().hex}",
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                },
            },
        }
        if attendee_emails:
            event["attendees"] = [{"email": e} for e in attendee_emails]

        async with metrics.track("google_calendar", "events.insert"):
            token = await self._get_access_token()
            try:
                response = await self._client.post(
                    self._events_url(),
                    params={"conferenceDataVersion": 1},
                    json=event,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.HTTPError as exc:
                raise CalendarAPIError(f"Failed to create Google Meet event: {exc}") from exc
            if response.status_code >= 400:
                raise CalendarAPIError(
                    f"Failed to create meeting: {response.status_code} - {response.text}",
                    status_code=response.status_code,
                )

        return _parse_event(response)

    async def delete_event(self, event_id: str) -> None:
        async with metrics.track("google_calendar", "events.delete"):
            token = await self._get_access_token()
            try:
                response = await self._client.delete(
                    self._events_url(event_id), headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.HTTPError as exc:
                raise CalendarAPIError(f"Failed to delete event: {exc}") from exc
            if response.status_code >= 400 and response.status_code != 404:
                raise CalendarAPIError(
                    f"Failed to delete event: {response.status_code}",
                    status_code=response.status_code,
                )

    async def create_consultation(
        self,
        patient_name: str,
        provider_name: str,
        start: datetime,
        *,
        provider_email: str | None = None,
        patient_email: str | None = None,
        reason: str | None = None,
    ) -> CalendarEvent:
        """Create the standard 30-minute consultation between two parties."""
        end = start + MEETING_DURATION
        title = f"Consultation: {provider_name} & {patient_name}"
        description = "Clinic consultation\n"
        if reason:
            description += f"Reason: {reason}\n"
        description += f"\nProvider: {provider_name}\nPatient: {patient_name}"
        attendees = [e for e in (patient_email, provider_email) if e]
        return await self.create_meet_event(
            title, description, start.isoformat(), end.isoformat(), attendees, "UTC",
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def _parse_event(response: httpx.Response) -> CalendarEvent:
    try:
        data = response.json()
        return CalendarEvent(
            id=data["id"],
            summary=data.get("summary"),
            hangout_link=data.get("hangoutLink"),
            start=data["start"]["dateTime"],
            end=data["end"]["dateTime"],
        )
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise CalendarAPIError(
            f"Unexpected event response: {response.text[:200]}",
            status_code=response.status_code,
        ) from exc
