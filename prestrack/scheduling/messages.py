"""WhatsApp message templates for the scheduling workflows."""

from __future__ import annotations

from datetime import datetime, tzinfo
from zoneinfo import ZoneInfo

from prestrack.models import MEETING_DURATION, PendingMeetingRequest

SIGNATURE = "With care,\nPrestrack ✨"


def format_local(when: datetime, tz: str | tzinfo) -> str:
    """``Tue, Oct 20, 3:00 PM`` in the clinic's time zone."""
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    local = when.astimezone(zone)
    return f"{local:%a, %b} {local.day}, {_clock(local)}"


def _clock(when: datetime) -> str:
    hour = when.hour % 12 or 12
    return f"{hour}:{when:%M %p}"


def _reason_line(request: PendingMeetingRequest) -> str:
    return f"📝 *Reason:* {request.reason}\n" if request.reason else ""


def provider_request_message(request: PendingMeetingRequest, tz: str | tzinfo) -> str:
    return (
        "📋 *New Meeting Request*\n\n"
        f"👤 *Patient:* {request.patient_name}\n"
        f"📱 *Patient Phone:* {request.patient_phone}\n"
        f"📅 *Requested Time:* {format_local(request.requested_time, tz)}\n"
        f"{_reason_line(request)}"
        "\n🔔 *Action Required:*\n"
        "Please confirm or decline this meeting request.\n\n"
        "Reply with:\n"
        "• \"YES\" to approve\n"
        "• \"NO\" to decline\n\n"
        "⏰ *Expires in 2 hours*\n"
        f"Ref: {request.id}"
    )


def patient_ack_message(request: PendingMeetingRequest, tz: str | tzinfo) -> str:
    return (
        "📅 *Meeting Request Received*\n\n"
        f"Hello {request.patient_name}!\n\n"
        f"Your consultation request has been sent to {request.provider_name}:\n\n"
        f"📅 *Requested Time:* {format_local(request.requested_time, tz)}\n"
        f"👩‍⚕️ *Provider:* {request.provider_name}\n"
        f"{_reason_line(request)}"
        "\n🔄 *Status:* Awaiting provider confirmation\n\n"
        "You'll receive the meeting link once the provider approves.\n\n"
        "⏰ *Response expected within 2 hours*\n\n"
        f"{SIGNATURE}"
    )


def _meeting_window(request: PendingMeetingRequest, tz: str | tzinfo) -> str:
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    end = (request.requested_time + MEETING_DURATION).astimezone(zone)
    return f"{format_local(request.requested_time, tz)} - {_clock(end)}"


def patient_confirmed_message(request: PendingMeetingRequest, tz: str | tzinfo) -> str:
    return (
        "🎉 *Meeting Confirmed!*\n\n"
        f"Hello {request.patient_name}!\n\n"
        f"Your consultation with {request.provider_name} has been approved:\n\n"
        f"📱 *Meeting Link:* {request.meeting_link}\n"
        f"📅 *Time:* {_meeting_window(request, tz)}\n"
        f"👩‍⚕️ *Provider:* {request.provider_name}\n\n"
        "🔗 Click the link to join your meeting at the scheduled time.\n\n"
        f"{SIGNATURE}"
    )


def provider_confirmed_message(request: PendingMeetingRequest, tz: str | tzinfo) -> str:
    return (
        "✅ *Meeting Confirmed*\n\n"
        f"Your consultation with {request.patient_name} has been scheduled:\n\n"
        f"📱 *Meeting Link:* {request.meeting_link}\n"
        f"📅 *Time:* {_meeting_window(request, tz)}\n"
        f"👤 *Patient:* {request.patient_name}\n\n"
        "📋 Meeting created and added to your calendar."
    )


def patient_declined_message(request: PendingMeetingRequest, tz: str | tzinfo) -> str:
    return (
        "❌ *Meeting Request Declined*\n\n"
        f"Hello {request.patient_name}!\n\n"
        f"Unfortunately, your consultation request with {request.provider_name} "
        f"for {format_local(request.requested_time, tz)} has been declined.\n\n"
        "💡 *Next Steps:*\n"
        "• Try scheduling for a different time\n"
        "• Contact our support team for assistance\n\n"
        "We apologize for any inconvenience.\n\n"
        f"{SIGNATURE}"
    )


def provider_declined_reply(request: PendingMeetingRequest) -> str:
    return f"Declined the meeting request from {request.patient_name}. The patient has been notified."


def provider_confirmed_reply(request: PendingMeetingRequest) -> str:
    return (
        f"Confirmed the meeting with {request.patient_name}. "
        f"Meeting link: {request.meeting_link}"
    )


def pending_list_message(requests: list[PendingMeetingRequest], tz: str | tzinfo) -> str:
    if not requests:
        return "You have no pending meeting requests."
    lines = [f"📋 *Pending meeting requests ({len(requests)})*", ""]
    for i, req in enumerate(requests, start=1):
        line = f"{i}. {req.patient_name} ({req.patient_phone}), {format_local(req.requested_time, tz)}"
        if req.reason:
            line += f", {req.reason}"
        lines.append(line)
        lines.append(f"   Ref: {req.id}")
    lines.append("")
    lines.append('Reply "YES" or "NO" to answer the most recent one, or add a Ref to pick another.')
    return "\n".join(lines)


def request_sent_reply(request: PendingMeetingRequest, tz: str | tzinfo) -> str:
    return (
        f"📅 Your consultation request with {request.provider_name} for "
        f"{format_local(request.requested_time, tz)} has been sent.\n\n"
        "You'll receive the meeting link as soon as they confirm."
    )


def ask_for_time_reply(provider_name: str) -> str:
    return (
        f"Happy to set up a consultation with {provider_name}. "
        "Which day and time would suit you? For example, \"tomorrow at 3pm\"."
    )
