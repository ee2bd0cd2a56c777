"""Error taxonomy for the orchestration core.

Identity and input errors propagate to the caller.  Side-effect failures
(gateway sends, escalation fan-out, retrieval) are caught where they happen
and only logged.  Calendar failures abort the confirm transition.
"""

from __future__ import annotations


class PrestrackError(Exception):
    """Base class for every error raised by the core."""


class InvalidIdentity(PrestrackError):
    """The inbound phone / chat id is not a usable E.164 number."""


class NoProviderAvailable(PrestrackError):
    """Scheduling cannot start because the provider table is empty."""


class SessionExpired(PrestrackError):
    """The scheduling session is missing, expired or no longer accepts a time."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Scheduling session {session_id} is missing or expired")


class ConcurrentModification(PrestrackError):
    """A compare-and-set write lost against a newer version of the record."""

    def __init__(self, record_id: str, expected_version: int):
        self.record_id = record_id
        self.expected_version = expected_version
        super().__init__(
            f"Record {record_id} changed since version {expected_version}"
        )


# ── Provider approval misuse ─────────────────────────────────────────


class ApprovalError(PrestrackError):
    """Base for approval-resolution failures reported back to the provider."""

    def __init__(self, request_id: str, message: str):
        self.request_id = request_id
        super().__init__(message)


class ApprovalNotFound(ApprovalError):
    def __init__(self, request_id: str):
        super().__init__(request_id, "Approval request not found")


class ApprovalUnauthorized(ApprovalError):
    def __init__(self, request_id: str):
        super().__init__(request_id, "Unauthorized: provider phone mismatch")


class ApprovalAlreadyResolved(ApprovalError):
    def __init__(self, request_id: str, status: str):
        self.status = status
        super().__init__(request_id, f"Request already {status}")


class ApprovalExpired(ApprovalError):
    def __init__(self, request_id: str):
        super().__init__(request_id, "Approval request has expired")


# ── External collaborators ───────────────────────────────────────────


class GatewaySendFailure(PrestrackError):
    """The messaging gateway rejected or failed an outbound send."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class VectorSearchError(PrestrackError):
    """The embeddings search backend failed."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class CalendarAPIError(PrestrackError):
    """Google Calendar authentication or event creation failed."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class LLMFailure(PrestrackError):
    """The language model call raised or returned nothing usable."""
