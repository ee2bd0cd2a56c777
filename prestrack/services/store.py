"""SQLite-backed store for the directory and the workflow records.

Each workflow type has its own table (``scheduling_sessions``,
``meeting_requests``, ``escalations``) instead of sharing one generic
document table.  Mutable workflow rows carry a ``version`` column and every
update is a compare-and-set on it, so two concurrent resolutions of the
same meeting request cannot both win.

Schema changes are applied as numbered migrations tracked in
``PRAGMA user_version``.

All methods are blocking.  Async callers offload them with
``asyncio.to_thread``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator

from prestrack.errors import ConcurrentModification
from prestrack.models import (
    ApprovalStatus,
    Escalation,
    PendingMeetingRequest,
    PregnancySummary,
    PrescriptionSummary,
    Provider,
    ReminderSummary,
    SchedulingSession,
    Visitor,
)

logger = logging.getLogger(__name__)

MIGRATIONS: list[str] = [
    # 1: directory
    """
    CREATE TABLE IF NOT EXISTS providers (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      email TEXT,
      phone_e164 TEXT,
      created_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS patients (
      id TEXT PRIMARY KEY,
      first_name TEXT,
      last_name TEXT,
      created_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS visitors (
      id TEXT PRIMARY KEY,
      display_name TEXT,
      created_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS contact_channels (
      id TEXT PRIMARY KEY,
      owner_type TEXT NOT NULL,
      type TEXT NOT NULL,
      value TEXT NOT NULL,
      patient_id TEXT REFERENCES patients(id),
      visitor_id TEXT REFERENCES visitors(id),
      verified INTEGER NOT NULL DEFAULT 1,
      preferred INTEGER NOT NULL DEFAULT 1,
      UNIQUE (owner_type, type, value)
    );
    CREATE TABLE IF NOT EXISTS prescriptions (
      id TEXT PRIMARY KEY,
      patient_id TEXT NOT NULL REFERENCES patients(id),
      medication_name TEXT NOT NULL,
      strength TEXT,
      form TEXT,
      start_date TEXT,
      end_date TEXT,
      status TEXT,
      created_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS medication_reminders (
      id TEXT PRIMARY KEY,
      patient_id TEXT NOT NULL REFERENCES patients(id),
      prescription_id TEXT REFERENCES prescriptions(id),
      scheduled_time TEXT NOT NULL,
      status TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS pregnancies (
      id TEXT PRIMARY KEY,
      patient_id TEXT NOT NULL REFERENCES patients(id),
      is_active INTEGER NOT NULL DEFAULT 1,
      lmp TEXT,
      edd TEXT,
      last_contact_date TEXT
    );
    CREATE TABLE IF NOT EXISTS conversation_messages (
      id TEXT PRIMARY KEY,
      phone_e164 TEXT NOT NULL,
      direction TEXT NOT NULL,
      body TEXT NOT NULL,
      created_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_conversation_phone
      ON conversation_messages (phone_e164, created_at);
    """,
    # 2: workflow tables
    """
    CREATE TABLE IF NOT EXISTS scheduling_sessions (
      id TEXT PRIMARY KEY,
      patient_id TEXT NOT NULL,
      subject_type TEXT NOT NULL,
      provider_id TEXT NOT NULL,
      status TEXT NOT NULL,
      selected_time TEXT,
      reason TEXT,
      approval_request_id TEXT,
      created_at TEXT NOT NULL,
      expires_at TEXT NOT NULL,
      version INTEGER NOT NULL DEFAULT 0
    );
    CREATE INDEX IF NOT EXISTS idx_sessions_patient
      ON scheduling_sessions (patient_id, created_at);

    CREATE TABLE IF NOT EXISTS meeting_requests (
      id TEXT PRIMARY KEY,
      patient_phone TEXT NOT NULL,
      patient_name TEXT NOT NULL,
      provider_id TEXT NOT NULL,
      provider_name TEXT NOT NULL,
      provider_phone TEXT NOT NULL,
      provider_email TEXT,
      requested_time TEXT NOT NULL,
      reason TEXT,
      status TEXT NOT NULL,
      created_at TEXT NOT NULL,
      expires_at TEXT NOT NULL,
      meeting_link TEXT,
      google_meet_event_id TEXT,
      session_id TEXT,
      delivery_json TEXT NOT NULL DEFAULT '{}',
      version INTEGER NOT NULL DEFAULT 0
    );
    CREATE INDEX IF NOT EXISTS idx_requests_provider_status
      ON meeting_requests (provider_phone, status, created_at);

    CREATE TABLE IF NOT EXISTS escalations (
      id TEXT PRIMARY KEY,
      phone_e164 TEXT NOT NULL,
      summary TEXT NOT NULL,
      subject_type TEXT NOT NULL,
      subject_id TEXT,
      media_json TEXT,
      status TEXT NOT NULL,
      created_at TEXT NOT NULL
    );
    """,
]

_SESSION_COLUMNS = (
    "id", "patient_id", "subject_type", "provider_id", "status", "selected_time",
    "reason", "approval_request_id", "created_at", "expires_at",
)
_REQUEST_COLUMNS = (
    "id", "patient_phone", "patient_name", "provider_id", "provider_name",
    "provider_phone", "provider_email", "requested_time", "reason", "status",
    "created_at", "expires_at", "meeting_link", "google_meet_event_id",
    "session_id", "delivery_json",
)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


class ClinicStore:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._migrate()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _migrate(self) -> None:
        with self._lock, self.connection() as conn:
            current = conn.execute("PRAGMA user_version").fetchone()[0]
            for number, script in enumerate(MIGRATIONS, start=1):
                if number <= current:
                    continue
                conn.executescript(script)
                conn.execute(f"PRAGMA user_version = {number}")
                logger.info("Store: applied migration %d to %s", number, self._path)

    @property
    def schema_version(self) -> int:
        with self.connection() as conn:
            return conn.execute("PRAGMA user_version").fetchone()[0]

    # ── Directory: providers ─────────────────────────────────────────

    def add_provider(
        self, name: str, *, email: str | None = None, phone_e164: str | None = None,
        now: datetime,
    ) -> Provider:
        provider = Provider(id=new_id("prov"), name=name, email=email, phone_e164=phone_e164)
        with self.connection() as conn:
            conn.execute(
                "INSERT INTO providers (id, name, email, phone_e164, created_at) VALUES (?, ?, ?, ?, ?)",
                (provider.id, name, email, phone_e164, _iso(now)),
            )
        return provider

    def list_providers(self) -> list[Provider]:
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT id, name, email, phone_e164 FROM providers ORDER BY name COLLATE NOCASE ASC"
            ).fetchall()
        return [Provider.model_validate(dict(r)) for r in rows]

    def get_provider(self, provider_id: str) -> Provider | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT id, name, email, phone_e164 FROM providers WHERE id = ?", (provider_id,)
            ).fetchone()
        return Provider.model_validate(dict(row)) if row else None

    def find_provider_by_phone(self, phone_e164: str) -> Provider | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT id, name, email, phone_e164 FROM providers WHERE phone_e164 = ? "
                "ORDER BY created_at ASC LIMIT 1",
                (phone_e164,),
            ).fetchone()
        return Provider.model_validate(dict(row)) if row else None

    # ── Directory: patients ──────────────────────────────────────────

    def add_patient(
        self, first_name: str | None, last_name: str | None, *, phone_e164: str, now: datetime,
    ) -> str:
        patient_id = new_id("pat")
        with self.connection() as conn:
            conn.execute(
                "INSERT INTO patients (id, first_name, last_name, created_at) VALUES (?, ?, ?, ?)",
                (patient_id, first_name, last_name, _iso(now)),
            )
            conn.execute(
                "INSERT INTO contact_channels (id, owner_type, type, value, patient_id) "
                "VALUES (?, 'patient', 'whatsapp', ?, ?)",
                (new_id("cc"), phone_e164, patient_id),
            )
        return patient_id

    def find_patient_by_phone(self, phone_e164: str) -> tuple[str, str | None] | None:
        """Return ``(patient_id, display name)`` for a patient-linked WhatsApp channel."""
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT p.id, p.first_name, p.last_name
                FROM contact_channels cc JOIN patients p ON p.id = cc.patient_id
                WHERE cc.type = 'whatsapp' AND cc.value = ? AND cc.patient_id IS NOT NULL
                LIMIT 1
                """,
                (phone_e164,),
            ).fetchone()
        if row is None:
            return None
        return row["id"], _full_name(row["first_name"], row["last_name"])

    def add_prescription(
        self, patient_id: str, medication_name: str, *, now: datetime, **fields: Any,
    ) -> str:
        rx_id = new_id("rx")
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO prescriptions
                  (id, patient_id, medication_name, strength, form, start_date, end_date, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rx_id, patient_id, medication_name, fields.get("strength"),
                    fields.get("form"), fields.get("start_date"), fields.get("end_date"),
                    fields.get("status"), _iso(now),
                ),
            )
        return rx_id

    def add_reminder(
        self, patient_id: str, scheduled_time: datetime, *, status: str = "pending",
        prescription_id: str | None = None,
    ) -> str:
        reminder_id = new_id("rem")
        with self.connection() as conn:
            conn.execute(
                "INSERT INTO medication_reminders (id, patient_id, prescription_id, scheduled_time, status) "
                "VALUES (?, ?, ?, ?, ?)",
                (reminder_id, patient_id, prescription_id, _iso(scheduled_time), status),
            )
        return reminder_id

    def add_pregnancy(
        self, patient_id: str, *, lmp: str | None = None, edd: str | None = None,
        last_contact_date: str | None = None,
    ) -> str:
        pregnancy_id = new_id("preg")
        with self.connection() as conn:
            conn.execute(
                "INSERT INTO pregnancies (id, patient_id, lmp, edd, last_contact_date) VALUES (?, ?, ?, ?, ?)",
                (pregnancy_id, patient_id, lmp, edd, last_contact_date),
            )
        return pregnancy_id

    def list_prescriptions(self, patient_id: str, limit: int = 10) -> list[PrescriptionSummary]:
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, medication_name, strength, form, start_date, end_date, status
                FROM prescriptions WHERE patient_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT ?
                """,
                (patient_id, limit),
            ).fetchall()
        return [PrescriptionSummary.model_validate(dict(r)) for r in rows]

    def list_upcoming_reminders(
        self, patient_id: str, now: datetime, limit: int = 10,
    ) -> list[ReminderSummary]:
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT r.id, r.scheduled_time AS "when", r.status, p.medication_name
                FROM medication_reminders r
                LEFT JOIN prescriptions p ON p.id = r.prescription_id
                WHERE r.patient_id = ? AND r.scheduled_time >= ? AND r.status IN ('pending', 'sent')
                ORDER BY r.scheduled_time ASC LIMIT ?
                """,
                (patient_id, _iso(now), limit),
            ).fetchall()
        return [ReminderSummary.model_validate(dict(r)) for r in rows]

    def get_active_pregnancy(self, patient_id: str) -> PregnancySummary | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT lmp, edd, last_contact_date FROM pregnancies "
                "WHERE patient_id = ? AND is_active = 1 ORDER BY rowid DESC LIMIT 1",
                (patient_id,),
            ).fetchone()
        return PregnancySummary.model_validate(dict(row)) if row else None

    # ── Directory: visitors ──────────────────────────────────────────

    def find_or_create_visitor(self, phone_e164: str, *, now: datetime) -> tuple[Visitor, bool]:
        """Return the visitor owning *phone_e164*, creating one on first contact.

        The UNIQUE constraint on the channel makes concurrent first contacts
        converge on a single visitor: the loser's ``INSERT OR IGNORE`` is a
        no-op and its freshly inserted visitor row is removed again.
        """
        with self._lock, self.connection() as conn:
            existing = self._visitor_by_phone(conn, phone_e164)
            if existing is not None:
                return existing, False

            visitor_id = new_id("vis")
            conn.execute(
                "INSERT INTO visitors (id, display_name, created_at) VALUES (?, NULL, ?)",
                (visitor_id, _iso(now)),
            )
            cur = conn.execute(
                "INSERT OR IGNORE INTO contact_channels (id, owner_type, type, value, visitor_id) "
                "VALUES (?, 'visitor', 'whatsapp', ?, ?)",
                (new_id("cc"), phone_e164, visitor_id),
            )
            if cur.rowcount == 0:
                conn.execute("DELETE FROM visitors WHERE id = ?", (visitor_id,))
                winner = self._visitor_by_phone(conn, phone_e164)
                if winner is None:  # pragma: no cover - constraint guarantees a row
                    raise RuntimeError(f"visitor channel for {phone_e164} vanished")
                return winner, False
            return Visitor(id=visitor_id), True

    @staticmethod
    def _visitor_by_phone(conn: sqlite3.Connection, phone_e164: str) -> Visitor | None:
        row = conn.execute(
            """
            SELECT v.id, v.display_name
            FROM contact_channels cc JOIN visitors v ON v.id = cc.visitor_id
            WHERE cc.owner_type = 'visitor' AND cc.type = 'whatsapp' AND cc.value = ?
            LIMIT 1
            """,
            (phone_e164,),
        ).fetchone()
        return Visitor.model_validate(dict(row)) if row else None

    def set_visitor_name(self, visitor_id: str, display_name: str) -> None:
        with self.connection() as conn:
            conn.execute(
                "UPDATE visitors SET display_name = ? WHERE id = ?", (display_name, visitor_id),
            )

    def get_visitor(self, visitor_id: str) -> Visitor | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT id, display_name FROM visitors WHERE id = ?", (visitor_id,),
            ).fetchone()
        return Visitor.model_validate(dict(row)) if row else None

    def count_visitors(self) -> int:
        with self.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM visitors").fetchone()[0]

    # ── Conversation audit log ───────────────────────────────────────

    def log_message(self, phone_e164: str, direction: str, body: str, *, now: datetime) -> None:
        with self.connection() as conn:
            conn.execute(
                "INSERT INTO conversation_messages (id, phone_e164, direction, body, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (new_id("msg"), phone_e164, direction, body[:4000], _iso(now)),
            )

    def recent_messages(self, phone_e164: str, limit: int = 10) -> list[tuple[str, str]]:
        """Return the last *limit* ``(direction, body)`` pairs, oldest first."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT direction, body FROM conversation_messages WHERE phone_e164 = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (phone_e164, limit),
            ).fetchall()
        return [(r["direction"], r["body"]) for r in reversed(rows)]

    # ── Scheduling sessions ──────────────────────────────────────────

    def insert_session(self, session: SchedulingSession) -> None:
        values = _session_values(session)
        with self.connection() as conn:
            conn.execute(
                f"INSERT INTO scheduling_sessions ({', '.join(_SESSION_COLUMNS)}, version) "
                f"VALUES ({', '.join('?' * len(_SESSION_COLUMNS))}, ?)",
                (*values, session.version),
            )

    def get_session(self, session_id: str) -> SchedulingSession | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM scheduling_sessions WHERE id = ?", (session_id,),
            ).fetchone()
        return _session_from_row(row) if row else None

    def latest_session_for(self, patient_id: str) -> SchedulingSession | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM scheduling_sessions WHERE patient_id = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (patient_id,),
            ).fetchone()
        return _session_from_row(row) if row else None

    def update_session(self, session: SchedulingSession) -> SchedulingSession:
        """Compare-and-set *session* against its ``version``; returns the stored copy."""
        values = _session_values(session)[1:]
        assignments = ", ".join(f"{c} = ?" for c in _SESSION_COLUMNS[1:])
        with self.connection() as conn:
            cur = conn.execute(
                f"UPDATE scheduling_sessions SET {assignments}, version = version + 1 "
                "WHERE id = ? AND version = ?",
                (*values, session.id, session.version),
            )
        if cur.rowcount == 0:
            raise ConcurrentModification(session.id, session.version)
        return session.model_copy(update={"version": session.version + 1})

    def delete_sessions_expired_before(self, cutoff: datetime) -> int:
        with self.connection() as conn:
            cur = conn.execute(
                "DELETE FROM scheduling_sessions WHERE expires_at < ?", (_iso(cutoff),),
            )
        return cur.rowcount

    # ── Meeting requests ─────────────────────────────────────────────

    def insert_meeting_request(self, request: PendingMeetingRequest) -> None:
        values = _request_values(request)
        with self.connection() as conn:
            conn.execute(
                f"INSERT INTO meeting_requests ({', '.join(_REQUEST_COLUMNS)}, version) "
                f"VALUES ({', '.join('?' * len(_REQUEST_COLUMNS))}, ?)",
                (*values, request.version),
            )

    def get_meeting_request(self, request_id: str) -> PendingMeetingRequest | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM meeting_requests WHERE id = ?", (request_id,),
            ).fetchone()
        return _request_from_row(row) if row else None

    def list_pending_for_provider(
        self, provider_phone: str, now: datetime,
    ) -> list[PendingMeetingRequest]:
        """Pending, non-expired requests for *provider_phone*, newest first."""
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM meeting_requests
                WHERE provider_phone = ? AND status = 'pending' AND expires_at >= ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (provider_phone, _iso(now)),
            ).fetchall()
        return [_request_from_row(r) for r in rows]

    def update_meeting_request(self, request: PendingMeetingRequest) -> PendingMeetingRequest:
        """Compare-and-set *request* against its ``version``; returns the stored copy."""
        values = _request_values(request)[1:]
        assignments = ", ".join(f"{c} = ?" for c in _REQUEST_COLUMNS[1:])
        with self.connection() as conn:
            cur = conn.execute(
                f"UPDATE meeting_requests SET {assignments}, version = version + 1 "
                "WHERE id = ? AND version = ?",
                (*values, request.id, request.version),
            )
        if cur.rowcount == 0:
            raise ConcurrentModification(request.id, request.version)
        return request.model_copy(update={"version": request.version + 1})

    def expire_overdue_requests(self, now: datetime) -> list[str]:
        """Move every pending request past its deadline to ``expired``."""
        with self._lock, self.connection() as conn:
            rows = conn.execute(
                "SELECT id FROM meeting_requests WHERE status = 'pending' AND expires_at < ?",
                (_iso(now),),
            ).fetchall()
            ids = [r["id"] for r in rows]
            if ids:
                conn.executemany(
                    "UPDATE meeting_requests SET status = ?, version = version + 1 "
                    "WHERE id = ? AND status = 'pending'",
                    [(ApprovalStatus.EXPIRED.value, rid) for rid in ids],
                )
        return ids

    # ── Escalations ──────────────────────────────────────────────────

    def insert_escalation(self, escalation: Escalation) -> None:
        media = escalation.media.model_dump_json() if escalation.media else None
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO escalations
                  (id, phone_e164, summary, subject_type, subject_id, media_json, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    escalation.id, escalation.phone_e164, escalation.summary,
                    escalation.subject_type, escalation.subject_id, media,
                    escalation.status, _iso(escalation.created_at),
                ),
            )

    def get_escalation(self, escalation_id: str) -> Escalation | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM escalations WHERE id = ?", (escalation_id,),
            ).fetchone()
        if row is None:
            return None
        data = dict(row)
        media = data.pop("media_json")
        data["media"] = json.loads(media) if media else None
        return Escalation.model_validate(data)

    def list_escalations(self) -> list[Escalation]:
        with self.connection() as conn:
            ids = [r["id"] for r in conn.execute(
                "SELECT id FROM escalations ORDER BY created_at DESC, rowid DESC"
            ).fetchall()]
        return [e for e in (self.get_escalation(i) for i in ids) if e is not None]


# ── Row codecs ───────────────────────────────────────────────────────


def _full_name(first: str | None, last: str | None) -> str | None:
    name = " ".join(p for p in (first, last) if p).strip()
    return name or None


def _session_values(session: SchedulingSession) -> tuple[Any, ...]:
    return (
        session.id, session.patient_id, session.subject_type, session.provider_id,
        session.status.value, _iso(session.selected_time), session.reason,
        session.approval_request_id, _iso(session.created_at),
        _iso(session.expires_at),
    )


def _session_from_row(row: sqlite3.Row) -> SchedulingSession:
    return SchedulingSession.model_validate(dict(row))


def _request_values(request: PendingMeetingRequest) -> tuple[Any, ...]:
    return (
        request.id, request.patient_phone, request.patient_name, request.provider_id,
        request.provider_name, request.provider_phone, request.provider_email,
        _iso(request.requested_time), request.reason, request.status.value,
        _iso(request.created_at), _iso(request.expires_at),
        request.meeting_link, request.google_meet_event_id, request.session_id,
        request.delivery.model_dump_json(exclude_none=True),
    )


def _request_from_row(row: sqlite3.Row) -> PendingMeetingRequest:
    data = dict(row)
    data["delivery"] = json.loads(data.pop("delivery_json") or "{}")
    return PendingMeetingRequest.model_validate(data)
