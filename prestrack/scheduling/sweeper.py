"""Background task that actively expires stale workflow records.

Lazy expiry on read still applies; the sweeper only makes sure overdue
requests show up as ``expired`` without anyone touching them, and that
long-dead scheduling sessions do not accumulate.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from prestrack.config import SWEEPER_INTERVAL_SECONDS
from prestrack.models import utcnow
from prestrack.scheduling.approvals import ProviderApprovalWorkflow
from prestrack.services.store import ClinicStore

logger = logging.getLogger(__name__)

SESSION_RETENTION = timedelta(days=1)


class ExpirySweeper:
    def __init__(
        self,
        store: ClinicStore,
        approvals: ProviderApprovalWorkflow,
        *,
        interval_seconds: float = SWEEPER_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._approvals = approvals
        self._interval = interval_seconds
        self._clock = clock
        self._task: asyncio.Task | None = None

    async def sweep_once(self) -> dict[str, int]:
        now = self._clock()
        expired = await self._approvals.expire_overdue(now)
        purged = await asyncio.to_thread(
            self._store.delete_sessions_expired_before, now - SESSION_RETENTION,
        )
        if purged:
            logger.info("Purged %d stale scheduling session(s)", purged)
        return {"expired_requests": len(expired), "purged_sessions": purged}

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Expiry sweep failed")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="expiry-sweeper")
            logger.info("Expiry sweeper started (every %ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
