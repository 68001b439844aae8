from __future__ import annotations

"""
Validation log: best-effort writes and paged history reads.

Writes are fire-and-forget. By the time a log entry is written the operator
has already seen the access decision, so a failed write is reported to the
diagnostics logger and otherwise dropped. Every attempt gets its own entry;
there is no de-duplication window.
"""

import asyncio
import logging
import math
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Awaitable, List, Literal, Optional

from pydantic import BaseModel, Field

from .backend import BackendClient
from .models import LogStatus, PartnerIdentity, ValidationLogEntry

logger = logging.getLogger(__name__)
diagnostics = logging.getLogger("memberpass.diagnostics")

HistoryWindow = Literal["all", "7", "15", "30", "custom"]


class BestEffortTask:
    """Non-blocking dispatch whose failures never reach the caller."""

    def __init__(self, name: str):
        self.name = name
        self.failures = 0
        self._pending: set[asyncio.Task] = set()

    def dispatch(self, work: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(self._guard(work))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _guard(self, work: Awaitable) -> None:
        try:
            await work
        except Exception as e:
            self.failures += 1
            diagnostics.warning("%s failed: %s: %s", self.name, type(e).__name__, e)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every dispatched task to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# --- History ---


class HistoryQuery(BaseModel):
    search: str = ""
    window: HistoryWindow = "all"
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    page: int = Field(default=1, ge=1)


class HistoryPage(BaseModel):
    items: List[ValidationLogEntry]
    total: int
    page: int
    page_size: int
    total_pages: int


def window_bounds(
    query: HistoryQuery, now: datetime, tz: tzinfo = timezone.utc
) -> tuple[datetime | None, datetime | None]:
    """
    Inclusive (start, end) bounds of the query's time window.

    Relative windows count back from `now`. A custom range runs from the
    start of `start_date` to the very end of `end_date` in `tz`; a custom
    range missing either date is not applied.
    """
    if query.window == "all":
        return None, None
    if query.window == "custom":
        if query.start_date is None or query.end_date is None:
            return None, None
        start = datetime.combine(query.start_date, time.min, tzinfo=tz)
        end = datetime.combine(query.end_date, time.max, tzinfo=tz)
        return start, end
    return now - timedelta(days=int(query.window)), None


class ValidationLogger:
    def __init__(
        self,
        backend: BackendClient,
        page_size: int = 20,
        tz: tzinfo = timezone.utc,
    ):
        self.backend = backend
        self.page_size = page_size
        self.tz = tz
        self._writes = BestEffortTask("validation log write")

    @property
    def failures(self) -> int:
        return self._writes.failures

    def record(
        self,
        company_id: str,
        client_id: str,
        status: LogStatus,
        partner: PartnerIdentity,
    ) -> asyncio.Task:
        """Queue one log entry for the acting partner and return immediately."""
        logger.debug(
            "Logging %s validation of client %s at company %s by %s",
            status, client_id, company_id, partner.user_id,
        )
        return self._writes.dispatch(
            self.backend.insert_validation_log(
                company_id,
                client_id,
                status,
                validated_by=partner.user_id,
                token=partner.access_token,
            )
        )

    async def drain(self) -> None:
        await self._writes.drain()

    async def history(
        self,
        company_id: str,
        query: HistoryQuery,
        now: datetime | None = None,
        token: str | None = None,
    ) -> HistoryPage:
        """
        One page of a company's visit history, newest first.

        The name search, time window, ordering and paging are all applied by
        the backend, so `total` counts every matching row rather than the rows
        one response happened to carry.
        """
        now = now or datetime.now(timezone.utc)
        since, until = window_bounds(query, now, self.tz)
        entries, total = await self.backend.list_validation_logs(
            company_id,
            since=since,
            until=until,
            search=query.search,
            limit=self.page_size,
            offset=(query.page - 1) * self.page_size,
            token=token,
        )
        return HistoryPage(
            items=entries,
            total=total,
            page=query.page,
            page_size=self.page_size,
            total_pages=math.ceil(total / self.page_size),
        )
