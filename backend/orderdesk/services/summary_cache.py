# Overview: Read-through cache of ledger aggregates per reporting window, invalidated after ledger commits.

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from orderdesk.time_utils import utcnow, to_local, local_to_utc, to_utc_z


WINDOWS = ["today", "week", "month", "year"]

DAY_LABELS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
MONTH_LABELS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
HOUR_BLOCK_LABELS = [f"{h}-{h + 3}h" for h in range(0, 24, 3)]
WEEK_LABELS = [f"Week {n}" for n in range(1, 6)]

DEFAULT_TTL_SECONDS = 15 * 60
DEFAULT_TIMEZONE = "Asia/Ho_Chi_Minh"


class SummaryCacheError(Exception):
    pass


class SummaryCache:
    """
    In-process cache of {inflow, outflow, net} per window and chart series per period.

    Not authoritative: every value can be rebuilt from the transactions table.
    Entries expire independently after `ttl_seconds`; invalidate() drops all
    of them. All state is guarded by one lock so request threads and the
    after-commit hook can share an instance.
    """

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, tz_name: str = DEFAULT_TIMEZONE,
                 clock: Callable[[], datetime] = utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.tz_name = tz_name
        self.clock = clock
        self._lock = threading.Lock()
        self._summaries: dict[str, dict] = {}
        self._charts: dict[str, dict] = {}
        self.last_updated: Optional[datetime] = None

    def init_app(self, app) -> None:
        self.ttl = timedelta(seconds=app.config.get("SUMMARY_CACHE_TTL_SECONDS", DEFAULT_TTL_SECONDS))
        self.tz_name = app.config.get("BUSINESS_TIMEZONE", DEFAULT_TIMEZONE)
        install_session_hooks(self)

    # ------------------------------------------------------------------
    # Windows
    # ------------------------------------------------------------------

    def window_start(self, window: str, now: datetime) -> datetime:
        """Start of the window in business-local time, returned as UTC-naive."""
        local = to_local(now, self.tz_name)
        if window == "today":
            start = local.date()
        elif window == "week":
            start = local.date() - timedelta(days=local.weekday())
        elif window == "month":
            start = local.date().replace(day=1)
        elif window == "year":
            start = local.date().replace(month=1, day=1)
        else:
            raise SummaryCacheError(f"Invalid period: {window}")
        return local_to_utc(start.year, start.month, start.day, self.tz_name)

    def get(self, window: str) -> dict:
        if window not in WINDOWS:
            raise SummaryCacheError(f"Invalid period: {window}")
        now = self.clock()
        with self._lock:
            cached = self._summaries.get(window)
            if cached is not None and cached["expires_at"] > now:
                return dict(cached["value"])

            value = self._compute_summary(window, now)
            self._summaries[window] = {"value": value, "expires_at": now + self.ttl}
            self.last_updated = now
            return dict(value)

    def get_all_summaries(self) -> dict:
        return {window: self.get(window) for window in WINDOWS}

    def get_chart(self, period: str) -> dict:
        if period not in WINDOWS:
            raise SummaryCacheError(f"Invalid period: {period}")
        now = self.clock()
        with self._lock:
            cached = self._charts.get(period)
            if cached is not None and cached["expires_at"] > now:
                return _copy_chart(cached["value"])

            value = self._compute_chart(period, now)
            self._charts[period] = {"value": value, "expires_at": now + self.ttl}
            return _copy_chart(value)

    def summary_with_chart(self, period: str) -> dict:
        summary = self.get(period)
        return {
            "period": period,
            "summary": summary,
            "chart_data": self.get_chart(period),
            "last_updated": to_utc_z(self.last_updated),
        }

    def invalidate(self) -> None:
        with self._lock:
            self._summaries.clear()
            self._charts.clear()

    def force_refresh(self, period: Optional[str] = None) -> dict:
        """Drop cached values and recompute, either one window or all of them."""
        self.invalidate()
        if period is not None:
            return self.summary_with_chart(period)
        return self.get_all_summaries()

    # ------------------------------------------------------------------
    # Computation
    # ------------------------------------------------------------------

    def _live_rows(self, start: datetime, end: datetime):
        from ..extensions import db
        from ..models import Transaction

        return (
            db.session.query(Transaction.date, Transaction.type, Transaction.amount)
            .filter(
                Transaction.is_deleted.is_(False),
                Transaction.date >= start,
                Transaction.date <= end,
            )
            .all()
        )

    def _compute_summary(self, window: str, now: datetime) -> dict:
        from ..extensions import db
        from ..models import Transaction
        from ..models.ledger import TYPE_INFLOW, TYPE_OUTFLOW

        start = self.window_start(window, now)
        rows = (
            db.session.query(Transaction.type, db.func.coalesce(db.func.sum(Transaction.amount), 0))
            .filter(
                Transaction.is_deleted.is_(False),
                Transaction.date >= start,
                Transaction.date <= now,
            )
            .group_by(Transaction.type)
            .all()
        )
        totals = {tx_type: int(total) for tx_type, total in rows}
        inflow = totals.get(TYPE_INFLOW, 0)
        outflow = totals.get(TYPE_OUTFLOW, 0)
        return {"inflow": inflow, "outflow": outflow, "net": inflow - outflow}

    def _compute_chart(self, period: str, now: datetime) -> dict:
        from ..models.ledger import TYPE_INFLOW

        labels = chart_labels(period)
        inflow = [0] * len(labels)
        outflow = [0] * len(labels)

        start = self.window_start(period, now)
        for date, tx_type, amount in self._live_rows(start, now):
            index = bucket_index(period, to_local(date, self.tz_name))
            if tx_type == TYPE_INFLOW:
                inflow[index] += amount
            else:
                outflow[index] += amount

        return {"labels": labels, "inflow": inflow, "outflow": outflow}


def chart_labels(period: str) -> list[str]:
    if period == "today":
        return list(HOUR_BLOCK_LABELS)
    if period == "week":
        return list(DAY_LABELS)
    if period == "month":
        return list(WEEK_LABELS)
    if period == "year":
        return list(MONTH_LABELS)
    raise SummaryCacheError(f"Invalid period: {period}")


def bucket_index(period: str, local_dt: datetime) -> int:
    """Bucket of a business-local datetime within the period's chart."""
    if period == "today":
        return local_dt.hour // 3
    if period == "week":
        # Sunday first
        return (local_dt.weekday() + 1) % 7
    if period == "month":
        return min((local_dt.day - 1) // 7, 4)
    if period == "year":
        return local_dt.month - 1
    raise SummaryCacheError(f"Invalid period: {period}")


def _copy_chart(chart: dict) -> dict:
    return {key: list(values) for key, values in chart.items()}


_hooked_caches: list[SummaryCache] = []


def install_session_hooks(cache: SummaryCache) -> None:
    """
    Invalidate `cache` after any commit whose session wrote to the ledger.

    ledger_service marks the session with info["ledger_dirty"]; the flag is
    dropped on rollback so aborted writes do not evict anything.
    """
    if cache in _hooked_caches:
        return
    _hooked_caches.append(cache)

    @event.listens_for(Session, "after_commit")
    def _invalidate_after_commit(session):
        if session.info.pop("ledger_dirty", False):
            cache.invalidate()

    @event.listens_for(Session, "after_soft_rollback")
    def _clear_after_rollback(session, previous_transaction):
        if previous_transaction.parent is None:
            session.info.pop("ledger_dirty", None)
