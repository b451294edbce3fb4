"""Exchange trading-hours rules.

Defaults model the NSE/BSE cash session in Asia/Kolkata:
pre-open 09:00-09:15, regular 09:15-15:30 (both ends inclusive),
closing session 15:30-16:00, weekends always closed.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from core.models.market import SessionState

IST = ZoneInfo("Asia/Kolkata")


class TradingHours:
    """Fixed weekday + time-of-day session window in a fixed timezone."""

    def __init__(
        self,
        tz: str | ZoneInfo = IST,
        open_time: time = time(9, 15),
        close_time: time = time(15, 30),
        pre_open_time: time | None = time(9, 0),
        post_close_time: time | None = time(16, 0),
        trading_days: tuple[int, ...] = (0, 1, 2, 3, 4),
    ) -> None:
        self.tz = ZoneInfo(tz) if isinstance(tz, str) else tz
        self.open_time = open_time
        self.close_time = close_time
        self.pre_open_time = pre_open_time
        self.post_close_time = post_close_time
        self.trading_days = tuple(trading_days)

    def _local(self, now: datetime | None) -> datetime:
        current = now or datetime.now(timezone.utc)
        if current.tzinfo is None:
            return current.replace(tzinfo=self.tz)
        return current.astimezone(self.tz)

    def is_trading_day(self, now: datetime | None = None) -> bool:
        return self._local(now).weekday() in self.trading_days

    def is_open(self, now: datetime | None = None) -> bool:
        """Return whether the regular session is open."""
        return self.session_state(now) == "REGULAR"

    def session_state(self, now: datetime | None = None) -> SessionState:
        local = self._local(now)
        if not self.is_trading_day(local):
            return "CLOSED"

        current = local.time().replace(tzinfo=None)
        if self.open_time <= current <= self.close_time:
            return "REGULAR"
        if self.pre_open_time is not None and self.pre_open_time <= current < self.open_time:
            return "PRE"
        if self.post_close_time is not None and self.close_time < current < self.post_close_time:
            return "POST"
        return "CLOSED"

    def next_open(self, now: datetime | None = None) -> datetime:
        """Start of the next regular session strictly after `now`."""
        local = self._local(now)
        candidate = datetime.combine(local.date(), self.open_time, tzinfo=self.tz)
        if candidate <= local:
            candidate += timedelta(days=1)
        for _ in range(8):
            if self.is_trading_day(candidate):
                return candidate
            candidate += timedelta(days=1)
        raise ValueError("No trading days configured")

    def next_close(self, now: datetime | None = None) -> datetime:
        """End of the current regular session, or of the next one."""
        local = self._local(now)
        if self.is_open(local):
            return datetime.combine(local.date(), self.close_time, tzinfo=self.tz)
        opening = self.next_open(local)
        return datetime.combine(opening.date(), self.close_time, tzinfo=self.tz)

    def describe(self, now: datetime | None = None) -> dict:
        """Session summary for status endpoints."""
        local = self._local(now)
        state = self.session_state(local)
        info: dict = {"session": state, "is_open": state == "REGULAR"}
        if state == "REGULAR":
            info["next_close"] = self.next_close(local).isoformat()
        else:
            info["next_open"] = self.next_open(local).isoformat()
        return info


def forex_session_open(now: datetime | None = None) -> bool:
    """Spot FX trades around the clock on weekdays (UTC)."""
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is not None:
        current = current.astimezone(timezone.utc)
    return current.weekday() < 5
