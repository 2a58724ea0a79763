from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable

from .types import OCCUPIED, PAUSED, TableSession


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ms_between(start: datetime, end: datetime) -> int:
    return (end - start) // timedelta(milliseconds=1)


def elapsed_ms(session: TableSession, now: datetime) -> int:
    """Active play time of a session in milliseconds.

    - 0 when the table has no start time
    - while paused, frozen at the instant the pause began
    - never negative (clock skew between devices is clamped)
    """
    if session.start_time is None:
        return 0
    if session.status == PAUSED and session.paused_at is not None:
        until = session.paused_at
    else:
        until = now
    return max(0, ms_between(session.start_time, until) - session.paused_ms)


def pause_duration_ms(session: TableSession, now: datetime) -> int:
    """Length of the current pause; what resume adds to ``paused_ms``."""
    if session.status != PAUSED or session.paused_at is None:
        return 0
    return max(0, ms_between(session.paused_at, now))


def format_duration(ms: int) -> str:
    total_seconds = max(0, ms) // 1000
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    return f'{hours}:{minutes:02d}:{seconds:02d}'


class Ticker:
    """1 Hz redraw tick for running tables.

    Each tick reports the elapsed time of occupied sessions to ``on_tick``;
    paused and free tables are left out. The tick never writes anything.
    """

    def __init__(self, runner, sessions: Callable[[], Iterable[TableSession]],
                 on_tick: Callable[[Dict[Any, int]], None],
                 clock: Callable[[], datetime] = utcnow, interval: float = 1.0):
        self._runner = runner
        self._sessions = sessions
        self._on_tick = on_tick
        self._clock = clock
        self._interval = interval
        self._lock = runner.lock
        self._timer = None

    @property
    def running(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        with self._lock:
            if self._timer is None:
                self._timer = self._runner.call_later(self._interval, self._tick)

    def stop(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _tick(self) -> None:
        with self._lock:
            if self._timer is None:
                return
            now = self._clock()
            frame = {s.id: elapsed_ms(s, now) for s in self._sessions() if s.status == OCCUPIED}
        try:
            self._on_tick(frame)
        finally:
            with self._lock:
                if self._timer is not None:
                    self._timer = self._runner.call_later(self._interval, self._tick)
