"""Connection health: which failures block the console and which only degrade it.

Three tiers, decided by :class:`~.errors.Severity`:

- critical (auth loss, network unreachable): unhealthy at once; the blocking
  overlay opens only after ``OVERLAY_DEBOUNCE_MS`` so a blip that recovers
  inside the window never flashes the overlay. While open, mutations halt.
- query (one collection's fetch or write failed): that collection is marked
  degraded and gets one dismissible toast; nothing blocks.
- realtime (push channels down, requests still fine): a low-severity notice,
  shown once per monitor lifetime.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, FrozenSet, Optional
import logging

from .errors import Severity, StoreError
from .tasks import locked

logger = logging.getLogger(__name__)


class HealthLevel(str, Enum):
    OK = 'ok'
    DEGRADED = 'degraded'
    REALTIME_DOWN = 'realtime_down'
    CRITICAL = 'critical'


@dataclass(frozen=True)
class ConnectionState:
    healthy: bool = True
    degraded: FrozenSet[str] = frozenset()
    realtime_down: bool = False
    overlay_open: bool = False
    error_message: Optional[str] = None

    @property
    def level(self) -> HealthLevel:
        if not self.healthy or self.overlay_open:
            return HealthLevel.CRITICAL
        if self.degraded:
            return HealthLevel.DEGRADED
        if self.realtime_down:
            return HealthLevel.REALTIME_DOWN
        return HealthLevel.OK


class Notifier:
    """Presentation hooks. The default only logs; a UI subclasses it."""

    def toast(self, label: str, message: str) -> None:
        logger.warning(f"[toast] Failed to load/save {label}: {message}")

    def notice(self, message: str) -> None:
        logger.info(f"[notice] {message}")

    def overlay(self, is_open: bool, message: Optional[str]) -> None:
        logger.warning(f"[overlay] {'open' if is_open else 'closed'} {message or ''}".rstrip())


REALTIME_DOWN_NOTICE = 'Realtime sync offline. Data may be stale; use sync to refresh.'


class ConnectionHealthMonitor:
    def __init__(self, runner, config=None, notifier: Optional[Notifier] = None,
                 on_change: Optional[Callable[[ConnectionState], None]] = None):
        config = config or {}
        self._runner = runner
        self._lock = runner.lock
        self._debounce = float(config.get('OVERLAY_DEBOUNCE_MS', 400)) / 1000.0
        self.notifier = notifier or Notifier()
        self._on_change = on_change
        self.state = ConnectionState()
        self._overlay_timer = None
        self._overlay_token = None
        self._toasted = set()
        self._realtime_noticed = False

    @property
    def blocking(self) -> bool:
        return self.state.overlay_open

    def _set(self, **changes) -> None:
        new = replace(self.state, **changes)
        if new == self.state:
            return
        self.state = new
        if self._on_change is not None:
            self._on_change(new)

    def _cancel_overlay_timer(self) -> None:
        if self._overlay_timer is not None:
            self._overlay_timer.cancel()
            self._overlay_timer = None

    # ---- reports ----

    @locked
    def report_success(self, collection: Optional[str] = None) -> None:
        """A fetch or write went through: back to ok.

        Clears the critical flag and every degraded label; which collections
        still show stale data is tracked per entity by the mutation layer. An
        open overlay stays open: only an explicit retry or sync closes it.
        """
        if self.state.overlay_open:
            return
        self._cancel_overlay_timer()
        self._set(healthy=True, degraded=frozenset(), error_message=None)

    @locked
    def report_failure(self, error: StoreError, label: Optional[str] = None) -> None:
        label = label or error.collection or 'data'
        severity = error.severity
        if severity is Severity.CRITICAL:
            self.report_critical(error.message)
        elif severity is Severity.REALTIME:
            self.report_realtime_down()
        else:
            self.report_query_error(label, error.message)

    @locked
    def report_critical(self, message: str) -> None:
        logger.error(f"[health] critical: {message}")
        self._set(healthy=False, error_message=message)
        if self.state.overlay_open:
            return
        # Restart the debounce window on every critical report
        self._cancel_overlay_timer()
        token = self._overlay_token = object()
        self._overlay_timer = self._runner.call_later(self._debounce, self._open_after_debounce, token)

    @locked
    def _open_after_debounce(self, token) -> None:
        if token is not self._overlay_token or self.state.healthy:
            return
        self._overlay_timer = None
        self.open_overlay()

    @locked
    def report_query_error(self, label: str, message: Optional[str] = None) -> None:
        logger.warning(f"[health] query error [{label}]: {message or 'unknown'}")
        self._set(degraded=self.state.degraded | {label}, error_message=message or self.state.error_message)
        if label not in self._toasted:
            self._toasted.add(label)
            self.notifier.toast(label, f'{message or "request failed"}, retrying')

    @locked
    def report_realtime_down(self) -> None:
        if self.state.realtime_down:
            return
        logger.warning('[health] realtime channels down, falling back to polling')
        self._set(realtime_down=True)
        if not self._realtime_noticed:
            self._realtime_noticed = True
            self.notifier.notice(REALTIME_DOWN_NOTICE)

    @locked
    def report_realtime_ok(self) -> None:
        if self.state.realtime_down:
            logger.info('[health] realtime channels recovered')
        self._set(realtime_down=False)

    # ---- overlay ----

    @locked
    def open_overlay(self) -> None:
        if self.state.overlay_open:
            return
        self._set(overlay_open=True)
        self.notifier.overlay(True, self.state.error_message)

    @locked
    def close_overlay(self) -> None:
        self._cancel_overlay_timer()
        if not self.state.overlay_open:
            return
        self._set(overlay_open=False)
        self.notifier.overlay(False, None)

    @locked
    def reset(self) -> None:
        """Back to ok after an explicit recovery; realtime state is kept."""
        self._cancel_overlay_timer()
        was_open = self.state.overlay_open
        self._toasted.clear()
        self._set(healthy=True, degraded=frozenset(), overlay_open=False, error_message=None)
        if was_open:
            self.notifier.overlay(False, None)
