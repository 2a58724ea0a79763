"""Push subscriptions per club collection, with a polling fallback.

Each channel gets exactly one retry after ``REALTIME_RETRY_SEC``. A second
failure reports realtime-down and starts refetching every collection every
``FALLBACK_POLL_SEC`` until all channels are subscribed again. Channel setup
that neither succeeds nor fails within ``SUBSCRIBE_TIMEOUT_SEC`` counts as a
failure.
"""

from typing import Dict, Optional
import logging

from ..billing.types import merge_tables
from .errors import StoreError
from .store import CHANNEL_ERROR, CLOSED, COLLECTIONS, SUBSCRIBED, TIMED_OUT
from .tasks import locked

logger = logging.getLogger(__name__)

# Rows of these two collections make up the merged table view
TABLE_VIEW_SOURCES = ('tables', 'sessions')


class Channel:
    def __init__(self, collection: str):
        self.collection = collection
        self.subscription = None
        self.healthy = False
        self.attempt = 0
        self.token: Optional[object] = None
        self.retry_timer = None
        self.timeout_timer = None

    def cancel_timers(self) -> None:
        for timer in (self.retry_timer, self.timeout_timer):
            if timer is not None:
                timer.cancel()
        self.retry_timer = None
        self.timeout_timer = None


class RealtimeReconciler:
    def __init__(self, store, runner, mutations, health, config=None):
        config = config or {}
        self._store = store
        self._runner = runner
        self._mutations = mutations
        self._health = health
        self._lock = runner.lock
        self._retry_delay = float(config.get('REALTIME_RETRY_SEC', 3))
        self._subscribe_timeout = float(config.get('SUBSCRIBE_TIMEOUT_SEC', 8))
        self._poll_interval = float(config.get('FALLBACK_POLL_SEC', 30))
        self._visibility_debounce = float(config.get('VISIBILITY_DEBOUNCE_MS', 500)) / 1000.0
        self.channels: Dict[str, Channel] = {c: Channel(c) for c in COLLECTIONS}
        self._poll_timer = None
        self._visibility_timer = None
        self._stopped = False

    @property
    def all_healthy(self) -> bool:
        with self._lock:
            return all(ch.healthy for ch in self.channels.values())

    @property
    def polling(self) -> bool:
        return self._poll_timer is not None

    def start(self) -> None:
        with self._lock:
            self._stopped = False
        self.subscribe_all()
        self.sync_all()

    @locked
    def stop(self) -> None:
        self._stopped = True
        self._stop_polling()
        if self._visibility_timer is not None:
            self._visibility_timer.cancel()
            self._visibility_timer = None
        for channel in self.channels.values():
            self._close(channel)

    # ---- channels ----

    def subscribe_all(self) -> None:
        for channel in self.channels.values():
            with self._lock:
                channel.attempt = 0
            self._open(channel)

    def reconnect(self) -> None:
        """Tear down every channel and subscribe again from scratch."""
        logger.info('[rt] reconnecting all channels')
        with self._lock:
            self._stopped = False
        self.subscribe_all()

    def _close(self, channel: Channel) -> None:
        channel.cancel_timers()
        channel.token = None
        channel.healthy = False
        if channel.subscription is not None:
            channel.subscription.close()
            channel.subscription = None

    def _open(self, channel: Channel) -> None:
        collection = channel.collection
        with self._lock:
            self._close(channel)
            token = channel.token = object()
            channel.timeout_timer = self._runner.call_later(
                self._subscribe_timeout, self._on_timeout, channel, token)

        def on_change(event):
            # Refetch on the worker, not on the socket's thread
            if channel.token is token:
                self._runner.spawn(self._on_change, collection, token, channel, event)

        def on_status(subscription, status, error=None):
            with self._lock:
                if channel.token is token:
                    self._on_status(channel, status, error)

        # Subscribing may block on the socket connect; the lock is not held
        try:
            subscription = self._store.subscribe(collection, on_change, on_status)
        except StoreError as exc:
            on_status(None, CHANNEL_ERROR, exc)
            return
        with self._lock:
            if channel.token is token:
                channel.subscription = subscription
                return
        subscription.close()

    @locked
    def _on_timeout(self, channel: Channel, token) -> None:
        if channel.token is token and not channel.healthy:
            channel.timeout_timer = None
            self._on_status(channel, TIMED_OUT, None)

    def _on_status(self, channel: Channel, status: str, error) -> None:
        if self._stopped:
            return
        if status == SUBSCRIBED:
            channel.cancel_timers()
            channel.healthy = True
            channel.attempt = 0
            logger.info(f"[rt] {channel.collection} subscribed")
            if self.all_healthy:
                self._stop_polling()
                self._health.report_realtime_ok()
            return
        if status not in (CLOSED, CHANNEL_ERROR, TIMED_OUT):
            return
        channel.healthy = False
        if channel.timeout_timer is not None:
            channel.timeout_timer.cancel()
            channel.timeout_timer = None
        logger.warning(f"[rt] {channel.collection} {status} attempt={channel.attempt} {error or ''}".rstrip())
        if channel.retry_timer is not None:
            return
        if channel.attempt == 0:
            channel.attempt = 1
            channel.retry_timer = self._runner.call_later(self._retry_delay, self._retry, channel, channel.token)
            return
        self._health.report_realtime_down()
        self._start_polling()

    def _retry(self, channel: Channel, token) -> None:
        with self._lock:
            if channel.token is not token or self._stopped:
                return
            channel.retry_timer = None
        logger.info(f"[rt] {channel.collection} retrying subscription")
        self._open(channel)

    def _on_change(self, collection: str, token, channel: Channel, event) -> None:
        if channel.token is not token:
            return
        logger.info(f"[rt] change {collection} {(event or {}).get('op', '')}")
        self.refresh(collection)

    # ---- fallback polling ----

    def _start_polling(self) -> None:
        if self._poll_timer is None and not self._stopped:
            logger.info(f"[rt] polling every {self._poll_interval:g}s")
            self._poll_timer = self._runner.call_later(self._poll_interval, self._poll)

    def _stop_polling(self) -> None:
        if self._poll_timer is not None:
            self._poll_timer.cancel()
            self._poll_timer = None

    def _poll(self) -> None:
        with self._lock:
            self._poll_timer = None
            if self._stopped or self.all_healthy:
                return
        self.sync_all()
        with self._lock:
            self._start_polling()

    # ---- visibility ----

    @locked
    def on_visible(self) -> None:
        if self._visibility_timer is not None:
            self._visibility_timer.cancel()
        self._visibility_timer = self._runner.call_later(self._visibility_debounce, self._recover_visible)

    def _recover_visible(self) -> None:
        with self._lock:
            self._visibility_timer = None
            if self._stopped:
                return
            unhealthy = [ch for ch in self.channels.values() if not ch.healthy]
            for channel in unhealthy:
                channel.attempt = 0
        for channel in unhealthy:
            self._open(channel)
        self.sync_all()

    # ---- authoritative reads ----

    def _fetch(self, collection: str, view: Optional[str] = None):
        try:
            rows = self._store.fetch(collection)
        except StoreError as exc:
            self._health.report_failure(exc, label=collection)
            self._mutations.mark_stale(view or collection)
            return None
        self._health.report_success(collection)
        return rows

    def refresh(self, collection: str) -> bool:
        """Refetch one collection; table and session changes refresh the merged view."""
        if collection in TABLE_VIEW_SOURCES:
            return self._refresh_tables()
        rows = self._fetch(collection)
        if rows is None:
            return False
        self._mutations.reconcile(collection, rows)
        return True

    def _refresh_tables(self) -> bool:
        tables = self._fetch('tables')
        if tables is None:
            return False
        sessions = self._fetch('sessions', view='tables')
        self._mutations.reconcile('table_configs', tables)
        if sessions is None:
            return False
        self._mutations.reconcile('tables', merge_tables(tables, sessions))
        return True

    def sync_all(self) -> bool:
        """Broad invalidate: refetch every collection. True when all succeeded."""
        ok = self._refresh_tables()
        for collection in COLLECTIONS:
            if collection not in TABLE_VIEW_SOURCES:
                ok = self.refresh(collection) and ok
        return ok
