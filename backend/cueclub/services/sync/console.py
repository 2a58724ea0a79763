"""The staff console: one object per signed-in device.

Built once with its collaborators (store, task runner, clock, settings) and
closed at sign-out. It exposes the table actions a screen binds to buttons,
the read side the screen renders, and the recovery actions behind the
connection overlay.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..billing import sessions
from ..billing.calculator import resolve_rate_plan, session_total
from ..billing.clock import Ticker, elapsed_ms, utcnow
from ..billing.sessions import SessionError
from ..billing.types import (
    BillingSummary, ClubSettings, MatchRecord, OrderItem, PaymentMeta, RatePlan, TableConfig, TableSession,
    format_ts,
)
from .errors import ActionInFlight
from .health import ConnectionHealthMonitor, ConnectionState, Notifier
from .mutations import MutationLayer
from .realtime import RealtimeReconciler
from .store import HttpStore
from .tasks import TaskRunner, locked


class ClubConsole:
    def __init__(self, store, runner, clock: Callable[[], datetime] = utcnow, config=None,
                 notifier: Optional[Notifier] = None,
                 on_state: Optional[Callable[[ConnectionState], None]] = None):
        config = config or {}
        self.store = store
        self.runner = runner
        self.clock = clock
        self.health = ConnectionHealthMonitor(runner, config, notifier, on_change=on_state)
        self.mutations = MutationLayer(store, runner, self.health, refresh=self._refresh)
        self.realtime = RealtimeReconciler(store, runner, self.mutations, self.health, config)
        self._tick_interval = float(config.get('CLOCK_TICK_SEC', 1))
        self._ticker: Optional[Ticker] = None
        self._lock = runner.lock
        self._in_flight = set()
        self._checkouts = {}

    @classmethod
    def connect(cls, base_url: str, club_id: Any, config=None, http=None, socket=None,
                **kwargs) -> 'ClubConsole':
        """Console over the club store service at ``base_url``.

        ``http`` and ``socket`` replace the default httpx and Socket.IO clients.
        """
        config = config or {}
        store = HttpStore(base_url, club_id, http=http, socket=socket,
                          timeout=float(config.get('STORE_TIMEOUT_SEC', 10)))
        return cls(store, TaskRunner(store.socket), config=config, **kwargs)

    def start(self) -> None:
        self.realtime.start()

    def close(self) -> None:
        self.stop_ticker()
        self.realtime.stop()
        self.store.close()
        stop = getattr(self.runner, 'stop', None)
        if stop is not None:
            stop()

    def _refresh(self, collection: str) -> None:
        self.realtime.refresh(collection)

    # ---- read side ----

    @property
    def state(self) -> ConnectionState:
        return self.health.state

    def tables(self) -> List[TableSession]:
        return sorted(self.mutations.view('tables'), key=lambda t: t.table_number)

    def table(self, table_id: Any) -> TableSession:
        session = self.mutations.get('tables', table_id)
        if session is None:
            raise SessionError(f'Unknown table {table_id}')
        return session

    def table_config(self, table_id: Any) -> Optional[TableConfig]:
        row = self.mutations.get('table_configs', table_id)
        return TableConfig.from_dict(row) if row else None

    def settings(self) -> ClubSettings:
        clubs = self.mutations.view('clubs')
        return ClubSettings.from_dict(clubs[0].get('settings') if clubs else None)

    def rate_plan(self, table_id: Any = None) -> RatePlan:
        plans = self.mutations.view('rate_plans')
        club_plan = RatePlan.from_dict(plans[0] if plans else None)
        if table_id is None:
            return club_plan
        return resolve_rate_plan(club_plan, self.table_config(table_id))

    def elapsed(self, table_id: Any) -> int:
        return elapsed_ms(self.table(table_id), self.clock())

    def live_bill(self, table_id: Any):
        return session_total(self.table(table_id), self.rate_plan(table_id), self.clock())

    def sync_state(self, table_id: Any) -> str:
        return self.mutations.sync_state('tables', table_id)

    @locked
    def busy(self, table_id: Any, action: str) -> bool:
        return (table_id, action) in self._in_flight

    # ---- table actions ----

    @locked
    def _claim(self, table_id: Any, action: str):
        key = (table_id, action)
        if key in self._in_flight:
            raise ActionInFlight(f'{action} on table {table_id} is still saving')
        self._in_flight.add(key)
        return key

    def _settler(self, key, writes: int = 1) -> Callable[[], None]:
        remaining = [writes]

        def _settled():
            with self._lock:
                remaining[0] -= 1
                if remaining[0] <= 0:
                    self._in_flight.discard(key)
        return _settled

    @locked
    def _act(self, table_id: Any, action: str, transition) -> TableSession:
        session = self.table(table_id)
        updated = transition(session, self.rate_plan(table_id), self.clock())
        key = self._claim(table_id, action)
        try:
            self.mutations.apply_and_sync('tables', [updated], on_settled=self._settler(key))
        except Exception:
            self._in_flight.discard(key)
            raise
        return updated

    def on_start(self, table_id: Any, billing_mode: Optional[str] = None) -> TableSession:
        table = self.table_config(table_id)
        settings = self.settings()
        return self._act(table_id, 'start', lambda s, plan, now: sessions.start(
            s, plan, now, billing_mode=billing_mode, table=table, settings=settings))

    def on_pause(self, table_id: Any) -> TableSession:
        return self._act(table_id, 'pause', sessions.pause)

    def on_resume(self, table_id: Any) -> TableSession:
        return self._act(table_id, 'resume', sessions.resume)

    def on_add_frame(self, table_id: Any) -> TableSession:
        return self._act(table_id, 'add_frame', sessions.add_frame)

    def on_remove_frame(self, table_id: Any) -> TableSession:
        return self._act(table_id, 'remove_frame', sessions.remove_frame)

    def on_add_order_item(self, table_id: Any, item: Union[OrderItem, Mapping[str, Any]]) -> TableSession:
        if not isinstance(item, OrderItem):
            item = OrderItem.from_dict(dict(item))
        return self._act(table_id, 'add_order_item',
                         lambda s, plan, now: sessions.add_order_item(s, item, plan, now))

    def on_add_player(self, table_id: Any, name: str) -> TableSession:
        return self._act(table_id, 'add_player', lambda s, plan, now: sessions.add_player(s, name, plan, now))

    def on_remove_player(self, table_id: Any, name: str) -> TableSession:
        return self._act(table_id, 'remove_player', lambda s, plan, now: sessions.remove_player(s, name, plan, now))

    @locked
    def on_end_session(self, table_id: Any, results: Mapping[str, str],
                       allow_empty: bool = False) -> BillingSummary:
        """Freeze the bill for the payment step. Nothing is written yet."""
        checkout = sessions.end_session(
            self.table(table_id), results, self.rate_plan(table_id), self.clock(),
            settings=self.settings(), allow_empty=allow_empty,
        )
        self._checkouts[table_id] = checkout
        return checkout.summary

    @locked
    def cancel_checkout(self, table_id: Any) -> None:
        self._checkouts.pop(table_id, None)

    @locked
    def on_confirm_payment(self, table_id: Any, payment: Optional[PaymentMeta] = None) -> MatchRecord:
        """Record the match, credit member stats and free the table.

        Refused with :class:`ActionInFlight` until the previous confirmation's
        writes have settled, so a double tap records one match.
        """
        if (table_id, 'confirm_payment') in self._in_flight:
            raise ActionInFlight(f'Payment for table {table_id} is still saving')
        checkout = self._checkouts.get(table_id)
        if checkout is None:
            raise SessionError('End the session before taking payment')
        record, freed = sessions.settle(checkout, payment)
        members = self._credit_members(record)
        key = self._claim(table_id, 'confirm_payment')
        settled = self._settler(key, writes=3 if members else 2)
        try:
            self.mutations.apply_and_sync('match_history', [record.to_dict()], on_settled=settled)
            if members:
                self.mutations.apply_and_sync('members', members, on_settled=settled)
            self.mutations.apply_and_sync('tables', [freed], on_settled=settled)
        except Exception:
            self._in_flight.discard(key)
            raise
        self._checkouts.pop(table_id, None)
        return record

    def _credit_members(self, record: MatchRecord) -> List[Dict[str, Any]]:
        by_name = {}
        for member in self.mutations.view('members'):
            name = (member.get('name') or '').strip().lower()
            if name:
                by_name.setdefault(name, member)
        updated = []
        for player in record.players:
            member = by_name.get(player.name.strip().lower())
            if member is None:
                continue
            member = dict(member)
            member['games_played'] = int(member.get('games_played') or 0) + 1
            if player.result == 'win':
                member['wins'] = int(member.get('wins') or 0) + 1
            elif player.result == 'loss':
                member['losses'] = int(member.get('losses') or 0) + 1
            member['last_visit'] = format_ts(record.session_end)
            updated.append(member)
        return updated

    # ---- ticker ----

    def start_ticker(self, on_tick: Callable[[Dict[Any, int]], None]) -> Ticker:
        self.stop_ticker()
        self._ticker = Ticker(self.runner, self.tables, on_tick, clock=self.clock, interval=self._tick_interval)
        self._ticker.start()
        return self._ticker

    def stop_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.stop()
            self._ticker = None

    # ---- recovery ----

    def retry(self) -> None:
        """Full reload: clear the connection state, resubscribe and refetch."""
        self.health.reset()
        self.realtime.reconnect()
        self.runner.spawn(self.realtime.sync_all)

    def sync_now(self) -> None:
        """Refetch every collection; a clean sync closes the overlay."""
        def _sync():
            if self.realtime.sync_all():
                self.health.reset()
        self.runner.spawn(_sync)

    def reconnect_realtime(self) -> None:
        self.realtime.reconnect()

    def on_visibility(self, visible: bool) -> None:
        if visible:
            self.realtime.on_visible()
