import pytest

from cueclub.services.sync.errors import ErrorKind
from cueclub.services.sync.health import ConnectionHealthMonitor, HealthLevel
from cueclub.services.sync.mutations import STALE, MutationLayer
from cueclub.services.sync.realtime import RealtimeReconciler
from cueclub.services.sync.store import CHANNEL_ERROR, CLOSED, COLLECTIONS, SUBSCRIBED
from conftest import ENGINE_CONFIG, FakeStore, InlineRunner, club_rows


class Harness:
    def __init__(self, auto_status=SUBSCRIBED):
        self.store = FakeStore(data=club_rows(), auto_status=auto_status)
        self.runner = InlineRunner()
        self.health = ConnectionHealthMonitor(self.runner, ENGINE_CONFIG)
        self.mutations = MutationLayer(self.store, self.runner, self.health)
        self.realtime = RealtimeReconciler(self.store, self.runner, self.mutations, self.health, ENGINE_CONFIG)

    def channel_status(self, collection, status):
        for sub in self.store.live(collection):
            sub.set_status(status)


@pytest.fixture()
def harness():
    h = Harness()
    h.realtime.start()
    yield h
    h.realtime.stop()


def test_start_subscribes_every_collection_and_loads_views(harness):
    assert set(harness.store.subscriptions) == set(COLLECTIONS)
    assert harness.realtime.all_healthy
    assert [t.table_number for t in harness.mutations.view('tables')] == [1, 2, 3, 4]
    assert harness.mutations.get('table_configs', 4)['use_global_pricing'] is False
    assert harness.mutations.get('members', 2)['name'] == 'Meera'


def test_change_event_refetches_merged_table_view(harness):
    harness.store.data['tables'][0]['status'] = 'occupied'
    harness.store.data['sessions'].append({
        'table_id': 1, 'players': ['Kabir'], 'start_time': '2026-10-19T14:00:00+00:00',
        'paused_ms': 0, 'billing_mode': 'hourly', 'frame_count': 0, 'items': [], 'total_bill': '200',
    })
    harness.store.push('sessions', op='insert', key=1)
    table = harness.mutations.get('tables', 1)
    assert table.status == 'occupied'
    assert table.players == ('Kabir',)


def test_closed_channel_retries_once_then_recovers(harness):
    harness.channel_status('members', CLOSED)
    channel = harness.realtime.channels['members']
    assert not channel.healthy
    assert channel.attempt == 1
    harness.runner.advance(3)
    assert channel.healthy
    assert channel.attempt == 0
    assert harness.health.state.level is HealthLevel.OK


def test_second_failure_reports_realtime_down_and_polls():
    h = Harness()
    h.realtime.start()
    h.store.auto_status = CHANNEL_ERROR
    h.channel_status('bookings', CLOSED)
    h.runner.advance(3)
    assert h.health.state.realtime_down
    assert h.realtime.polling
    assert not h.health.blocking
    fetched = len(h.store.fetches)
    h.runner.advance(30)
    assert len(h.store.fetches) > fetched
    assert h.realtime.polling
    # Channels come back: polling stops
    h.store.auto_status = SUBSCRIBED
    h.realtime.reconnect()
    assert h.realtime.all_healthy
    assert not h.realtime.polling
    assert not h.health.state.realtime_down
    h.realtime.stop()


def test_silent_channel_times_out():
    h = Harness(auto_status=None)
    h.realtime.start()
    h.runner.advance(8)
    assert all(ch.attempt == 1 for ch in h.realtime.channels.values())
    assert not h.health.state.realtime_down
    h.runner.advance(3 + 8)
    assert h.health.state.realtime_down
    assert h.health.state.level is HealthLevel.REALTIME_DOWN
    h.realtime.stop()


def test_late_events_from_replaced_subscription_are_ignored(harness):
    old = harness.store.live('members')[0]
    harness.realtime.reconnect()
    fetches = len(harness.store.fetches)
    old.notify({'collection': 'members', 'op': 'update', 'id': 1})
    assert len(harness.store.fetches) == fetches


def test_failed_fetch_degrades_collection_and_marks_it_stale(harness):
    harness.store.fail_fetches['inventory'] = ErrorKind.PERMISSION
    assert harness.realtime.refresh('inventory') is False
    assert 'inventory' in harness.health.state.degraded
    assert harness.mutations.sync_state('inventory', 1) == STALE
    assert not harness.health.blocking


def test_failed_session_fetch_keeps_previous_table_view(harness):
    before = harness.mutations.view('tables')
    harness.store.fail_fetches['sessions'] = ErrorKind.NETWORK
    assert harness.realtime.refresh('tables') is False
    assert harness.mutations.view('tables') == before
    assert harness.mutations.sync_state('tables', 1) == STALE


def test_visibility_recovery_is_debounced(harness):
    harness.store.auto_status = None
    harness.channel_status('members', CLOSED)
    harness.store.auto_status = SUBSCRIBED
    fetches = len(harness.store.fetches)
    harness.realtime.on_visible()
    harness.runner.advance(0.2)
    harness.realtime.on_visible()
    harness.runner.advance(0.4)
    assert len(harness.store.fetches) == fetches
    harness.runner.advance(0.2)
    assert harness.realtime.channels['members'].healthy
    assert len(harness.store.fetches) > fetches


def test_sync_all_reports_partial_failure(harness):
    harness.store.fail_fetches['tournaments'] = ErrorKind.SCHEMA
    assert harness.realtime.sync_all() is False
    del harness.store.fail_fetches['tournaments']
    assert harness.realtime.sync_all() is True
