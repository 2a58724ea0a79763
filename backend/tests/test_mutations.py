from dataclasses import replace
from datetime import datetime, timezone

import pytest

from cueclub.services.billing.types import OCCUPIED, merge_tables
from cueclub.services.sync.errors import ErrorKind, MutationsBlocked
from cueclub.services.sync.health import ConnectionHealthMonitor
from cueclub.services.sync.mutations import COMMITTED, FAILED, PENDING, STALE, MutationLayer
from conftest import ENGINE_CONFIG, FakeStore, InlineRunner, club_rows

T0 = datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc)


@pytest.fixture()
def fake():
    return FakeStore(data=club_rows())


@pytest.fixture()
def deferred():
    return InlineRunner(defer=True)


@pytest.fixture()
def layer(fake, deferred):
    health = ConnectionHealthMonitor(deferred, ENGINE_CONFIG)
    mutations = MutationLayer(fake, deferred, health)
    mutations.reconcile('tables', merge_tables(fake.data['tables'], fake.data['sessions']))
    mutations.reconcile('members', fake.data['members'])
    return mutations


def _occupy(layer, table_id=1, **changes):
    current = layer.get('tables', table_id)
    return replace(current, status=OCCUPIED, start_time=T0, **changes)


def test_unchanged_entities_are_ignored(layer, fake, deferred):
    settled = []
    keys = layer.apply_and_sync('tables', [layer.get('tables', 1)], on_settled=lambda: settled.append(1))
    deferred.run_pending()
    assert keys == []
    assert fake.writes == []
    assert settled == [1]


def test_change_is_visible_before_the_write(layer, fake, deferred):
    updated = _occupy(layer, players=('Arjun',))
    layer.apply_and_sync('tables', [updated])
    assert layer.get('tables', 1) == updated
    assert layer.sync_state('tables', 1) == PENDING
    assert fake.writes == []
    deferred.run_pending()
    assert layer.sync_state('tables', 1) == COMMITTED
    assert [(c, op) for c, op, _ in fake.writes] == [('tables', 'update'), ('sessions', 'upsert')]


def test_only_changed_halves_are_written(layer, fake, deferred):
    layer.apply_and_sync('tables', [_occupy(layer)])
    deferred.run_pending()
    fake.writes.clear()
    layer.apply_and_sync('tables', [replace(layer.get('tables', 1), frame_count=1)])
    deferred.run_pending()
    assert [(c, op) for c, op, _ in fake.writes] == [('sessions', 'upsert')]


def test_failed_write_is_not_rolled_back(layer, fake, deferred):
    fake.fail_writes['sessions'] = ErrorKind.PERMISSION
    fake.fail_writes['tables'] = ErrorKind.PERMISSION
    updated = _occupy(layer)
    layer.apply_and_sync('tables', [updated])
    deferred.run_pending()
    assert layer.sync_state('tables', 1) == FAILED
    assert layer.get('tables', 1) == updated


def test_partial_failure_marks_table_stale_and_degrades(layer, fake, deferred):
    fake.fail_writes['sessions'] = ErrorKind.SCHEMA
    layer.apply_and_sync('tables', [_occupy(layer)])
    deferred.run_pending()
    assert layer.sync_state('tables', 1) == STALE
    assert 'sessions' in layer._health.state.degraded


def test_failure_triggers_refresh(fake, deferred):
    refreshed = []
    health = ConnectionHealthMonitor(deferred, ENGINE_CONFIG)
    layer = MutationLayer(fake, deferred, health, refresh=refreshed.append)
    layer.reconcile('members', fake.data['members'])
    fake.fail_writes['members'] = ErrorKind.CONFLICT
    member = dict(layer.get('members', 1), wins=1)
    layer.apply_and_sync('members', [member])
    deferred.run_pending()
    assert refreshed == ['members']


def test_reconcile_keeps_pending_values(layer, fake, deferred):
    updated = _occupy(layer)
    layer.apply_and_sync('tables', [updated])
    layer.reconcile('tables', merge_tables(fake.data['tables'], fake.data['sessions']))
    assert layer.get('tables', 1) == updated
    deferred.run_pending()
    layer.reconcile('tables', merge_tables(fake.data['tables'], fake.data['sessions']))
    assert layer.get('tables', 1).status == OCCUPIED
    assert layer.sync_state('tables', 1) == COMMITTED


def test_authoritative_read_supersedes_failed_value(layer, fake, deferred):
    fake.fail_writes['members'] = ErrorKind.PERMISSION
    layer.apply_and_sync('members', [dict(layer.get('members', 1), wins=99)])
    deferred.run_pending()
    assert layer.get('members', 1)['wins'] == 99
    layer.reconcile('members', fake.data['members'])
    assert layer.get('members', 1)['wins'] == 0
    assert layer.sync_state('members', 1) == COMMITTED


def test_newer_write_decides_state(layer, fake, deferred):
    fake.fail_writes['members'] = ErrorKind.PERMISSION
    layer.apply_and_sync('members', [dict(layer.get('members', 1), wins=1)])
    layer.apply_and_sync('members', [dict(layer.get('members', 1), wins=2)])
    deferred.run_next()
    assert layer.sync_state('members', 1) == PENDING
    del fake.fail_writes['members']
    deferred.run_next()
    assert layer.sync_state('members', 1) == COMMITTED
    assert fake.data['members'][0]['wins'] == 2


def test_new_rows_are_inserted_by_local_id(layer, fake, deferred):
    layer.apply_and_sync('match_history', [{'local_id': 'abc', 'table_number': 1}])
    deferred.run_pending()
    assert fake.writes[-1][:2] == ('match_history', 'insert')
    assert layer.get('match_history', 'abc')['table_number'] == 1


def test_freed_table_deletes_session_row_even_if_already_gone(layer, fake, deferred):
    layer.apply_and_sync('tables', [_occupy(layer)])
    deferred.run_pending()
    fake.data['sessions'].clear()
    freed = replace(layer.get('tables', 1), status='free', start_time=None)
    layer.apply_and_sync('tables', [freed])
    deferred.run_pending()
    assert layer.sync_state('tables', 1) == COMMITTED
    assert fake.data['tables'][0]['status'] == 'free'


def test_blocked_while_overlay_open(layer):
    layer._health.open_overlay()
    with pytest.raises(MutationsBlocked):
        layer.apply_and_sync('tables', [_occupy(layer)])
    assert layer.get('tables', 1).status == 'free'


def test_mark_stale_spares_pending(layer, deferred):
    layer.apply_and_sync('tables', [_occupy(layer)])
    layer.mark_stale('tables')
    assert layer.sync_state('tables', 1) == PENDING
    assert layer.sync_state('tables', 2) == STALE
