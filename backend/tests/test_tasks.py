import logging
import threading

import pytest
import socketio

from cueclub.services.sync.health import ConnectionHealthMonitor
from cueclub.services.sync.mutations import COMMITTED, MutationLayer
from cueclub.services.sync.tasks import TaskRunner
from conftest import ENGINE_CONFIG, FakeStore, club_rows


@pytest.fixture()
def task_runner():
    runner = TaskRunner(socketio.Client())
    yield runner
    runner.stop()


def test_spawned_tasks_run_in_order_on_one_worker(task_runner):
    seen = []
    done = threading.Event()
    for n in range(20):
        task_runner.spawn(lambda n=n: seen.append((n, threading.current_thread().name)))
    task_runner.spawn(done.set)
    assert done.wait(2)
    assert [n for n, _ in seen] == list(range(20))
    workers = {name for _, name in seen}
    assert len(workers) == 1
    assert threading.current_thread().name not in workers


def test_timers_fire_by_due_time_and_cancel(task_runner):
    fired = []
    done = threading.Event()
    cancelled = task_runner.call_later(0.05, fired.append, 'cancelled')
    task_runner.call_later(0.1, fired.append, 'late')
    task_runner.call_later(0.02, fired.append, 'early')
    task_runner.call_later(0.15, done.set)
    cancelled.cancel()
    assert done.wait(2)
    assert fired == ['early', 'late']


def test_failing_task_is_logged_and_the_loop_keeps_going(task_runner, caplog):
    done = threading.Event()

    def explode():
        raise RuntimeError('boom')

    with caplog.at_level(logging.ERROR, logger='cueclub.services.sync.tasks'):
        task_runner.spawn(explode)
        task_runner.spawn(done.set)
        assert done.wait(2)
    assert any('[task] explode failed' in r.getMessage() for r in caplog.records)


def test_stop_drops_pending_work(task_runner):
    fired = []
    task_runner.call_later(0.05, fired.append, 'timer')
    task_runner.stop()
    task_runner.spawn(fired.append, 'task')
    threading.Event().wait(0.1)
    assert fired == []


def test_worker_writes_interleave_with_reads_on_the_caller():
    fake = FakeStore(data=club_rows())
    runner = TaskRunner(socketio.Client())
    health = ConnectionHealthMonitor(runner, ENGINE_CONFIG)
    layer = MutationLayer(fake, runner, health)
    layer.reconcile('members', fake.fetch('members'))
    member = layer.get('members', 1)
    done = threading.Event()
    try:
        for wins in range(1, 201):
            settled = done.set if wins == 200 else None
            layer.apply_and_sync('members', [dict(member, wins=wins)], on_settled=settled)
            # Authoritative reads land while the worker is still writing
            layer.reconcile('members', fake.fetch('members'))
            layer.mark_stale('inventory')
            layer.sync_state('members', 1)
        assert done.wait(5)
        assert fake.data['members'][0]['wins'] == 200
        layer.reconcile('members', fake.fetch('members'))
        assert layer.get('members', 1)['wins'] == 200
        assert layer.sync_state('members', 1) == COMMITTED
        assert health.state.healthy
    finally:
        runner.stop()
