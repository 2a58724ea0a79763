import os
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
import pytest

# Ensure the backend root (containing the `cueclub` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from socketio.exceptions import ConnectionError as SocketConnectionError

from cueclub import create_app, db, socketio
from cueclub.services.sync.console import ClubConsole
from cueclub.services.sync.errors import ErrorKind, StoreError
from cueclub.services.sync.store import COLLECTIONS, KEY_FIELDS, SUBSCRIBED, Store, Subscription
from cueclub.services.sync.tasks import Timer


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    DEMO_CLUB_NAME = 'Test Club'


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import cueclub.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def club(flask_app):
    from cueclub.seed import seed_demo_club
    return seed_demo_club('Test Club')


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


# ---- engine doubles ----

class ManualClock:
    """Wall clock that only moves when a test says so."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 10, 19, 14, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds=0, minutes=0, hours=0):
        self.now += timedelta(seconds=seconds, minutes=minutes, hours=hours)


class InlineRunner:
    """Task runner for tests.

    Spawned tasks run immediately (or queue until ``run_pending`` when
    ``defer`` is set); delayed calls fire only as ``advance`` moves virtual
    time past them, moving the attached clock along.
    """

    def __init__(self, clock=None, defer=False):
        self.clock = clock
        self.defer = defer
        self.lock = threading.RLock()
        self.now = 0.0
        self._seq = 0
        self._timers = []
        self._spawned = []

    def spawn(self, fn, *args, **kwargs):
        if self.defer:
            self._spawned.append((fn, args, kwargs))
        else:
            fn(*args, **kwargs)

    def run_next(self):
        fn, args, kwargs = self._spawned.pop(0)
        fn(*args, **kwargs)

    def run_pending(self):
        while self._spawned:
            fn, args, kwargs = self._spawned.pop(0)
            fn(*args, **kwargs)

    def call_later(self, delay, fn, *args):
        timer = Timer()
        self._seq += 1
        self._timers.append((self.now + delay, self._seq, timer, fn, args))
        return timer

    @property
    def scheduled(self):
        return [entry for entry in self._timers if not entry[2].cancelled]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = sorted(e for e in self._timers if e[0] <= target and not e[2].cancelled)
            if not due:
                break
            entry = due[0]
            self._timers.remove(entry)
            self._move_to(entry[0])
            entry[3](*entry[4])
        self._timers = [e for e in self._timers if not e[2].cancelled]
        self._move_to(target)

    def _move_to(self, at):
        if self.clock is not None and at > self.now:
            self.clock.advance(seconds=at - self.now)
        self.now = max(self.now, at)


class FakeStore(Store):
    """In-memory club store with switchable failures and controllable channels."""

    def __init__(self, club_id=1, data=None, auto_status=SUBSCRIBED):
        self.club_id = club_id
        self.data = {c: [] for c in COLLECTIONS}
        for collection, rows in (data or {}).items():
            self.data[collection] = [dict(r) for r in rows]
        self.auto_status = auto_status
        self.fail_fetches = {}
        self.fail_writes = {}
        self.writes = []
        self.fetches = []
        self.subscriptions = {}
        self._next_id = 1000
        self.closed = False

    def fetch(self, collection):
        self.fetches.append(collection)
        if collection in self.fail_fetches:
            raise StoreError(self.fail_fetches[collection], f'{collection} fetch failed', collection)
        return [dict(r) for r in self.data[collection]]

    def write(self, collection, op, entity):
        if collection in self.fail_writes:
            raise StoreError(self.fail_writes[collection], f'{collection} write failed', collection)
        self.writes.append((collection, op, dict(entity)))
        key_field = KEY_FIELDS.get(collection, 'id')
        rows = self.data[collection]
        if op == 'insert':
            self._next_id += 1
            row = dict(entity)
            row.setdefault('id', self._next_id)
            rows.append(row)
            return dict(row)
        key = entity.get(key_field)
        existing = next((r for r in rows if r.get(key_field) == key), None)
        if op == 'delete':
            if existing is None:
                raise StoreError(ErrorKind.NOT_FOUND, f'no {collection} row {key}', collection)
            rows.remove(existing)
            return {}
        if existing is None:
            if op != 'upsert':
                raise StoreError(ErrorKind.NOT_FOUND, f'no {collection} row {key}', collection)
            rows.append(dict(entity))
            return dict(entity)
        existing.update(entity)
        return dict(existing)

    def subscribe(self, collection, on_change, on_status):
        sub = Subscription(collection, on_change, on_status)
        self.subscriptions.setdefault(collection, []).append(sub)
        if self.auto_status:
            sub.set_status(self.auto_status)
        return sub

    def live(self, collection):
        return [s for s in self.subscriptions.get(collection, []) if not s.closed]

    def push(self, collection, op='update', key=None):
        for sub in self.live(collection):
            sub.notify({'collection': collection, 'op': op, 'id': key})

    def close(self):
        self.closed = True


class StubSocket:
    """Stands in for a socketio.Client; acks every subscribe with ``reply``.

    ``connect_error`` is raised from the first ``connect``; ``connect_delay``
    holds each connect open so concurrent callers overlap.
    """

    def __init__(self, reply=None, fail_connect=False, connect_error=None, connect_delay=0.0):
        self.connected = False
        self.handlers = {}
        self.emitted = []
        self.connects = 0
        self.reply = reply if reply is not None else {'status': 'SUBSCRIBED'}
        self.fail_connect = fail_connect
        self.connect_error = connect_error
        self.connect_delay = connect_delay

    def on(self, event, handler, namespace=None):
        self.handlers[event] = handler

    def connect(self, url, namespaces=None, wait_timeout=None):
        self.connects += 1
        if self.fail_connect:
            raise SocketConnectionError('refused')
        if self.connect_error is not None:
            error, self.connect_error = self.connect_error, None
            raise error
        if self.connect_delay:
            time.sleep(self.connect_delay)
        self.connected = True

    def emit(self, event, data=None, namespace=None, callback=None):
        self.emitted.append((event, data))
        if callback is not None:
            callback(self.reply)

    def disconnect(self):
        self.connected = False

    def start_background_task(self, target, *args, **kwargs):
        thread = threading.Thread(target=target, args=args, kwargs=kwargs, daemon=True)
        thread.start()
        return thread


def club_rows():
    return {
        'clubs': [{'id': 1, 'name': 'Test Club',
                   'settings': {'is_open': True, 'gst_enabled': False, 'gst_rate': 18}}],
        'rate_plans': [{
            'id': 1, 'club_id': 1, 'per_hour': '200.00', 'per_minute': '4.00', 'per_frame': '50.00',
            'peak_rate': '300.00', 'off_peak_rate': '150.00', 'peak_start': '18:00', 'peak_end': '23:00',
            'default_billing_mode': 'hourly', 'peak_pricing_enabled': False,
        }],
        'tables': [
            {'id': 1, 'club_id': 1, 'table_number': 1, 'table_name': 'Table 1', 'table_type': 'Snooker',
             'status': 'free', 'billing_mode': 'hourly', 'use_global_pricing': True, 'custom_pricing': None},
            {'id': 2, 'club_id': 1, 'table_number': 2, 'table_name': 'Table 2', 'table_type': 'Snooker',
             'status': 'free', 'billing_mode': 'per_minute', 'use_global_pricing': True, 'custom_pricing': None},
            {'id': 3, 'club_id': 1, 'table_number': 3, 'table_name': 'Table 3', 'table_type': 'Pool',
             'status': 'free', 'billing_mode': 'per_frame', 'use_global_pricing': True, 'custom_pricing': None},
            {'id': 4, 'club_id': 1, 'table_number': 4, 'table_name': 'VIP', 'table_type': '8-Ball',
             'status': 'free', 'billing_mode': 'hourly', 'use_global_pricing': False,
             'custom_pricing': {'per_hour': '350'}},
        ],
        'members': [
            {'id': 1, 'club_id': 1, 'name': 'Arjun', 'wins': 0, 'losses': 0, 'games_played': 0, 'last_visit': None},
            {'id': 2, 'club_id': 1, 'name': 'Meera', 'wins': 2, 'losses': 1, 'games_played': 3, 'last_visit': None},
        ],
        'inventory': [
            {'id': 1, 'club_id': 1, 'name': 'Cold Drink', 'price': '40.00', 'stock': 50, 'category': 'beverage'},
        ],
    }


ENGINE_CONFIG = {
    'OVERLAY_DEBOUNCE_MS': 400,
    'REALTIME_RETRY_SEC': 3,
    'SUBSCRIBE_TIMEOUT_SEC': 8,
    'FALLBACK_POLL_SEC': 30,
    'VISIBILITY_DEBOUNCE_MS': 500,
    'CLOCK_TICK_SEC': 1,
}


@pytest.fixture()
def clock():
    return ManualClock()


@pytest.fixture()
def runner(clock):
    return InlineRunner(clock=clock)


@pytest.fixture()
def store():
    return FakeStore(data=club_rows())


@pytest.fixture()
def console(store, runner, clock):
    club_console = ClubConsole(store, runner, clock=clock, config=ENGINE_CONFIG)
    club_console.start()
    yield club_console
    club_console.close()
