"""Persistence boundary between the sync engine and the club store.

The engine only sees :class:`Store`: ``fetch``, ``write`` and ``subscribe``,
all club-scoped. Failures surface as :class:`StoreError` with an
:class:`ErrorKind` decided here, so callers never pattern-match messages.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional
import logging
import threading

import httpx
from socketio import Client as SocketClient
from socketio.exceptions import ConnectionError as SocketConnectionError

from .errors import ErrorKind, StoreError, kind_for_status

logger = logging.getLogger(__name__)

COLLECTIONS = (
    'members', 'tables', 'sessions', 'match_history', 'bookings',
    'tournaments', 'inventory', 'rate_plans', 'clubs',
)
# Live sessions are addressed by the table they run on
KEY_FIELDS = {'sessions': 'table_id'}
WRITE_OPS = ('insert', 'update', 'upsert', 'delete')

SUBSCRIBED = 'SUBSCRIBED'
CLOSED = 'CLOSED'
CHANNEL_ERROR = 'CHANNEL_ERROR'
TIMED_OUT = 'TIMED_OUT'

NAMESPACE = '/ws'


def entity_key(collection: str, entity: Dict[str, Any]) -> Any:
    return entity.get(KEY_FIELDS.get(collection, 'id'))


class Subscription:
    """One push channel for one collection.

    Status callbacks receive ``(subscription, status, error)``; once closed a
    subscription ignores everything delivered to it.
    """

    def __init__(self, collection: str, on_change: Callable[[Dict[str, Any]], None],
                 on_status: Callable[['Subscription', str, Optional[Exception]], None],
                 closer: Optional[Callable[['Subscription'], None]] = None):
        self.collection = collection
        self.status: Optional[str] = None
        self.closed = False
        self._on_change = on_change
        self._on_status = on_status
        self._closer = closer

    @property
    def ready(self) -> bool:
        return self.status == SUBSCRIBED and not self.closed

    def notify(self, event: Dict[str, Any]) -> None:
        if not self.closed:
            self._on_change(event)

    def set_status(self, status: str, error: Optional[Exception] = None) -> None:
        if self.closed:
            return
        self.status = status
        self._on_status(self, status, error)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._closer is not None:
            self._closer(self)


class Store(ABC):
    club_id: Any

    @abstractmethod
    def fetch(self, collection: str) -> List[Dict[str, Any]]:
        """Every row of ``collection`` for this club."""

    @abstractmethod
    def write(self, collection: str, op: str, entity: Dict[str, Any]) -> Dict[str, Any]:
        """Insert, update, upsert or delete one entity; returns the stored row."""

    @abstractmethod
    def subscribe(self, collection: str, on_change, on_status) -> Subscription:
        """Open a push channel; status arrives asynchronously through ``on_status``."""

    def close(self) -> None:
        pass


class HttpStore(Store):
    """Club store over JSON HTTP, with pushes from the service's Socket.IO rooms."""

    def __init__(self, base_url: str, club_id: Any, http: Optional[httpx.Client] = None,
                 socket: Optional[SocketClient] = None, timeout: float = 10.0,
                 connect_timeout: float = 5.0):
        self.base_url = base_url.rstrip('/')
        self.club_id = club_id
        self._owns_http = http is None
        self._http = http or httpx.Client(base_url=self.base_url, timeout=timeout)
        self.socket = socket or SocketClient(reconnection=False)
        self._connect_timeout = connect_timeout
        self._subs: Dict[str, Subscription] = {}
        self._connect_lock = threading.Lock()
        self.socket.on('change', self._on_change, namespace=NAMESPACE)
        self.socket.on('disconnect', self._on_disconnect, namespace=NAMESPACE)

    # ---- request/response ----

    def _path(self, collection: str, key: Any = None) -> str:
        if collection not in COLLECTIONS:
            raise StoreError(ErrorKind.VALIDATION, f'unknown collection {collection}', collection)
        path = f'/api/clubs/{self.club_id}/{collection}'
        return path if key is None else f'{path}/{key}'

    def _request(self, method: str, path: str, collection: str, json: Any = None) -> Any:
        try:
            response = self._http.request(method, path, json=json)
        except httpx.TransportError as exc:
            raise StoreError(ErrorKind.NETWORK, f'network request failed: {exc}', collection) from exc
        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {}
            message = body.get('error') or f'{method} {path} returned {response.status_code}'
            try:
                kind = ErrorKind(body['kind'])
            except (KeyError, ValueError):
                kind = kind_for_status(response.status_code)
            raise StoreError(kind, message, collection, status=response.status_code)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise StoreError(ErrorKind.SCHEMA, f'{collection}: response is not JSON', collection) from exc

    def fetch(self, collection: str) -> List[Dict[str, Any]]:
        rows = self._request('GET', self._path(collection), collection)
        if not isinstance(rows, list):
            raise StoreError(ErrorKind.SCHEMA, f'{collection}: expected a list of rows', collection)
        return rows

    def write(self, collection: str, op: str, entity: Dict[str, Any]) -> Dict[str, Any]:
        if op not in WRITE_OPS:
            raise StoreError(ErrorKind.VALIDATION, f'unknown write op {op}', collection)
        if op == 'insert':
            return self._request('POST', self._path(collection), collection, json=entity)
        key = entity_key(collection, entity)
        if key is None:
            raise StoreError(ErrorKind.VALIDATION, f'{collection}: {op} needs a key', collection)
        if op == 'delete':
            return self._request('DELETE', self._path(collection, key), collection)
        return self._request('PUT', self._path(collection, key), collection, json=entity)

    # ---- push ----

    def subscribe(self, collection: str, on_change, on_status) -> Subscription:
        sub = Subscription(collection, on_change, on_status, closer=self._unsubscribe)
        previous = self._subs.get(collection)
        self._subs[collection] = sub
        if previous is not None:
            previous.close()
        try:
            self._ensure_connected()

            def _ack(*reply):
                status = (reply[0] or {}).get('status') if reply else None
                sub.set_status(SUBSCRIBED if status == SUBSCRIBED else CHANNEL_ERROR)

            self.socket.emit('subscribe', {'club_id': self.club_id, 'collection': collection},
                             namespace=NAMESPACE, callback=_ack)
        except (SocketConnectionError, ValueError) as exc:
            logger.warning(f"[rt] {collection} subscribe failed: {exc}")
            sub.set_status(CHANNEL_ERROR, exc)
        return sub

    def _ensure_connected(self) -> None:
        # One connect at a time; a racing caller that lost still sees the socket up
        with self._connect_lock:
            if self.socket.connected:
                return
            try:
                self.socket.connect(self.base_url, namespaces=[NAMESPACE], wait_timeout=self._connect_timeout)
            except (SocketConnectionError, ValueError):
                if not self.socket.connected:
                    raise
                logger.info('[rt] socket already connected')

    def _unsubscribe(self, sub: Subscription) -> None:
        if self._subs.get(sub.collection) is sub:
            self._subs.pop(sub.collection, None)
            if self.socket.connected:
                self.socket.emit('unsubscribe', {'club_id': self.club_id, 'collection': sub.collection},
                                 namespace=NAMESPACE)

    def _on_change(self, data):
        sub = self._subs.get((data or {}).get('collection'))
        if sub is not None:
            sub.notify(data)

    def _on_disconnect(self, *args):
        for sub in list(self._subs.values()):
            sub.set_status(CLOSED)

    def close(self) -> None:
        for sub in list(self._subs.values()):
            sub.close()
        if self.socket.connected:
            self.socket.disconnect()
        if self._owns_http:
            self._http.close()
