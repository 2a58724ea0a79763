"""Optimistic mutations with a pending/committed state per entity.

``apply_and_sync`` makes a change visible at once and writes it in the
background. A failed write is reported, never rolled back: the visible value
stays until the next authoritative read replaces it. Policy is
last-writer-wins per entity; two devices editing one table overwrite each
other.
"""

from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import logging

from ..billing.types import FREE, TableSession
from .errors import ErrorKind, MutationsBlocked, StoreError
from .store import KEY_FIELDS

logger = logging.getLogger(__name__)

COMMITTED = 'committed'
PENDING = 'pending'
FAILED = 'failed'
STALE = 'stale'

Write = Tuple[str, str, Dict[str, Any]]


class DictCodec:
    """Plain rows: one entity, one write."""

    def __init__(self, key_field: str = 'id'):
        self.key_field = key_field

    def key(self, entity: Dict[str, Any]) -> Any:
        return entity.get(self.key_field)

    def writes(self, collection: str, before: Optional[Dict[str, Any]], after: Dict[str, Any]) -> List[Write]:
        if before is None:
            return [(collection, 'insert', dict(after))]
        if before == after:
            return []
        return [(collection, 'update', dict(after))]


class TableSessionCodec:
    """The merged table view is stored as two rows.

    The table row carries status and billing mode, the session row carries the
    payload. Each is written only when its own fields changed; a freed table
    deletes its session row.
    """

    def key(self, entity: TableSession) -> Any:
        return entity.id

    def writes(self, collection: str, before: Optional[TableSession], after: TableSession) -> List[Write]:
        writes = []
        if before is None or before.table_fields() != after.table_fields():
            writes.append(('tables', 'update', after.table_fields()))
        if before is None or before.session_fields() != after.session_fields():
            if after.status == FREE:
                writes.append(('sessions', 'delete', {'table_id': after.id}))
            else:
                writes.append(('sessions', 'upsert', after.session_fields()))
        return writes


class MutationLayer:
    def __init__(self, store, runner, health, refresh: Optional[Callable[[str], None]] = None):
        self._store = store
        self._runner = runner
        self._health = health
        self._refresh = refresh
        self._lock = runner.lock
        self._codecs = {
            'tables': TableSessionCodec(),
            'match_history': DictCodec('local_id'),
        }
        self._snapshots: Dict[str, Dict[Any, Any]] = {}
        self._visible: Dict[str, Dict[Any, Any]] = {}
        self._states: Dict[Tuple[str, Any], str] = {}
        self._generations: Dict[Tuple[str, Any], int] = {}

    def codec(self, collection: str):
        codec = self._codecs.get(collection)
        if codec is None:
            codec = self._codecs[collection] = DictCodec(KEY_FIELDS.get(collection, 'id'))
        return codec

    # ---- writes ----

    def apply_and_sync(self, collection: str, entities: Iterable[Any],
                       on_settled: Optional[Callable[[], None]] = None) -> List[Any]:
        """Show ``entities`` immediately and write the changed ones.

        Each entity is compared with the last known value for its key (the
        authoritative snapshot plus this device's own pending writes); equal
        entities are skipped. Returns the keys that were dispatched;
        ``on_settled`` runs once every write of the call has finished.
        """
        with self._lock:
            if self._health.blocking:
                raise MutationsBlocked('Connection lost: retry or sync before making changes')
            codec = self.codec(collection)
            visible = self._visible.setdefault(collection, {})
            batch = []
            for entity in entities:
                key = codec.key(entity)
                if key is None:
                    raise ValueError(f'{collection}: entity has no {getattr(codec, "key_field", "id")}')
                writes = codec.writes(collection, visible.get(key), entity)
                if not writes:
                    continue
                visible[key] = entity
                ident = (collection, key)
                self._generations[ident] = generation = self._generations.get(ident, 0) + 1
                self._states[ident] = PENDING
                batch.append((key, generation, writes))
            if not batch:
                if on_settled is not None:
                    on_settled()
                return []
            self._runner.spawn(self._dispatch, collection, batch, on_settled)
            return [key for key, _, _ in batch]

    def _dispatch(self, collection: str, batch, on_settled) -> None:
        try:
            for key, generation, writes in batch:
                self._write_entity(collection, key, generation, writes)
        finally:
            if on_settled is not None:
                on_settled()

    def _write_entity(self, collection: str, key: Any, generation: int, writes: List[Write]) -> None:
        failures = []
        for target, op, payload in writes:
            try:
                self._store.write(target, op, payload)
            except StoreError as exc:
                if op == 'delete' and exc.kind is ErrorKind.NOT_FOUND:
                    continue
                logger.warning(f"[sync] {op} {target} key={key} failed: {exc.kind.value} {exc.message}")
                failures.append(exc)
        ident = (collection, key)
        with self._lock:
            # A newer write for the same entity decides its state
            if self._generations.get(ident) == generation:
                if not failures:
                    self._states[ident] = COMMITTED
                    self._snapshots.setdefault(collection, {})[key] = self.get(collection, key)
                elif len(failures) == len(writes):
                    self._states[ident] = FAILED
                else:
                    self._states[ident] = STALE
            if not failures:
                self._health.report_success(collection)
                return
            if len(failures) < len(writes):
                logger.warning(f"[sync] {collection} key={key} partially written, marked stale")
            for exc in failures:
                self._health.report_failure(exc, label=exc.collection or collection)
        if self._refresh is not None:
            self._refresh(collection)

    # ---- authoritative reads ----

    def reconcile(self, collection: str, entities: Iterable[Any]) -> None:
        """Install an authoritative snapshot.

        Entities with a write in flight keep their optimistic value until it
        settles; everything else takes the server's value and is committed.
        """
        with self._lock:
            codec = self.codec(collection)
            snapshot = {codec.key(entity): entity for entity in entities}
            previous = self._visible.get(collection, {})
            visible = {}
            for key, entity in snapshot.items():
                ident = (collection, key)
                if self._states.get(ident) == PENDING and key in previous:
                    visible[key] = previous[key]
                else:
                    visible[key] = entity
                    self._states[ident] = COMMITTED
            for key, entity in previous.items():
                if key not in snapshot and self._states.get((collection, key)) == PENDING:
                    visible[key] = entity
            for ident in [i for i in list(self._states) if i[0] == collection and i[1] not in visible]:
                self._states.pop(ident, None)
            self._snapshots[collection] = snapshot
            self._visible[collection] = visible

    def mark_stale(self, collection: str) -> None:
        """The last read of ``collection`` failed; what is shown may be out of date."""
        with self._lock:
            for key in self._visible.get(collection, {}):
                ident = (collection, key)
                if self._states.get(ident) != PENDING:
                    self._states[ident] = STALE

    def view(self, collection: str) -> List[Any]:
        with self._lock:
            return list(self._visible.get(collection, {}).values())

    def get(self, collection: str, key: Any) -> Any:
        with self._lock:
            return self._visible.get(collection, {}).get(key)

    def snapshot(self, collection: str, key: Any) -> Any:
        with self._lock:
            return self._snapshots.get(collection, {}).get(key)

    def sync_state(self, collection: str, key: Any) -> str:
        with self._lock:
            return self._states.get((collection, key), COMMITTED)

    def loaded(self, collection: str) -> bool:
        return collection in self._snapshots
