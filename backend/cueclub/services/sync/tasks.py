from collections import deque
import functools
import heapq
import itertools
import logging
import threading
import time

logger = logging.getLogger(__name__)


class Timer:
    """Handle for a delayed call; cancelling makes the pending call a no-op."""
    __slots__ = ('cancelled',)

    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class TaskRunner:
    """One worker loop for every background task and timer of a console.

    ``backend`` is anything exposing ``start_background_task``: the
    Flask-SocketIO server instance or a python-socketio ``Client``. It starts
    a single worker; spawned tasks and due timers run on it one at a time, in
    order. Callers on other threads (the UI, Socket.IO callbacks) share
    ``lock`` with the engine components, so each state change is atomic.
    """

    def __init__(self, backend):
        self._backend = backend
        self.lock = threading.RLock()
        self._cond = threading.Condition()
        self._ready = deque()
        self._timers = []
        self._seq = itertools.count()
        self._worker = None
        self._stopped = False

    def _wake(self) -> None:
        if self._worker is None:
            self._worker = self._backend.start_background_task(self._loop)
        self._cond.notify()

    def spawn(self, fn, *args, **kwargs) -> None:
        with self._cond:
            if self._stopped:
                logger.warning(f"[task] runner stopped, dropping {getattr(fn, '__name__', fn)}")
                return
            self._ready.append((None, fn, args, kwargs))
            self._wake()

    def call_later(self, delay: float, fn, *args) -> Timer:
        timer = Timer()
        with self._cond:
            if not self._stopped:
                due = time.monotonic() + max(0.0, delay)
                heapq.heappush(self._timers, (due, next(self._seq), timer, fn, args))
                self._wake()
        return timer

    def stop(self) -> None:
        """Drop pending work and let the worker exit."""
        with self._cond:
            self._stopped = True
            self._ready.clear()
            self._timers = []
            self._cond.notify()

    def _next(self):
        with self._cond:
            while not self._stopped:
                if self._ready:
                    return self._ready.popleft()
                while self._timers and self._timers[0][2].cancelled:
                    heapq.heappop(self._timers)
                now = time.monotonic()
                if self._timers and self._timers[0][0] <= now:
                    _, _, timer, fn, args = heapq.heappop(self._timers)
                    return timer, fn, args, {}
                self._cond.wait(self._timers[0][0] - now if self._timers else None)
            return None

    def _loop(self) -> None:
        while True:
            task = self._next()
            if task is None:
                return
            timer, fn, args, kwargs = task
            if timer is not None and timer.cancelled:
                continue
            try:
                fn(*args, **kwargs)
            except Exception:
                logger.exception(f"[task] {getattr(fn, '__name__', fn)} failed")


def locked(method):
    """Run ``method`` holding the instance's ``_lock``."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper
