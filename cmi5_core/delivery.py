"""
Delivery queue and batcher.

Queue: FIFO of Statements shared by producer threads and the worker.

Batcher: one worker thread (ThreadPoolExecutor, max_workers=1) runs every
delivery loop, plus the launch and completion sequences the engine hands
it. Two flush triggers (timer tick, immediate flush after a quiz answer)
therefore never interleave network calls: the second waits in the
executor's queue, then finds whatever is left and sends only that.

Delivery loop: one statement at a time, in order, each awaited before the
next. Transient failure → the failed statement and everything after it go
back to the front, and the loop ends until the next trigger. Session gone →
halt, queue dropped, nothing is ever sent again.
"""

import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor

from .config import log
from .constants import MAX_QUEUE_DISCONNECTED, BATCH_INTERVAL_SEC
from .errors import DeliveryError, SessionInvalidatedError


class DeliveryQueue:
    """Thread-safe ordered buffer of pending statements."""

    def __init__(self):
        self._items = deque()
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._items)

    def append(self, statement):
        with self._lock:
            self._items.append(statement)

    def drain(self):
        """Take everything currently queued."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
            return items

    def requeue(self, statements):
        """Put statements back at the front, keeping their order."""
        with self._lock:
            self._items.extendleft(reversed(list(statements)))

    def clear(self):
        with self._lock:
            dropped = len(self._items)
            self._items.clear()
            return dropped

    def cap(self, max_len):
        """Drop the oldest entries beyond max_len. Returns how many were dropped."""
        with self._lock:
            dropped = 0
            while len(self._items) > max_len:
                self._items.popleft()
                dropped += 1
            return dropped

    def snapshot(self):
        with self._lock:
            return list(self._items)


class Batcher:
    """
    Serializes all network work on a single worker.

      deliver(statement) — sends one statement; raises DeliveryError
      can_send()         — True while the session is connected
      on_halt(error)     — called once when the LRS reports the session gone
    """

    def __init__(self, queue, deliver, can_send, on_halt,
                 max_disconnected=MAX_QUEUE_DISCONNECTED):
        self.queue = queue
        self._deliver = deliver
        self._can_send = can_send
        self._on_halt = on_halt
        self._max_disconnected = max_disconnected
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cmi5-delivery")
        self._closed = False
        self._halted = False

    @property
    def halted(self) -> bool:
        return self._halted

    def run(self, fn, *args, **kwargs):
        """Queue any callable behind in-flight work. Returns its Future."""
        if self._closed:
            future = Future()
            future.set_exception(RuntimeError("batcher is shut down"))
            return future
        return self._executor.submit(fn, *args, **kwargs)

    def flush(self):
        """Request a delivery loop. The Future resolves to the number delivered."""
        if self._closed:
            future = Future()
            future.set_result(0)
            return future
        return self._executor.submit(self.drain)

    def drain(self):
        """Delivery loop. Must only run on the worker (or after shutdown)."""
        if self._halted:
            self.queue.clear()
            return 0

        if not self._can_send():
            dropped = self.queue.cap(self._max_disconnected)
            if dropped:
                log.warning("Not connected — dropped %d oldest queued statements", dropped)
            return 0

        batch = self.queue.drain()
        if not batch:
            return 0

        delivered = 0
        for i, statement in enumerate(batch):
            try:
                self._deliver(statement)
                delivered += 1
            except SessionInvalidatedError as e:
                self.halt(e)
                log.warning("Dropped %d undelivered statements after halt", len(batch) - i)
                break
            except DeliveryError as e:
                remaining = batch[i:]
                self.queue.requeue(remaining)
                log.warning(
                    "Delivery failed at %d/%d (%s) — re-queued %d statements",
                    i + 1, len(batch), e, len(remaining),
                )
                break
            except Exception as e:
                self.queue.requeue(batch[i:])
                log.error("Unexpected delivery error: %s", e, exc_info=True)
                break
        if delivered:
            log.info("Flushed %d statements (%d still queued)", delivered, len(self.queue))
        return delivered

    def halt(self, error=None):
        if self._halted:
            return
        self._halted = True
        # Halt the session first so no producer can queue behind the clear.
        self._on_halt(error)
        dropped = self.queue.clear()
        log.error("Delivery halted: %s (%d queued statements dropped)", error, dropped)

    def shutdown(self, wait=True):
        self._closed = True
        self._executor.shutdown(wait=wait)


class FlushTimer:
    """
    Periodic flush trigger. Waits for its own flush to finish before the
    next sleep, so ticks never stack up behind a slow LRS.
    """

    def __init__(self, batcher, interval=BATCH_INTERVAL_SEC):
        self._batcher = batcher
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="cmi5-flush-timer", daemon=True)
        self._thread.start()
        log.info("Flush timer started (interval=%ss)", self.interval)

    def stop(self):
        self._stop.set()

    def _run(self):
        while not self._stop.wait(self.interval):
            if self._batcher.halted:
                break
            try:
                self._batcher.flush().result()
            except Exception as e:
                log.error("Timer flush error: %s", e, exc_info=True)
