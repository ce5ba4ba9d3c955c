"""
Tests for DeliveryQueue, Batcher and FlushTimer.

The Batcher is driven with a scripted deliver() so the loop's ordering,
requeue and halt rules are checked without any HTTP.
"""

import threading
import time

import pytest

from cmi5_core.delivery import DeliveryQueue, Batcher, FlushTimer
from cmi5_core.errors import DeliveryError, SessionInvalidatedError


class Recorder:
    """deliver() stand-in: records attempts, fails on scripted items."""

    def __init__(self, fail=None, delay=0.0):
        self.fail = dict(fail or {})
        self.delay = delay
        self.attempts = []
        self.delivered = []
        self.active = 0
        self.max_active = 0
        self.halts = []
        self._lock = threading.Lock()

    def __call__(self, item):
        with self._lock:
            self.attempts.append(item)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            error = self.fail.pop(item, None)
            if error is not None:
                raise error
            self.delivered.append(item)
        finally:
            with self._lock:
                self.active -= 1

    def on_halt(self, error):
        self.halts.append(error)


@pytest.fixture
def queue():
    return DeliveryQueue()


def _batcher(queue, recorder, connected=True, max_disconnected=100):
    return Batcher(queue, recorder, lambda: connected, recorder.on_halt, max_disconnected)


class TestDeliveryQueue:

    def test_fifo(self, queue):
        for i in range(3):
            queue.append(i)
        assert queue.drain() == [0, 1, 2]
        assert len(queue) == 0

    def test_requeue_goes_to_the_front_in_order(self, queue):
        queue.append("new")
        queue.requeue(["a", "b"])
        assert queue.snapshot() == ["a", "b", "new"]

    def test_cap_drops_oldest(self, queue):
        for i in range(5):
            queue.append(i)
        assert queue.cap(3) == 2
        assert queue.snapshot() == [2, 3, 4]

    def test_clear_returns_count(self, queue):
        queue.append(1)
        assert queue.clear() == 1
        assert queue.clear() == 0


class TestBatcherDrain:

    def test_delivers_in_order(self, queue):
        recorder = Recorder()
        batcher = _batcher(queue, recorder)
        for i in range(5):
            queue.append(i)
        try:
            assert batcher.flush().result() == 5
        finally:
            batcher.shutdown()
        assert recorder.delivered == [0, 1, 2, 3, 4]

    def test_transient_failure_requeues_failed_and_rest(self, queue):
        """#3 of 5 fails: 1-2 delivered, 3-5 back at the front in order."""
        recorder = Recorder(fail={3: DeliveryError("HTTP 503", status=503)})
        batcher = _batcher(queue, recorder)
        for i in range(1, 6):
            queue.append(i)
        queue_after_failure = None
        try:
            assert batcher.flush().result() == 2
            queue_after_failure = queue.snapshot()
            assert batcher.flush().result() == 3
        finally:
            batcher.shutdown()
        assert queue_after_failure == [3, 4, 5]
        assert recorder.delivered == [1, 2, 3, 4, 5]
        assert recorder.attempts == [1, 2, 3, 3, 4, 5]

    def test_session_gone_halts_and_drops_everything(self, queue):
        """#2 of 5 reports session gone: halt, queue emptied, nothing more sent."""
        recorder = Recorder(fail={2: SessionInvalidatedError("gone", status=401)})
        batcher = _batcher(queue, recorder)
        for i in range(1, 6):
            queue.append(i)
        try:
            assert batcher.flush().result() == 1
            assert batcher.halted
            assert len(queue) == 0
            assert len(recorder.halts) == 1

            queue.append(6)
            assert batcher.flush().result() == 0
        finally:
            batcher.shutdown()
        assert recorder.attempts == [1, 2]
        assert len(queue) == 0

    def test_halt_stops_producers_before_clearing(self, queue):
        """A statement queued from on_halt (a producer racing the halt) is still dropped."""
        recorder = Recorder(fail={1: SessionInvalidatedError("gone", status=401)})
        recorder.on_halt = lambda error: queue.append("late")
        batcher = _batcher(queue, recorder)
        queue.append(1)
        try:
            batcher.flush().result()
        finally:
            batcher.shutdown()
        assert batcher.halted
        assert len(queue) == 0

    def test_unexpected_error_requeues(self, queue):
        recorder = Recorder(fail={1: KeyError("bug")})
        batcher = _batcher(queue, recorder)
        queue.append(1)
        queue.append(2)
        try:
            assert batcher.flush().result() == 0
        finally:
            batcher.shutdown()
        assert queue.snapshot() == [1, 2]

    def test_disconnected_caps_without_sending(self, queue):
        recorder = Recorder()
        batcher = _batcher(queue, recorder, connected=False, max_disconnected=2)
        for i in range(4):
            queue.append(i)
        try:
            assert batcher.flush().result() == 0
        finally:
            batcher.shutdown()
        assert recorder.attempts == []
        assert queue.snapshot() == [2, 3]

    def test_concurrent_flushes_never_overlap(self, queue):
        """Timer tick and immediate flush racing: one delivery call at a time."""
        recorder = Recorder(delay=0.02)
        batcher = _batcher(queue, recorder)
        for i in range(4):
            queue.append(i)
        try:
            futures = [batcher.flush() for _ in range(3)]
            results = [f.result() for f in futures]
        finally:
            batcher.shutdown()
        assert recorder.max_active == 1
        assert sorted(results) == [0, 0, 4]
        assert recorder.delivered == [0, 1, 2, 3]

    def test_after_shutdown(self, queue):
        batcher = _batcher(queue, Recorder())
        batcher.shutdown()
        assert batcher.flush().result() == 0
        with pytest.raises(RuntimeError):
            batcher.run(lambda: None).result()


class TestFlushTimer:

    def test_periodic_flush(self, queue):
        recorder = Recorder()
        batcher = _batcher(queue, recorder)
        timer = FlushTimer(batcher, interval=0.01)
        queue.append("a")
        timer.start()
        try:
            deadline = time.time() + 2
            while not recorder.delivered and time.time() < deadline:
                time.sleep(0.01)
        finally:
            timer.stop()
            batcher.shutdown()
        assert recorder.delivered == ["a"]

    def test_start_is_idempotent_and_stop_ends_thread(self, queue):
        batcher = _batcher(queue, Recorder())
        timer = FlushTimer(batcher, interval=0.01)
        timer.start()
        first = timer._thread
        timer.start()
        assert timer._thread is first
        timer.stop()
        first.join(timeout=1)
        assert not timer.running
        batcher.shutdown()
