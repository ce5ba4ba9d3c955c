"""
Cmi5Engine — owns the session lifecycle and everything hanging off it.

One instance per host start. Producers call submit() and the status
queries from their own thread; all network work (launch sequence, delivery
loops, completion sequence) runs on the batcher's single worker:

  initialize()            — restore or fresh launch                 (worker)
  submit()                — build + enqueue, maybe immediate flush  (caller)
  FlushTimer              — periodic flush                          (timer thread)
  mark_course_complete()  — flush → completed → passed/failed → terminated (worker)
  on_teardown()           — blocking terminated before the host goes away (caller)
"""

import threading
import time
from concurrent.futures import Future
from datetime import datetime, timezone

from .config import log, EngineConfig
from .constants import (
    LIFECYCLE_VERBS, DEFAULT_LAUNCH_MODE, DEFAULT_MOVE_ON,
)
from .errors import DeliveryError, SessionInvalidatedError, ExchangeError
from .state import SessionState, Phase
from .launch import resolve_launch, current_registration, current_session_id
from .session_store import SessionRecord, FileSessionStore
from .credentials import exchange_once
from .statements import (
    StatementBuilder, format_duration, score_result, verb_for, verb_display_name,
)
from .delivery import DeliveryQueue, Batcher, FlushTimer
from .api import LRSClient
from . import http_client

_RESET_AFTER_FAILURES = 3


def _done(value=None):
    future = Future()
    future.set_result(value)
    return future


class Cmi5Engine:

    def __init__(self, config=None, store=None, session=None, plain_session=None,
                 clock=time.time, invalidation_check=None, start_timer=True):
        """
        Args:
            config: EngineConfig (defaults if None)
            store: session store (FileSessionStore at config path if None)
            session: retrying HTTP session for LRS calls
            plain_session: non-retrying HTTP session for the exchange and teardown
            clock: seconds since epoch; injectable for tests
            invalidation_check: (status, body) -> bool, replaces the default
                "401 + session not found" heuristic
            start_timer: run the periodic flush timer once connected
        """
        self.config = config or EngineConfig()
        self._store = store if store is not None else FileSessionStore(self.config.session_store_path)
        self._owns_session = session is None
        self._session = session or http_client.create_session(
            self.config.transport_retries, self.config.backoff_factor,
        )
        self._plain_session = plain_session or http_client.create_session(retries=0)
        self._clock = clock
        self._invalidation_check = invalidation_check
        self._start_timer = start_timer

        self.state = SessionState()
        self.builder = StatementBuilder(clock)
        self.queue = DeliveryQueue()
        self.batcher = Batcher(
            self.queue,
            deliver=self._deliver,
            can_send=lambda: self.state.connected,
            on_halt=self._on_halt,
            max_disconnected=self.config.max_queue_disconnected,
        )
        self.timer = FlushTimer(self.batcher, self.config.batch_interval_sec)

        self._record = SessionRecord(mastery_score=self.config.default_mastery_score)
        self._api = None
        self._statement_log = []
        self._log_lock = threading.Lock()
        self._consecutive_failures = 0

    # ─── Initialization ──────────────────────────────────────

    def initialize(self, params=None):
        """
        Restore the stored session or run a fresh launch.
        Future resolves to True when connected to the LRS.
        """
        if self.state.phase not in (Phase.UNINITIALIZED, Phase.STANDALONE):
            log.info("Already initialized (%s)", self.state.phase.value)
            return _done(self.state.connected)
        self.state.transition(Phase.RESTORING_OR_FETCHING)
        return self.batcher.run(self._initialize, params)

    def _initialize(self, params):
        if self._restore(params):
            return self.state.connected

        launch = resolve_launch(params)
        if launch is None:
            self._go_standalone("no launch parameters")
            return False
        return self._fresh_launch(launch)

    def _restore(self, params):
        record = self._store.load()
        if record is None:
            return False

        registration = current_registration(params)
        session_id = current_session_id(params)
        if not record.matches(registration, session_id):
            if record.registration != registration:
                log.info("Stored session is for a different registration — starting fresh")
            else:
                log.info(
                    "Stored session %s differs from launch session %s (LMS reset) — starting fresh",
                    record.session_id, session_id,
                )
            self._store.clear()
            return False
        if not record.auth_token or not record.endpoint:
            log.info("Stored session has no credential — starting fresh")
            self._store.clear()
            return False

        self._adopt(record)
        if record.halted:
            log.warning("Stored session was halted by the LRS — staying halted")
            self.batcher.halt("restored halted session")
        elif record.terminated:
            self.state.transition(Phase.TERMINATED)
        else:
            if not record.initialized:
                self.queue.requeue([self.builder.build_lifecycle("initialized")])
            self.state.transition(Phase.CONNECTED)
            self._after_connect()
        log.info("Session restored from store (registration=%s session=%s)",
                 record.registration, record.session_id)
        return True

    def _adopt(self, record):
        self._record = record
        self._api = self._make_api(record.endpoint, record.auth_token)
        self.builder.bind(
            record.actor, record.activity_id, record.registration,
            record.session_id, record.context_template,
        )
        self.state.initialized_sent = record.initialized
        self.state.completion_sent = record.completion_sent
        self.state.success_sent = record.success_sent

    def _fresh_launch(self, launch):
        record = SessionRecord(
            endpoint=launch.endpoint,
            actor=launch.actor,
            registration=launch.registration,
            activity_id=launch.activity_id,
            session_id=launch.session_id,
            session_id_generated=launch.session_id_generated,
            mastery_score=self.config.default_mastery_score,
            start_time=self._clock(),
        )

        # Step 1: one-time exchange. Persist before anything else can fail.
        try:
            record.auth_token = exchange_once(
                self._plain_session, launch.fetch_url, self.config.request_timeout_sec,
            )
        except ExchangeError as e:
            log.error("Credential exchange failed: %s", e)
            self._go_standalone("credential exchange failed")
            return False
        self._record = record
        self._persist()

        self._api = self._make_api(record.endpoint, record.auth_token)
        self.builder.bind(launch.actor, launch.activity_id, launch.registration, launch.session_id)

        # Step 2: learner preferences (absent is normal)
        try:
            record.learner_preferences = self._api.get_learner_preferences(launch.actor) or {}
        except DeliveryError as e:
            log.info("Learner preferences unavailable: %s", e)

        # Step 3: LMS.LaunchData (absent is normal; defaults apply)
        try:
            self._apply_launch_data(
                self._api.get_launch_data(launch.activity_id, launch.actor, launch.registration)
            )
        except DeliveryError as e:
            log.info("LaunchData unavailable: %s — using defaults", e)
        self.builder.context_template = record.context_template
        self._persist()

        # Step 4: initialized
        statement = self.builder.build_lifecycle("initialized")
        try:
            self._deliver(statement)
        except SessionInvalidatedError as e:
            self.batcher.halt(e)
            return False
        except DeliveryError as e:
            log.warning("Initialized not delivered (%s) — queued ahead of everything else", e)
            self.queue.requeue([statement])

        self.state.transition(Phase.CONNECTED)
        self._after_connect()
        log.info("cmi5 initialization complete (session=%s)", launch.session_id)
        self.batcher.drain()
        return self.state.connected

    def _apply_launch_data(self, data):
        if not data:
            log.info("No LaunchData — masteryScore=%s, launchMode=%s",
                     self._record.mastery_score, self._record.launch_mode)
            return
        self._record.context_template = data.get("contextTemplate")
        self._record.launch_mode = data.get("launchMode") or DEFAULT_LAUNCH_MODE
        mastery = data.get("masteryScore")
        if mastery is not None:
            self._record.mastery_score = float(mastery)
        self._record.move_on = data.get("moveOn") or DEFAULT_MOVE_ON
        self._record.return_url = data.get("returnURL")
        log.info(
            "LaunchData: launchMode=%s masteryScore=%s moveOn=%s template=%s",
            self._record.launch_mode, self._record.mastery_score,
            self._record.move_on, bool(self._record.context_template),
        )

    def _go_standalone(self, reason):
        self.state.transition(Phase.STANDALONE)
        self.queue.cap(self.config.max_queue_disconnected)
        log.info("Running standalone (%s) — nothing will be reported", reason)

    def _after_connect(self):
        if self._start_timer:
            self.timer.start()

    def _make_api(self, endpoint, auth_header):
        return LRSClient(
            endpoint, auth_header, self._session,
            sync_session=self._plain_session,
            timeout=self.config.request_timeout_sec,
            sync_timeout=self.config.sync_timeout_sec,
            invalidation_check=self._invalidation_check,
            patterns=self.config.session_invalidated_patterns,
        )

    # ─── Producer API ────────────────────────────────────────

    def submit(self, verb, result=None, obj=None, immediate=None):
        """
        Queue an "allowed" statement. Returns its id when connected, None
        otherwise (standalone/uninitialized statements are kept for a later
        connection; halted/terminated ones are dropped).
        """
        verb = verb_for(verb)
        name = verb_display_name(verb)
        if name in LIFECYCLE_VERBS:
            raise ValueError(f"{name!r} is reserved for the session lifecycle")
        statement = self.builder.build(verb, result=result, obj=obj)

        # A halt takes the state lock before the queue is cleared.
        with self.state.lock:
            if not self.state.accepting:
                log.debug("Statement dropped (%s): %s", self.state.phase.value, name)
                return None
            self.queue.append(statement)
            connected = self.state.connected

        if not connected:
            self.queue.cap(self.config.max_queue_disconnected)
            return None

        if immediate is None:
            immediate = statement.verb_name in self.config.immediate_flush_verbs
        if immediate:
            self.batcher.flush()
        return statement.id

    def flush(self):
        return self.batcher.flush()

    def is_connected(self):
        return self.state.connected

    def is_terminated(self):
        return self.state.terminated

    def is_halted(self):
        return self.state.halted

    def status_label(self):
        return "connected" if self.state.connected else "standalone"

    def get_mastery_score(self):
        return self._record.mastery_score

    def get_launch_mode(self):
        return self._record.launch_mode

    def get_move_on(self):
        return self._record.move_on

    def get_return_url(self):
        return self._record.return_url

    def get_learner_preferences(self):
        return dict(self._record.learner_preferences or {})

    # ─── Lifecycle ───────────────────────────────────────────

    def mark_course_complete(self, score):
        """Flush, then completed → passed/failed → terminated, in that order."""
        score = float(score)
        if not self.state.connected:
            log.info("Course completed standalone (score=%.2f) — not reported", score)
            return _done(None)
        return self.batcher.run(self._complete_sequence, score)

    def send_completed(self):
        return self._lifecycle_task(self._completed)

    def send_passed(self, score=None):
        return self._lifecycle_task(self._judged, True, score)

    def send_failed(self, score=None):
        return self._lifecycle_task(self._judged, False, score)

    def terminate(self):
        return self._lifecycle_task(self._terminated)

    def _lifecycle_task(self, fn, *args):
        if not self.state.connected:
            return _done(None)

        def task():
            if not self.state.connected:
                return None
            try:
                return fn(*args)
            except SessionInvalidatedError as e:
                self.batcher.halt(e)
            except DeliveryError as e:
                log.error("Lifecycle statement failed: %s", e)
            return None

        return self.batcher.run(task)

    def _complete_sequence(self, score):
        with self.state.lock:
            if not self.state.connected or self._closing():
                log.info("Completion skipped (%s)", self.state.phase.value)
                return
            self.state.transition(Phase.TERMINATING)
        try:
            self.batcher.drain()
            if self.state.halted:
                return
            if len(self.queue):
                # Reporting is best effort; leftovers are dropped on terminated.
                log.warning("Completing with %d statements still undelivered", len(self.queue))
            self._completed()
            self._judged(score >= self.get_mastery_score(), score)
            self._terminated()
        except SessionInvalidatedError as e:
            self.batcher.halt(e)
        except DeliveryError as e:
            log.error("Course completion interrupted: %s", e)
            if self.state.phase is Phase.TERMINATING:
                self.state.transition(Phase.CONNECTED)

    def _closing(self):
        """terminated already claimed (worker or teardown): nothing may follow it."""
        return self.state.terminated_sent or self.state.terminated

    def _completed(self):
        if self._closing():
            return None
        if not self.state.claim("completion_sent"):
            log.info("Completion already sent")
            return None
        try:
            statement_id = self._send_lifecycle(
                "completed", {"completion": True, "duration": self._duration()},
            )
        except DeliveryError:
            self.state.release("completion_sent")
            raise
        self._record.completion_sent = True
        self._persist()
        return statement_id

    def _judged(self, passed, score=None):
        """passed/failed share one send-once flag: exactly one is ever sent."""
        if self._closing():
            return None
        if not self.state.claim("success_sent"):
            log.info("Success status already sent")
            return None
        result = {"success": bool(passed), "duration": self._duration()}
        if score is not None:
            result["score"] = score_result(score)
        try:
            statement_id = self._send_lifecycle("passed" if passed else "failed", result)
        except DeliveryError:
            self.state.release("success_sent")
            raise
        self._record.success_sent = True
        self._persist()
        return statement_id

    def _terminated(self):
        if self.state.terminated or not self.state.claim("terminated_sent"):
            return None
        try:
            statement_id = self._send_lifecycle("terminated", {"duration": self._duration()})
        except DeliveryError:
            self.state.release("terminated_sent")
            raise
        self._finish_terminated()
        return statement_id

    def _send_lifecycle(self, name, result=None):
        statement = self.builder.build_lifecycle(name, result)
        self._deliver(statement)
        return statement.id

    def _finish_terminated(self):
        self.state.transition(Phase.TERMINATED)
        self.timer.stop()
        dropped = self.queue.clear()
        if dropped:
            log.info("Terminated — %d queued statements discarded", dropped)
        self._record.terminated = True
        self._store.clear()
        log.info("Session terminated; stored session cleared")

    # ─── Teardown (blocking) ─────────────────────────────────

    def on_teardown(self):
        """
        Host is going away. Async calls cannot be trusted to finish, so send
        terminated with a blocking request on the calling thread. No retries.
        """
        if not self.state.connected or self.state.terminated:
            return None
        # The worker may be mid-way through completion; whoever claims
        # terminated first sends it, the other stops.
        if not self.state.claim("terminated_sent"):
            log.info("terminated already being sent by the delivery worker")
            return None

        if self.config.send_exit_on_teardown:
            exit_statement = self.builder.build("exited")
            self._send_sync(exit_statement)

        statement = self.builder.build_lifecycle("terminated", {"duration": self._duration()})
        if not self._send_sync(statement):
            self.state.release("terminated_sent")
            return None
        self._finish_terminated()
        return statement.id

    def _send_sync(self, statement):
        ok = self._api.put_statement_sync(self.builder.render(statement))
        self._log_statement(statement, ok, sync=True)
        return ok

    def shutdown(self, wait=True):
        self.timer.stop()
        self.batcher.shutdown(wait=wait)

    # ─── Delivery ────────────────────────────────────────────

    def _deliver(self, statement):
        """Send one statement on the worker. Raises DeliveryError."""
        try:
            self._api.put_statement(self.builder.render(statement))
        except SessionInvalidatedError as e:
            self._log_statement(statement, False, error=str(e))
            raise
        except DeliveryError as e:
            self._log_statement(statement, False, error=str(e))
            self._note_failure()
            raise
        self._consecutive_failures = 0
        self._log_statement(statement, True)
        if statement.lifecycle and statement.verb_name == "initialized":
            self.state.initialized_sent = True
            self._record.initialized = True
            self._persist()

    def _note_failure(self):
        self._consecutive_failures += 1
        if self._consecutive_failures >= _RESET_AFTER_FAILURES and self._owns_session:
            log.warning("%d delivery failures in a row — resetting HTTP session",
                        self._consecutive_failures)
            self._session = http_client.reset_session(
                self._session, self.config.transport_retries, self.config.backoff_factor,
            )
            self._api.session = self._session
            self._consecutive_failures = 0

    def _on_halt(self, error):
        self.state.halt()
        self.timer.stop()
        self._record.halted = True
        self._persist()

    def _persist(self):
        if self._record.terminated:
            return
        self._store.save(self._record)

    def _duration(self):
        if not self._record.start_time:
            return "PT0S"
        return format_duration(self._clock() - self._record.start_time)

    # ─── Debug ───────────────────────────────────────────────

    def _log_statement(self, statement, success, error=None, sync=False):
        with self._log_lock:
            self._statement_log.append({
                "timestamp": statement.timestamp,
                "verb": statement.verb_name,
                "success": success,
                "error": error,
                "sync": sync,
            })

    def statement_log(self):
        with self._log_lock:
            return list(self._statement_log)

    def describe(self):
        record = self._record
        start = record.start_time
        return {
            "phase": self.state.phase.value,
            "initialized": self.state.initialized_sent,
            "terminated": self.state.terminated,
            "connected": self.state.connected,
            "halted": self.state.halted,
            "endpoint": record.endpoint,
            "activityId": record.activity_id,
            "registration": record.registration,
            "sessionId": record.session_id,
            "sessionIdGenerated": record.session_id_generated,
            "launchMode": record.launch_mode,
            "masteryScore": record.mastery_score,
            "moveOn": record.move_on,
            "hasContextTemplate": bool(record.context_template),
            "queued": [s.verb_name for s in self.queue.snapshot()],
            "statementCount": len(self._statement_log),
            "startTime": (
                datetime.fromtimestamp(start, tz=timezone.utc).isoformat().replace("+00:00", "Z")
                if start else None
            ),
            "duration": self._duration(),
        }
