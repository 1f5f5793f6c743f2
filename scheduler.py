"""Deferred, cooperatively cancelled tasks for counseling sessions.

Delayed effects (counselor matching, simulated replies) are queued as
:class:`DeferredTask` entries ordered by due time and keyed by
``(session_id, expected_status)``. Nothing is ever aborted: cancelling a
task only marks it discarded, and the callback itself re-checks that the
session is still in ``expected_status`` before changing anything.

The queue is drained by :class:`TaskRunner`, an APScheduler background job.
Tests drain it by hand with :meth:`DeferredTaskQueue.run_due`.
"""
import heapq
import itertools
import logging
import threading
from datetime import datetime, timedelta

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)


class DeferredTask:
    __slots__ = ("due", "session_id", "expected_status", "callback", "name", "discarded")

    def __init__(self, due, session_id, expected_status, callback, name="task"):
        self.due = due
        self.session_id = session_id
        self.expected_status = expected_status
        self.callback = callback
        self.name = name
        self.discarded = False

    @property
    def key(self):
        return (self.session_id, self.expected_status)

    def __repr__(self):
        return (
            f"<DeferredTask {self.name} session={self.session_id} "
            f"expects={self.expected_status} due={self.due.isoformat()}>"
        )


class DeferredTaskQueue:
    def __init__(self, clock=datetime.now):
        self._clock = clock
        self._heap = []
        self._sequence = itertools.count()
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return sum(1 for _, _, task in self._heap if not task.discarded)

    def schedule(self, delay_ms, session_id, expected_status, callback, name="task"):
        """Queue `callback(task)` to run `delay_ms` from now."""
        due = self._clock() + timedelta(milliseconds=delay_ms)
        task = DeferredTask(due, session_id, expected_status, callback, name)
        with self._lock:
            heapq.heappush(self._heap, (due, next(self._sequence), task))
        logger.debug("Scheduled %r", task)
        return task

    def cancel_for(self, session_id, expected_status=None):
        """Discard queued tasks for a session; returns how many were discarded."""
        discarded = 0
        with self._lock:
            for _, _, task in self._heap:
                if task.discarded or task.session_id != session_id:
                    continue
                if expected_status is not None and task.expected_status != expected_status:
                    continue
                task.discarded = True
                discarded += 1
        return discarded

    def pending(self, session_id=None):
        with self._lock:
            tasks = [task for _, _, task in sorted(self._heap) if not task.discarded]
        if session_id is not None:
            tasks = [task for task in tasks if task.session_id == session_id]
        return tasks

    def next_due(self):
        tasks = self.pending()
        return tasks[0].due if tasks else None

    def run_due(self, now=None):
        """Run every task due at `now`; returns the number of callbacks run."""
        now = now or self._clock()
        due = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                _, _, task = heapq.heappop(self._heap)
                if not task.discarded:
                    due.append(task)

        ran = 0
        for task in due:
            try:
                task.callback(task)
                ran += 1
            except Exception:
                # One failing task must not stall the rest of the queue
                logger.exception("Deferred task %r failed", task)
        return ran


class TaskRunner:
    """Drains a DeferredTaskQueue on an APScheduler interval job."""

    JOB_ID = "deferred-task-drain"

    def __init__(self, queue, app, interval_ms=250):
        self.queue = queue
        self.app = app
        self.interval_ms = interval_ms
        self.scheduler = BackgroundScheduler(daemon=True)

    def _tick(self):
        with self.app.app_context():
            self.queue.run_due()

    def start(self):
        self.scheduler.add_job(
            self._tick,
            "interval",
            seconds=self.interval_ms / 1000.0,
            id=self.JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Task runner started (every %d ms)", self.interval_ms)

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Task runner stopped")
