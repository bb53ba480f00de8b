"""
Unit tests for the billing task queue retry and dead-letter behavior.

Handlers are plain functions and the session factory yields a placeholder,
so no database is involved.
"""

from contextlib import contextmanager

import pytest

from core.exceptions import BusyError, NotFoundError
from services.billing_task_queue import TASK_JOURNAL, BillingTask, BillingTaskQueue, default_handlers


@contextmanager
def fake_session():
    yield object()


def make_queue(handlers, max_attempts=3, retry_delays=(0.5, 2)):
    sleeps = []
    queue = BillingTaskQueue(
        handlers=handlers,
        workers=2,
        max_attempts=max_attempts,
        retry_delays=retry_delays,
        session_factory=fake_session,
        sleep=sleeps.append,
    )
    return queue, sleeps


class TestRunTask:
    """Retry policy of a single task."""

    def test_success_first_try(self):
        queue, sleeps = make_queue({"echo": lambda db, value: value})

        assert queue.run_task(BillingTask(kind="echo", params={"value": 42})) == 42
        assert sleeps == []

    def test_busy_is_retried_with_backoff(self):
        attempts = []

        def busy_twice(db):
            attempts.append(1)
            if len(attempts) < 3:
                raise BusyError("locked")
            return "done"

        queue, sleeps = make_queue({"job": busy_twice})
        task = BillingTask(kind="job", params={})

        assert queue.run_task(task) == "done"
        assert task.attempts == 3
        assert sleeps == [0.5, 2]

    def test_unexpected_error_is_retried(self):
        attempts = []

        def flaky(db):
            attempts.append(1)
            if len(attempts) == 1:
                raise ConnectionError("db went away")
            return "ok"

        queue, _ = make_queue({"job": flaky})

        assert queue.run_task(BillingTask(kind="job", params={})) == "ok"

    def test_domain_error_is_not_retried(self):
        attempts = []

        def missing(db):
            attempts.append(1)
            raise NotFoundError("Account 9 not found")

        queue, sleeps = make_queue({"job": missing})

        with pytest.raises(NotFoundError):
            queue.run_task(BillingTask(kind="job", params={}))
        assert len(attempts) == 1
        assert sleeps == []
        assert len(queue.dead_letters) == 1

    def test_dead_letter_after_max_attempts(self):
        def always_busy(db):
            raise BusyError("locked")

        queue, sleeps = make_queue({"job": always_busy}, max_attempts=3)
        task = BillingTask(kind="job", params={})

        with pytest.raises(RuntimeError):
            queue.run_task(task)
        assert task.attempts == 3
        assert queue.dead_letters == [task]
        assert task.last_error == "locked"
        assert len(sleeps) == 2

    def test_last_delay_repeats(self):
        queue, _ = make_queue({}, retry_delays=(1, 5))

        assert queue.retry_delay(1) == 1
        assert queue.retry_delay(2) == 5
        assert queue.retry_delay(7) == 5


class TestSubmit:
    """Queue lifecycle and submission."""

    def test_submit_runs_on_worker(self):
        queue, _ = make_queue({"add": lambda db, a, b: a + b})
        queue.start()
        try:
            assert queue.submit("add", a=2, b=3).result(timeout=5) == 5
        finally:
            queue.shutdown()
        assert not queue.is_running

    def test_submit_unknown_kind(self):
        queue, _ = make_queue({})
        queue.start()
        try:
            with pytest.raises(ValueError):
                queue.submit("nope")
        finally:
            queue.shutdown()

    def test_submit_before_start(self):
        queue, _ = make_queue({"job": lambda db: None})

        with pytest.raises(RuntimeError):
            queue.submit("job")

    def test_default_handlers_cover_batch_work(self):
        assert TASK_JOURNAL in default_handlers()
        assert set(default_handlers()) == {"journal", "statement", "missed_sweep"}
