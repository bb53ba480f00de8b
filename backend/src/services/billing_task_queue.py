"""
Billing task queue: a worker pool for journal, statement and no-show batch work.

Delivery is at-least-once. A task that fails with BusyError or an unexpected
error is retried with backoff until it succeeds or runs out of attempts;
task bodies are idempotent, so a retry after a partially observed success is
harmless. Domain errors other than BusyError are deterministic and are not
retried.

Each attempt runs in a fresh database session.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from core.config import BILLING_TASK_MAX_ATTEMPTS, BILLING_TASK_WORKERS
from core.constants import BILLING_TASK_RETRY_DELAYS
from core.database import get_db_context
from core.exceptions import BusyError, CoreFacilityError
from services.journal_service import JournalService
from services.reservation_service import ReservationService
from services.statement_service import StatementService

logger = logging.getLogger(__name__)

TASK_JOURNAL = "journal"
TASK_STATEMENT = "statement"
TASK_MISSED_SWEEP = "missed_sweep"

TaskHandler = Callable[..., Any]

# Global singleton instance
_billing_task_queue: Optional['BillingTaskQueue'] = None
_queue_lock = threading.Lock()


@dataclass
class BillingTask:
    """One unit of batch work and its delivery bookkeeping."""

    kind: str
    params: Dict[str, Any]
    task_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    attempts: int = 0
    last_error: Optional[str] = None

    def describe(self) -> str:
        args = ", ".join(f"{k}={v}" for k, v in sorted(self.params.items()))
        return f"{self.kind}[{self.task_id}]({args})"


def _run_journal(db: Session, account_id: int, as_of: date, actor_id: Optional[int] = None) -> int:
    return len(JournalService.run_journal_batch(db, account_id, as_of, actor_id=actor_id))


def _run_statement(
    db: Session,
    account_id: int,
    period_start: date,
    period_end: date,
    actor_id: Optional[int] = None,
) -> Optional[str]:
    statement = StatementService.generate_statement(db, account_id, period_start, period_end, actor_id=actor_id)
    return statement.statement_number if statement else None


def _run_missed_sweep(db: Session, at: Optional[datetime] = None) -> List[int]:
    return ReservationService.mark_missed_reservations(db, at=at)


def default_handlers() -> Dict[str, TaskHandler]:
    return {
        TASK_JOURNAL: _run_journal,
        TASK_STATEMENT: _run_statement,
        TASK_MISSED_SWEEP: _run_missed_sweep,
    }


class BillingTaskQueue:
    """
    Thread-pool backed task queue with bounded retries.

    Handlers are called as `handler(db, **params)`. Tasks that exhaust their
    attempts are kept in `dead_letters` for inspection.
    """

    def __init__(
        self,
        handlers: Optional[Dict[str, TaskHandler]] = None,
        workers: int = BILLING_TASK_WORKERS,
        max_attempts: int = BILLING_TASK_MAX_ATTEMPTS,
        retry_delays: Sequence[float] = BILLING_TASK_RETRY_DELAYS,
        session_factory: Callable[[], AbstractContextManager] = get_db_context,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.handlers: Dict[str, TaskHandler] = handlers if handlers is not None else default_handlers()
        self.workers = max(1, workers)
        self.max_attempts = max(1, max_attempts)
        self.retry_delays = list(retry_delays) or [0]
        self.session_factory = session_factory
        self._sleep = sleep
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self.dead_letters: List[BillingTask] = []

    def start(self) -> None:
        with self._lock:
            if self._executor is not None:
                logger.warning("Billing task queue is already started")
                return
            self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="billing-task")
        logger.info(f"Billing task queue started with {self.workers} worker(s)")

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
            logger.info("Billing task queue stopped")

    @property
    def is_running(self) -> bool:
        return self._executor is not None

    def submit(self, kind: str, **params: Any) -> Future:
        """
        Queue a task for execution.

        Returns:
            Future resolving to the handler's result, or to the last error
            once the task is dead-lettered

        Raises:
            ValueError: If no handler is registered for kind
            RuntimeError: If the queue is not started
        """
        if kind not in self.handlers:
            raise ValueError(f"No handler registered for task kind '{kind}'")
        task = BillingTask(kind=kind, params=params)
        with self._lock:
            if self._executor is None:
                raise RuntimeError("Billing task queue is not started")
            future = self._executor.submit(self.run_task, task)
        logger.debug(f"Queued billing task {task.describe()}")
        return future

    def retry_delay(self, attempt: int) -> float:
        """Backoff before the given retry (1-based); the last delay repeats."""
        return self.retry_delays[min(attempt, len(self.retry_delays)) - 1]

    def run_task(self, task: BillingTask) -> Any:
        """
        Run a task to completion, retrying transient failures.

        Raises:
            The last error, once the task is dead-lettered
        """
        handler = self.handlers[task.kind]
        while True:
            task.attempts += 1
            try:
                with self.session_factory() as db:
                    result = handler(db, **task.params)
                if task.attempts > 1:
                    logger.info(f"Billing task {task.describe()} succeeded on attempt {task.attempts}")
                return result
            except BusyError as e:
                task.last_error = e.message
                logger.warning(f"Billing task {task.describe()} attempt {task.attempts} busy: {e.message}")
            except CoreFacilityError as e:
                task.last_error = e.message
                logger.error(f"Billing task {task.describe()} failed: {e.message}")
                self._dead_letter(task)
                raise
            except Exception as e:
                task.last_error = str(e)
                logger.exception(f"Billing task {task.describe()} attempt {task.attempts} raised: {e}")

            if task.attempts >= self.max_attempts:
                self._dead_letter(task)
                raise RuntimeError(
                    f"Billing task {task.describe()} gave up after {task.attempts} attempts: {task.last_error}"
                )
            self._sleep(self.retry_delay(task.attempts))

    def _dead_letter(self, task: BillingTask) -> None:
        with self._lock:
            self.dead_letters.append(task)
        logger.error(f"Billing task {task.describe()} dead-lettered after {task.attempts} attempt(s)")


def get_billing_task_queue() -> BillingTaskQueue:
    """
    Get the global billing task queue instance.

    Returns:
        BillingTaskQueue: The global queue instance
    """
    global _billing_task_queue
    with _queue_lock:
        if _billing_task_queue is None:
            _billing_task_queue = BillingTaskQueue()
        return _billing_task_queue


def start_billing_task_queue() -> None:
    get_billing_task_queue().start()


def stop_billing_task_queue() -> None:
    global _billing_task_queue
    with _queue_lock:
        queue, _billing_task_queue = _billing_task_queue, None
    if queue:
        queue.shutdown(wait=True)
