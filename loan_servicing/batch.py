"""
Nightly Classification Batch

Runs the arrears classifier over the whole loan book on a bounded worker
pool. Each worker takes one loan end to end. A failing or overrunning loan is
recorded and the run carries on; the caller gets a summary, never an
exception.
"""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, Future, wait, FIRST_COMPLETED
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Union

from .arrears import ArrearsClassifier, ClassificationOutcome
from .logging_config import get_logger, log_action

logger = get_logger("loan_servicing.batch")

TIMEOUT_ERROR = "Timeout"


class BatchState(Enum):
    """Batch run lifecycle"""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"       # The run itself raised before producing a result


@dataclass(frozen=True)
class LoanFailure:
    """A loan whose classification raised or overran its time limit"""
    loan_id: str
    error_type: str
    message: str


@dataclass
class BatchRunResult:
    """Summary of one batch run"""
    state: BatchState
    visited: int = 0                    # Loans classified or failed
    classified_count: int = 0           # Loans classified without error
    skipped: int = 0                    # Loans not started because the run was cancelled
    reclassified_count: int = 0         # Loans whose classification changed
    failures: List[LoanFailure] = field(default_factory=list)
    batch_id: str = ""


_SKIPPED = object()


class ClassificationBatchRunner:
    """
    Bounded worker pool over ArrearsClassifier.classify_loan

    A loan still running after ``timeout`` seconds is reported as a Timeout
    failure and abandoned; its worker thread is left to finish on its own.
    """

    def __init__(
        self,
        classifier: ArrearsClassifier,
        max_workers: int = 4,
        timeout: Optional[float] = None
    ):
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self.classifier = classifier
        self.max_workers = max_workers
        self.timeout = timeout
        self.state = BatchState.IDLE
        self._cancel_event = threading.Event()
        self._run_lock = threading.Lock()
        self._started: Dict[str, float] = {}

    def cancel(self) -> None:
        """
        Ask the batch to stop picking up new loans.

        A request made while no batch is running applies to the next run.
        """
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def run(self, loan_ids: Optional[Iterable[str]] = None) -> BatchRunResult:
        """
        Classify every loan (or the given loans) once

        Args:
            loan_ids: Loans to classify; the whole book when omitted

        Returns:
            BatchRunResult with counts and per-loan failures
        """
        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError("A classification batch is already running")

        try:
            self.state = BatchState.RUNNING
            self._started = {}
            batch_id = str(uuid.uuid4())

            if loan_ids is None:
                loan_ids = self.classifier.repository.list_loan_ids()
            loan_ids = list(loan_ids)

            log_action(
                logger, "info",
                f"Starting classification batch over {len(loan_ids)} loans "
                f"with {self.max_workers} workers",
                action="batch_started", correlation_id=batch_id
            )

            result = BatchRunResult(state=BatchState.RUNNING, batch_id=batch_id)

            executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="classification")
            try:
                futures = {
                    executor.submit(self._classify_one, loan_id, batch_id): loan_id
                    for loan_id in loan_ids
                }
                self._collect(result, futures, batch_id)
            finally:
                # Abandoned loans may still hold a worker
                executor.shutdown(wait=False)

            result.state = BatchState.CANCELLED if self.cancel_requested else BatchState.COMPLETED
            self.state = result.state

            log_action(
                logger, "info",
                f"Classification batch {result.state.value}: {result.classified_count} classified, "
                f"{len(result.failures)} failed, {result.skipped} skipped",
                action="batch_finished", correlation_id=batch_id,
                extra={
                    "visited": result.visited,
                    "classified": result.classified_count,
                    "reclassified": result.reclassified_count,
                    "failed": len(result.failures),
                    "skipped": result.skipped
                }
            )
            return result
        finally:
            if self.state == BatchState.RUNNING:
                self.state = BatchState.FAILED
            self._cancel_event.clear()
            self._run_lock.release()

    def _collect(self, result: BatchRunResult, futures: Dict[Future, str], batch_id: str) -> None:
        pending: Set[Future] = set(futures)
        abandoned: Set[Future] = set()
        poll_interval = None if self.timeout is None else min(self.timeout, 1.0)

        while pending:
            done, pending = wait(pending, timeout=poll_interval, return_when=FIRST_COMPLETED)
            for future in done:
                self._record(result, future.result())

            if self.timeout is None:
                continue

            now = time.monotonic()
            for future in list(pending):
                loan_id = futures[future]
                started = self._started.get(loan_id)
                if started is None or now - started < self.timeout:
                    continue
                pending.discard(future)
                abandoned.add(future)
                self._record(result, self._timeout_failure(
                    loan_id, batch_id, f"Classification exceeded {self.timeout}s"
                ))

            # Every worker is stuck on an abandoned loan, so queued loans can never start
            if pending and sum(1 for f in abandoned if not f.done()) >= self.max_workers:
                for future in list(pending):
                    if future.cancel():
                        pending.discard(future)
                        self._record(result, self._timeout_failure(
                            futures[future], batch_id, "Not started: all workers held by timed-out loans"
                        ))

    def _timeout_failure(self, loan_id: str, batch_id: str, message: str) -> LoanFailure:
        log_action(
            logger, "error", f"Failed to classify loan {loan_id}: {message}",
            loan_id=loan_id, action="classification_timeout", correlation_id=batch_id
        )
        return LoanFailure(loan_id=loan_id, error_type=TIMEOUT_ERROR, message=message)

    def _classify_one(self, loan_id: str, batch_id: str) -> Union[ClassificationOutcome, LoanFailure, object]:
        if self._cancel_event.is_set():
            return _SKIPPED

        self._started[loan_id] = time.monotonic()
        try:
            return self.classifier.classify_loan(loan_id, correlation_id=batch_id)
        except Exception as e:
            log_action(
                logger, "error", f"Failed to classify loan {loan_id}: {e}",
                loan_id=loan_id, action="classification_failed",
                correlation_id=batch_id, exc_info=True
            )
            return LoanFailure(loan_id=loan_id, error_type=type(e).__name__, message=str(e))

    @staticmethod
    def _record(result: BatchRunResult, outcome) -> None:
        if outcome is _SKIPPED:
            result.skipped += 1
            return

        result.visited += 1
        if isinstance(outcome, LoanFailure):
            result.failures.append(outcome)
        else:
            result.classified_count += 1
            if outcome.changed:
                result.reclassified_count += 1
