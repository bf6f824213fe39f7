"""
Per-Loan Locks

Payment allocation reads and then writes several installment rows. Holding
the loan's lock across that read-modify-write serializes payments (and
classification) for one loan while different loans proceed in parallel.
"""

import threading
from contextlib import contextmanager
from typing import Dict


class LoanLockRegistry:
    """Hands out one lock per loan id"""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get_lock(self, loan_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[loan_id] = lock
            return lock

    @contextmanager
    def hold(self, loan_id: str):
        """Hold the loan's lock for the duration of the block"""
        lock = self.get_lock(loan_id)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
