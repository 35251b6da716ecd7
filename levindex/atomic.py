"""
atomic.py - Apply-or-rollback scope for index operations

Issue, redeem, lever, delever and fee accrual each span many ledger
transactions plus lending-pool bookkeeping. TransactionManager.transaction()
makes the whole call one unit of work:

1. Acquire the index's re-entrant lock
2. Snapshot the ledger and every registered participant
3. Run the operation
4. On any exception, restore every snapshot and re-raise

Nested scopes are allowed (redeem runs delever steps inside its own scope);
an inner failure rolls back only the inner work if the caller handles it.
"""

from __future__ import annotations
from contextlib import contextmanager
import threading
from typing import Any, Dict, Iterator, List, Protocol, runtime_checkable

from .ledger import Ledger


@runtime_checkable
class Restorable(Protocol):
    """A collaborator whose private state must roll back with the ledger."""

    def snapshot(self) -> Any:
        ...

    def restore(self, state: Any) -> None:
        ...


class TransactionManager:
    """
    Per-index locks plus snapshot/restore over the ledger and participants.

    Example:
        tm = TransactionManager(ledger, [lending_pool])
        with tm.transaction("LEV3X"):
            ...  # any exception here leaves no trace
    """

    def __init__(self, ledger: Ledger, participants: List[Restorable] = None):
        self.ledger = ledger
        self.participants: List[Restorable] = []
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        # Snapshots cover the whole shared ledger, so restores must not
        # interleave with work on another index
        self._ledger_lock = threading.RLock()
        for participant in participants or []:
            self.add_participant(participant)

    def add_participant(self, participant: Restorable) -> None:
        if not isinstance(participant, Restorable):
            raise TypeError(f"{participant!r} cannot snapshot/restore")
        if all(participant is not p for p in self.participants):
            self.participants.append(participant)

    def lock_for(self, index: str) -> threading.RLock:
        """Return the lock that serializes mutations of one index."""
        with self._registry_lock:
            lock = self._locks.get(index)
            if lock is None:
                lock = self._locks[index] = threading.RLock()
            return lock

    @contextmanager
    def transaction(self, index: str) -> Iterator[None]:
        """Run a block atomically with respect to the ledger and participants."""
        with self.lock_for(index), self._ledger_lock:
            ledger_state = self.ledger.snapshot()
            participant_states = [(p, p.snapshot()) for p in self.participants]
            try:
                yield
            except BaseException:
                self.ledger.restore(ledger_state)
                for participant, state in participant_states:
                    participant.restore(state)
                if self.ledger.verbose:
                    print(f"[ROLLBACK] {index}")
                raise
