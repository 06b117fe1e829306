"""
Transaction Engine - Serialized execution of mutating operations.

One worker thread drains a FIFO queue, so at most one transaction is ever
running. Records live in an arena keyed by id and are only mutated by the
engine under its condition lock; callers get immutable Transaction
snapshots and TransactionUpdate notifications.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Deque, Dict, Iterator, List, Optional, Tuple, Union

from common.concurrency import AtomicCounter
from common.exceptions import (
    BackendFailureError,
    CenterError,
    ConflictingTransactionError,
    InvalidTargetError,
    NotCancellableError,
    TransactionNotFoundError,
)
from common.logging_config import LogContext

from .backend import MutationBackend
from .history import HistoryStore
from .installed import InstalledStateTracker
from .models import (
    Failure,
    FailureCode,
    Operation,
    Scope,
    Transaction,
    TransactionEvent,
    TransactionKind,
    TransactionState,
    TransactionUpdate,
    next_state,
)

if TYPE_CHECKING:
    from catalog.catalog import CatalogManager
    from generations.generations import GenerationManager

logger = logging.getLogger(__name__)

UpdateListener = Callable[[TransactionUpdate], None]


@dataclass
class TransactionRecord:
    """Mutable transaction record, owned by the engine."""
    id: int
    operation: Operation
    state: TransactionState = TransactionState.QUEUED
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failure: Optional[Failure] = None
    log: List[str] = field(default_factory=list)

    @property
    def conflict_key(self) -> str:
        op = self.operation
        if op.kind == TransactionKind.UPGRADE_ALL:
            return f"scope:{op.scope.value}"
        if op.kind == TransactionKind.ROLLBACK:
            return f"generation:{op.target}"
        return op.target

    def apply(self, event: TransactionEvent) -> None:
        self.state = next_state(self.state, event)
        if event == TransactionEvent.START:
            self.started_at = datetime.now()
        elif self.state.is_terminal:
            self.finished_at = datetime.now()

    def snapshot(self, slow_threshold: Optional[float] = None) -> Transaction:
        is_slow = False
        if slow_threshold is not None and self.started_at is not None:
            end = self.finished_at or datetime.now()
            is_slow = (end - self.started_at).total_seconds() > slow_threshold
        op = self.operation
        return Transaction(
            id=self.id,
            kind=op.kind,
            target=op.target,
            scope=op.scope,
            state=self.state,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            failure=self.failure,
            log=tuple(self.log),
            is_slow=is_slow,
        )


class TransactionEngine:
    """
    Queues, runs and tracks transactions.

    Example:
        engine = TransactionEngine(backend, tracker, catalog)
        tx = engine.submit(TransactionKind.INSTALL, "firefox")
        for update in engine.subscribe(tx.id):
            print(update.line or update.state.value)
    """

    def __init__(
        self,
        backend: MutationBackend,
        tracker: InstalledStateTracker,
        catalog: Optional["CatalogManager"] = None,
        generations: Optional["GenerationManager"] = None,
        default_scope: Scope = Scope.USER,
        history_limit: int = 100,
        slow_threshold_seconds: float = 600.0,
        history_store: Optional[HistoryStore] = None,
        autostart: bool = True,
    ):
        self.backend = backend
        self.tracker = tracker
        self.catalog = catalog
        self.generations = generations
        self.default_scope = default_scope
        self.history_limit = history_limit
        self.slow_threshold_seconds = slow_threshold_seconds
        self.history_store = history_store

        self._cond = threading.Condition()
        self._ids = AtomicCounter()
        self._records: Dict[int, TransactionRecord] = {}
        self._queue: Deque[int] = deque()
        self._current: Optional[int] = None
        self._finished: Deque[int] = deque()
        self._subscribers: Dict[int, List[queue.Queue]] = defaultdict(list)
        self._listeners: List[UpdateListener] = []
        self._shutdown = False
        self._worker: Optional[threading.Thread] = None

        if history_store is not None:
            self._restore_history(history_store.load())

        if autostart:
            self.start()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker thread."""
        with self._cond:
            if self._worker is not None and self._worker.is_alive():
                return
            self._shutdown = False
            self._worker = threading.Thread(
                target=self._run, name="transaction-worker", daemon=True
            )
            self._worker.start()

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """
        Stop the worker after the running transaction finishes.

        Queued transactions are cancelled.
        """
        updates = []
        with self._cond:
            self._shutdown = True
            while self._queue:
                record = self._records[self._queue.popleft()]
                record.apply(TransactionEvent.CANCEL)
                updates.append(self._finish_locked(record))
            self._cond.notify_all()
        for update in updates:
            self._notify(update)

        if wait and self._worker is not None:
            self._worker.join(timeout)

    def _restore_history(self, transactions: List[Transaction]) -> None:
        """Re-adopt finished transactions from a previous run."""
        for tx in transactions[-self.history_limit:]:
            generation = None
            if tx.kind == TransactionKind.ROLLBACK and tx.target.isdigit():
                generation = int(tx.target)
            self._records[tx.id] = TransactionRecord(
                id=tx.id,
                operation=Operation(tx.kind, tx.target, tx.scope, generation=generation),
                state=tx.state,
                created_at=tx.created_at,
                started_at=tx.started_at,
                finished_at=tx.finished_at,
                failure=tx.failure,
                log=list(tx.log),
            )
            self._finished.append(tx.id)
        if self._records:
            # New ids continue after the restored ones
            self._ids.reset(max(self._records))
            logger.info(f"Restored {len(self._records)} transaction(s) from history")

    def _persist_locked(self) -> None:
        if self.history_store is None:
            return
        finished = [
            self._records[i].snapshot(self.slow_threshold_seconds) for i in sorted(self._finished)
        ]
        try:
            self.history_store.save(finished)
        except OSError as e:
            logger.warning(f"Cannot save transaction history: {e}")

    def add_listener(self, listener: UpdateListener) -> None:
        """Register a callback invoked for every update of every transaction."""
        with self._cond:
            self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _resolve_rollback(self, target: str) -> Operation:
        try:
            generation_id = int(target)
        except (TypeError, ValueError):
            raise InvalidTargetError(str(target), "generation id must be a number") from None

        if self.generations is None:
            raise InvalidTargetError(str(target), "system generations are not available")

        # Generations can be deleted outside the center (nix-collect-garbage)
        try:
            self.generations.refresh()
        except CenterError as e:
            raise InvalidTargetError(
                str(target), f"cannot list system generations: {e.message}"
            ) from e

        generation = self.generations.get(generation_id)
        if generation is None:
            raise InvalidTargetError(str(target), "no such generation")
        if generation.is_current:
            raise InvalidTargetError(str(target), "already the current generation")

        return Operation(
            TransactionKind.ROLLBACK, str(generation_id), Scope.SYSTEM, generation=generation_id
        )

    def _stale_attrs(self, scope: Scope) -> Tuple[str, ...]:
        """User profile packages the package set no longer provides."""
        if scope != Scope.USER or self.catalog is None:
            return ()
        return tuple(
            package.entry_id for package in self.tracker.snapshot().packages(Scope.USER)
            if self.catalog.get(package.entry_id) is None
        )

    def _resolve(
        self,
        kind: TransactionKind,
        target: str,
        scope: Optional[Scope],
    ) -> Operation:
        """Validate a request and build its operation."""
        if kind == TransactionKind.ROLLBACK:
            return self._resolve_rollback(target)

        if kind == TransactionKind.UPGRADE_ALL:
            if target:
                try:
                    scope = Scope(getattr(target, "value", target))
                except ValueError:
                    raise InvalidTargetError(str(target), "not a scope") from None
            scope = scope or self.default_scope
            return Operation(kind, scope.value, scope, remove_first=self._stale_attrs(scope))

        entry = self.catalog.get(target) if self.catalog is not None else None
        if entry is None:
            raise InvalidTargetError(target, "unknown catalog entry")
        if not entry.installable:
            raise InvalidTargetError(target, "entry has no installable package")

        if kind == TransactionKind.INSTALL:
            scope = scope or self.default_scope
            if self.tracker.is_installed(target, scope):
                raise InvalidTargetError(target, f"already installed in {scope.value} scope")
        else:
            scope = scope or self.tracker.scope(target) or self.default_scope
            if not self.tracker.is_installed(target, scope):
                raise InvalidTargetError(target, f"not installed in {scope.value} scope")

        return Operation(kind, target, scope, attr_path=entry.attr_path)

    def submit(
        self,
        kind: Union[TransactionKind, str],
        target: str,
        scope: Optional[Union[Scope, str]] = None,
    ) -> Transaction:
        """
        Validate and enqueue a transaction.

        Args:
            kind: Operation kind
            target: Entry id, scope name (UPGRADE_ALL) or generation id (ROLLBACK)
            scope: Scope to operate in; defaults to where the package is
                installed, else the configured default scope

        Returns:
            The Queued transaction.

        Raises:
            InvalidTargetError: If the target cannot take the operation.
            ConflictingTransactionError: If the target already has an
                unfinished transaction.
        """
        kind = TransactionKind(kind)
        if scope is not None:
            scope = Scope(scope)

        operation = self._resolve(kind, target, scope)

        with self._cond:
            if self._shutdown:
                raise InvalidTargetError(operation.target, "engine is shut down")

            record = TransactionRecord(id=0, operation=operation)
            for existing in self._records.values():
                if not existing.state.is_terminal and existing.conflict_key == record.conflict_key:
                    raise ConflictingTransactionError(operation.target, existing.id)

            record.id = self._ids.increment()
            self._records[record.id] = record
            self._queue.append(record.id)
            update = self._publish_locked(record)
            self._cond.notify_all()
            snapshot = record.snapshot(self.slow_threshold_seconds)

        logger.info(f"Queued transaction {record.id}: {operation.describe()}")
        self._notify(update)
        return snapshot

    def cancel(self, transaction_id: int) -> Transaction:
        """
        Cancel a queued transaction.

        Raises:
            TransactionNotFoundError: If the id is unknown.
            NotCancellableError: If the transaction is running or finished.
        """
        with self._cond:
            record = self._get_locked(transaction_id)
            if record.state != TransactionState.QUEUED:
                raise NotCancellableError(transaction_id, record.state.value)
            self._queue.remove(transaction_id)
            record.apply(TransactionEvent.CANCEL)
            update = self._finish_locked(record)
            snapshot = record.snapshot(self.slow_threshold_seconds)

        logger.info(f"Cancelled transaction {transaction_id}")
        self._notify(update)
        return snapshot

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _get_locked(self, transaction_id: int) -> TransactionRecord:
        record = self._records.get(transaction_id)
        if record is None:
            raise TransactionNotFoundError(transaction_id)
        return record

    def get(self, transaction_id: int) -> Transaction:
        """Snapshot of one transaction."""
        with self._cond:
            return self._get_locked(transaction_id).snapshot(self.slow_threshold_seconds)

    def current(self) -> Optional[Transaction]:
        """The running transaction, if any."""
        with self._cond:
            if self._current is None:
                return None
            return self._records[self._current].snapshot(self.slow_threshold_seconds)

    def pending(self) -> List[Transaction]:
        """Queued transactions in execution order."""
        with self._cond:
            return [self._records[i].snapshot(self.slow_threshold_seconds) for i in self._queue]

    def history(self) -> List[Transaction]:
        """All retained transactions, oldest first."""
        with self._cond:
            return [
                self._records[i].snapshot(self.slow_threshold_seconds)
                for i in sorted(self._records)
            ]

    def wait(self, transaction_id: int, timeout: Optional[float] = None) -> Transaction:
        """Block until a transaction is terminal or ``timeout`` expires."""
        with self._cond:
            record = self._get_locked(transaction_id)
            self._cond.wait_for(lambda: record.state.is_terminal, timeout)
            return record.snapshot(self.slow_threshold_seconds)

    def subscribe(self, transaction_id: int) -> Iterator[TransactionUpdate]:
        """
        Stream updates of one transaction.

        Log lines already produced are replayed first, followed by the
        current state; the iterator ends after the terminal update.

        Raises:
            TransactionNotFoundError: If the id is unknown.
        """
        updates: queue.Queue = queue.Queue()
        with self._cond:
            record = self._get_locked(transaction_id)
            for line in record.log:
                updates.put(TransactionUpdate(record.id, record.state, line=line))
            updates.put(TransactionUpdate(record.id, record.state, failure=record.failure))
            if not record.state.is_terminal:
                self._subscribers[transaction_id].append(updates)

        return self._drain(updates)

    @staticmethod
    def _drain(updates: queue.Queue) -> Iterator[TransactionUpdate]:
        while True:
            update = updates.get()
            yield update
            if update.is_final:
                return

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    def _publish_locked(self, record: TransactionRecord, line: Optional[str] = None) -> TransactionUpdate:
        update = TransactionUpdate(record.id, record.state, line=line, failure=record.failure)
        for subscriber in self._subscribers.get(record.id, []):
            subscriber.put(update)
        if update.is_final:
            self._subscribers.pop(record.id, None)
        return update

    def _notify(self, update: TransactionUpdate) -> None:
        with self._cond:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(update)
            except Exception as e:
                logger.warning(f"Transaction listener error: {e}")

    def _finish_locked(self, record: TransactionRecord) -> TransactionUpdate:
        if self._current == record.id:
            self._current = None
        self._finished.append(record.id)
        while len(self._finished) > self.history_limit:
            evicted = self._finished.popleft()
            self._records.pop(evicted, None)
        self._persist_locked()
        update = self._publish_locked(record)
        self._cond.notify_all()
        return update

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _next_locked(self) -> Optional[TransactionRecord]:
        self._cond.wait_for(lambda: self._queue or self._shutdown)
        if not self._queue:
            return None
        record = self._records[self._queue.popleft()]
        record.apply(TransactionEvent.START)
        self._current = record.id
        return record

    def _run(self) -> None:
        logger.debug("Transaction worker started")
        while True:
            with self._cond:
                record = self._next_locked()
                if record is None:
                    break
                update = self._publish_locked(record)
            self._notify(update)

            with LogContext(transaction_id=record.id):
                try:
                    self._execute(record)
                except Exception as e:
                    logger.exception(f"Transaction {record.id} aborted")
                    self._abort(record, e)
        logger.debug("Transaction worker stopped")

    def _abort(self, record: TransactionRecord, error: Exception) -> None:
        """Fail a record left unfinished by an unexpected error."""
        with self._cond:
            if record.state.is_terminal:
                return
        self._complete(record, TransactionEvent.FAIL, Failure(FailureCode.UNKNOWN, str(error)))

    def _append_line(self, record: TransactionRecord, line: str) -> None:
        with self._cond:
            record.log.append(line)
            update = self._publish_locked(record, line)
        self._notify(update)

    def _complete(
        self,
        record: TransactionRecord,
        event: TransactionEvent,
        failure: Optional[Failure] = None,
    ) -> None:
        with self._cond:
            record.failure = failure
            record.apply(event)
            update = self._finish_locked(record)

        if failure is not None:
            logger.warning(
                f"Transaction {record.id} failed ({failure.code.value}): {failure.message}"
            )
        else:
            logger.info(f"Transaction {record.id} succeeded")
        self._notify(update)

    def _execute(self, record: TransactionRecord) -> None:
        operation = record.operation
        logger.info(f"Starting transaction {record.id}: {operation.describe()}")

        try:
            status = self.backend.execute(operation, lambda line: self._append_line(record, line))
        except BackendFailureError as e:
            for line in e.raw_output.splitlines():
                self._append_line(record, line)
            self._complete(record, TransactionEvent.FAIL, Failure(_failure_code(e), e.message))
            return
        except Exception as e:
            logger.exception(f"Backend crashed running transaction {record.id}")
            self._complete(record, TransactionEvent.FAIL, Failure(FailureCode.UNKNOWN, str(e)))
            return

        if status != 0:
            with self._cond:
                lines = list(record.log)
            try:
                code = self.backend.classify(operation, status, lines)
            except Exception as e:
                logger.warning(f"Cannot classify failure of transaction {record.id}: {e}")
                code = FailureCode.UNKNOWN
            self._complete(
                record,
                TransactionEvent.FAIL,
                Failure(code, f"{operation.describe()} failed with exit status {status}"),
            )
            return

        try:
            self.tracker.refresh()
            if self.generations is not None and operation.scope == Scope.SYSTEM:
                self.generations.refresh()
        except Exception as e:
            message = e.message if isinstance(e, CenterError) else str(e)
            if not isinstance(e, CenterError):
                logger.exception(f"State refresh crashed after transaction {record.id}")
            self._complete(
                record,
                TransactionEvent.FAIL,
                Failure(FailureCode.STATE_REFRESH_FAILED, f"State refresh failed: {message}"),
            )
            return

        self._complete(record, TransactionEvent.SUCCEED)


def _failure_code(error: BackendFailureError) -> FailureCode:
    try:
        return FailureCode(error.failure_code)
    except ValueError:
        return FailureCode.UNKNOWN
