"""
Transaction Models

Value types shared by the transaction engine, the installed-state tracker
and the mutation backend, plus the transaction state machine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class Scope(Enum):
    """Where a package is installed."""
    USER = "user"
    SYSTEM = "system"


class TransactionKind(Enum):
    """Mutating operations the engine can run."""
    INSTALL = "install"
    REMOVE = "remove"
    UPGRADE = "upgrade"
    UPGRADE_ALL = "upgrade_all"
    ROLLBACK = "rollback"


class TransactionState(Enum):
    """Transaction lifecycle states."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TransactionState.SUCCEEDED,
            TransactionState.FAILED,
            TransactionState.CANCELLED,
        )


class TransactionEvent(Enum):
    """Possible transaction state transitions."""
    START = auto()
    SUCCEED = auto()
    FAIL = auto()
    CANCEL = auto()


# Valid state transitions map
# Format: {current_state: {event: target_state}}
# Terminal states have no entry and therefore no way out.
VALID_TRANSITIONS: Dict[TransactionState, Dict[TransactionEvent, TransactionState]] = {
    TransactionState.QUEUED: {
        TransactionEvent.START: TransactionState.RUNNING,
        TransactionEvent.CANCEL: TransactionState.CANCELLED,
    },
    TransactionState.RUNNING: {
        TransactionEvent.SUCCEED: TransactionState.SUCCEEDED,
        TransactionEvent.FAIL: TransactionState.FAILED,
    },
}


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""
    pass


def can_transition(state: TransactionState, event: TransactionEvent) -> bool:
    """Check if an event is valid from a state."""
    return event in VALID_TRANSITIONS.get(state, {})


def next_state(state: TransactionState, event: TransactionEvent) -> TransactionState:
    """
    Resolve a transition.

    Raises:
        StateTransitionError: If the event is not valid from ``state``
    """
    if not can_transition(state, event):
        raise StateTransitionError(f"Cannot {event.name} a {state.value} transaction")
    return VALID_TRANSITIONS[state][event]


class FailureCode(Enum):
    """Classified reasons a transaction failed."""
    PERMISSION_DENIED = "permission_denied"
    ATTRIBUTE_NOT_FOUND = "attribute_not_found"
    BUILD_FAILED = "build_failed"
    NETWORK = "network"
    DISK_FULL = "disk_full"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    STATE_REFRESH_FAILED = "state_refresh_failed"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Failure:
    """Why a transaction ended Failed."""
    code: FailureCode
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code.value, "message": self.message}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Failure":
        return cls(code=FailureCode(data["code"]), message=data.get("message", ""))


@dataclass(frozen=True)
class Operation:
    """
    What the mutation backend is asked to do.

    ``target`` is the entry id for package operations, the scope name for
    UPGRADE_ALL and the generation number for ROLLBACK. ``remove_first``
    lists profile attributes dropped before an UPGRADE_ALL because the
    package set no longer provides them.
    """
    kind: TransactionKind
    target: str
    scope: Scope = Scope.USER
    attr_path: Optional[str] = None
    generation: Optional[int] = None
    remove_first: Tuple[str, ...] = ()

    def describe(self) -> str:
        if self.kind == TransactionKind.ROLLBACK:
            return f"rollback to generation {self.generation}"
        if self.kind == TransactionKind.UPGRADE_ALL:
            return f"upgrade all {self.scope.value} packages"
        if self.kind == TransactionKind.UPGRADE and self.scope == Scope.SYSTEM:
            return f"upgrade {self.target} (system; upgrades every system package)"
        return f"{self.kind.value} {self.target} ({self.scope.value})"


@dataclass(frozen=True)
class Transaction:
    """Immutable snapshot of a transaction as seen by callers."""
    id: int
    kind: TransactionKind
    target: str
    scope: Scope
    state: TransactionState
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failure: Optional[Failure] = None
    log: Tuple[str, ...] = ()
    is_slow: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def succeeded(self) -> bool:
        return self.state == TransactionState.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "target": self.target,
            "scope": self.scope.value,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "failure": self.failure.to_dict() if self.failure else None,
            "log": list(self.log),
            "is_slow": self.is_slow,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        """
        Create from dictionary.

        Raises:
            KeyError, ValueError: On missing fields or unknown values.
        """
        def timestamp(key: str) -> Optional[datetime]:
            value = data.get(key)
            return datetime.fromisoformat(value) if value else None

        failure = data.get("failure")
        return cls(
            id=int(data["id"]),
            kind=TransactionKind(data["kind"]),
            target=str(data["target"]),
            scope=Scope(data["scope"]),
            state=TransactionState(data["state"]),
            created_at=timestamp("created_at") or datetime.now(),
            started_at=timestamp("started_at"),
            finished_at=timestamp("finished_at"),
            failure=Failure.from_dict(failure) if failure else None,
            log=tuple(data.get("log", ())),
            is_slow=bool(data.get("is_slow", False)),
        )


@dataclass(frozen=True)
class TransactionUpdate:
    """
    One progress notification pushed to subscribers.

    Either a new log line (``line`` set) or a state change.
    """
    transaction_id: int
    state: TransactionState
    line: Optional[str] = None
    failure: Optional[Failure] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_final(self) -> bool:
        """True for the last update a transaction will ever produce."""
        return self.line is None and self.state.is_terminal
