# ============================================================================
# File: ingestion/state_machine.py
# Description: Lifecycle graph for uploaded files and processing runs
# ============================================================================
"""
ETL state machine.

A fixed adjacency table declares every legal move between lifecycle
states. Services validate a transition before writing it and the storage
adapters check the same table again when a conditional update changes
`current_state`.

    UPLOADED -> PARSING -> PARSED -> VALIDATING -> VALIDATED
        -> (AWAITING_APPROVAL -> APPROVED) -> LOADING -> LOADED

PARSING, VALIDATING and LOADING may fail; FAILED re-enters PARSING or
LOADING on retry, or is cancelled.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union
import logging

from pydantic import BaseModel

from core.config import settings
from core.exceptions import StateTransitionError
from ingestion.storage.base import Condition, StoragePort, Tables
from models.base import ETLState

logger = logging.getLogger(__name__)

StateLike = Union[ETLState, str]


STATE_TRANSITIONS: Dict[ETLState, FrozenSet[ETLState]] = {
    ETLState.UPLOADED: frozenset({ETLState.PARSING}),
    ETLState.PARSING: frozenset({ETLState.PARSED, ETLState.FAILED}),
    ETLState.PARSED: frozenset({ETLState.VALIDATING}),
    ETLState.VALIDATING: frozenset({ETLState.VALIDATED, ETLState.FAILED}),
    ETLState.VALIDATED: frozenset({ETLState.AWAITING_APPROVAL, ETLState.LOADING}),
    ETLState.AWAITING_APPROVAL: frozenset({ETLState.APPROVED, ETLState.CANCELLED}),
    ETLState.APPROVED: frozenset({ETLState.LOADING}),
    ETLState.LOADING: frozenset({ETLState.LOADED, ETLState.FAILED}),
    ETLState.LOADED: frozenset(),
    ETLState.FAILED: frozenset({ETLState.PARSING, ETLState.LOADING, ETLState.CANCELLED}),
    ETLState.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset({ETLState.LOADED, ETLState.CANCELLED})
PROCESSING_STATES = frozenset({ETLState.PARSING, ETLState.VALIDATING, ETLState.LOADING})

STALE_LOCK_MESSAGE = "Processing timeout - stale lock detected"


def to_state(value: StateLike) -> ETLState:
    """Coerce a stored string into an ETLState."""
    if isinstance(value, ETLState):
        return value
    try:
        return ETLState(value)
    except ValueError as e:
        raise StateTransitionError(str(value), "?", context={"reason": "unknown state"}) from e


def is_valid_transition(from_state: StateLike, to_state_: StateLike) -> bool:
    try:
        return to_state(to_state_) in STATE_TRANSITIONS[to_state(from_state)]
    except StateTransitionError:
        return False


def validate_transition(from_state: StateLike, to_state_: StateLike) -> None:
    """
    Raise StateTransitionError unless from_state -> to_state is an edge.

    Pure: no I/O, no clock.
    """
    source = to_state(from_state)
    target = to_state(to_state_)
    allowed = STATE_TRANSITIONS[source]
    if target not in allowed:
        raise StateTransitionError(
            source.value,
            target.value,
            allowed=[s.value for s in allowed]
        )


def allowed_predecessors(target: StateLike) -> List[str]:
    """States from which `target` may be entered."""
    target = to_state(target)
    return sorted(s.value for s, nxt in STATE_TRANSITIONS.items() if target in nxt)


class StateMachineConfig(BaseModel):
    """Lifecycle behaviour switches"""
    require_approval: bool = False
    auto_retry: bool = True
    max_retries: int = 3
    stale_processing_timeout_ms: int = 600000
    lock_timeout_ms: int = 30000
    enable_dead_letter_queue: bool = True

    @classmethod
    def from_settings(cls) -> "StateMachineConfig":
        return cls(
            require_approval=settings.REQUIRE_APPROVAL,
            auto_retry=settings.AUTO_RETRY,
            max_retries=settings.MAX_RETRIES,
            stale_processing_timeout_ms=settings.STALE_PROCESSING_TIMEOUT_MS,
            lock_timeout_ms=settings.LOCK_TIMEOUT_MS,
        )


class ETLStateMachine:
    """
    Validates transitions and builds state history for files and runs.

    Responsibilities:
    - Expose the adjacency table (valid successors, terminal states)
    - Produce immutable history entries appended on every transition
    - Decide which state a FAILED entity re-enters on retry
    - Find runs whose processing lock went stale
    """

    def __init__(self, config: Optional[StateMachineConfig] = None):
        self.config = config or StateMachineConfig()

    # --------------------------------------------------
    # Graph queries
    # --------------------------------------------------

    def validate_transition(self, from_state: StateLike, to_state_: StateLike) -> None:
        validate_transition(from_state, to_state_)

    def is_valid_transition(self, from_state: StateLike, to_state_: StateLike) -> bool:
        return is_valid_transition(from_state, to_state_)

    def get_valid_next_states(self, state: StateLike) -> List[ETLState]:
        return sorted(STATE_TRANSITIONS[to_state(state)], key=lambda s: s.value)

    def is_terminal_state(self, state: StateLike) -> bool:
        return to_state(state) in TERMINAL_STATES

    def is_processing_state(self, state: StateLike) -> bool:
        return to_state(state) in PROCESSING_STATES

    def state_after_validation(self, approval_required: Optional[bool] = None) -> ETLState:
        """AWAITING_APPROVAL when approval is required, otherwise LOADING."""
        required = self.config.require_approval if approval_required is None else approval_required
        return ETLState.AWAITING_APPROVAL if required else ETLState.LOADING

    # --------------------------------------------------
    # History
    # --------------------------------------------------

    @staticmethod
    def build_history_entry(
        state: StateLike,
        previous_state: Optional[StateLike] = None,
        actor: Optional[str] = None,
        message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ) -> Dict[str, Any]:
        return {
            "state": to_state(state).value,
            "previous_state": to_state(previous_state).value if previous_state else None,
            "timestamp": (timestamp or datetime.utcnow()).isoformat(),
            "actor": actor,
            "message": message,
            "metadata": metadata or {},
        }

    @staticmethod
    def append_history(history: Optional[Iterable[Dict[str, Any]]], entry: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Return a new history list; the stored one is never mutated."""
        return [dict(item) for item in (history or [])] + [entry]

    def get_reentry_state(self, history: Optional[Iterable[Dict[str, Any]]]) -> ETLState:
        """
        State a FAILED entity re-enters on retry.

        LOADING when the last failure happened during LOADING (parsed data is
        already validated), PARSING otherwise.
        """
        for entry in reversed(list(history or [])):
            if entry.get("state") == ETLState.FAILED.value:
                if entry.get("previous_state") == ETLState.LOADING.value:
                    return ETLState.LOADING
                return ETLState.PARSING
        return ETLState.PARSING

    # --------------------------------------------------
    # Stale locks
    # --------------------------------------------------

    async def find_stale_runs(self, store: StoragePort, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Runs that are still in flight but whose owner is gone.

        - lock_expires_at has passed on a non-terminal run
        - processing started longer than the stale timeout ago
        """
        now = now or datetime.utcnow()
        active_states = [s.value for s in ETLState if s not in TERMINAL_STATES]
        processing_states = [s.value for s in PROCESSING_STATES]
        threshold = now - timedelta(milliseconds=self.config.stale_processing_timeout_ms)

        expired = await store.query(
            Tables.ETL_RUN,
            [
                Condition("locked_by", "not_null"),
                Condition("lock_expires_at", "lt", now),
                Condition("current_state", "in", active_states),
            ]
        )
        timed_out = await store.query(
            Tables.ETL_RUN,
            [
                Condition("current_state", "in", processing_states),
                Condition("processing_started_at", "lt", threshold),
            ]
        )

        stale: Dict[str, Dict[str, Any]] = {}
        for run in expired + timed_out:
            stale.setdefault(run["id"], run)

        if stale:
            logger.warning(f"Found {len(stale)} stale runs")
        return list(stale.values())
