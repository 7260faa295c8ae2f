"""Usage tracking: session-scoped usage records.

The core only talks to trackers through :class:`UsageTracker`. Trackers are
passed explicitly to each call; there is no process-wide registry.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
import logging
import threading
from typing import Protocol, runtime_checkable
import uuid

from castor.types import Cost, Usage

logger = logging.getLogger(__name__)


class OperationKind(StrEnum):
    TEXT_GENERATION = "text_generation"
    TOOL_CALL = "tool_call"
    TEXT_STREAMING = "text_streaming"
    IMAGE_ANALYSIS = "image_analysis"
    OBJECT_GENERATION = "object_generation"


@runtime_checkable
class UsageTracker(Protocol):
    """Narrow session interface consumed by the orchestrator and pipeline."""

    def start_session(self, session_id: str) -> str: ...  # noqa: D102
    def record_usage(  # noqa: D102
        self,
        session_id: str,
        model_id: str,
        usage: Usage,
        operation: OperationKind,
    ) -> None: ...
    def end_session(self, session_id: str) -> None: ...  # noqa: D102


class NullUsageTracker:
    """Tracker that records nothing; used when the caller passes none."""

    def start_session(self, session_id: str) -> str:
        return session_id

    def record_usage(
        self,
        session_id: str,
        model_id: str,
        usage: Usage,
        operation: OperationKind,
    ) -> None:
        pass

    def end_session(self, session_id: str) -> None:
        pass


# =============================================================================
# In-memory tracker
# =============================================================================


@dataclass(frozen=True)
class UsageOperation:
    timestamp: datetime
    model_id: str
    usage: Usage
    operation: OperationKind


@dataclass(frozen=True)
class UsageSession:
    id: str
    start_time: datetime
    end_time: datetime | None = None
    operations: tuple[UsageOperation, ...] = ()

    @property
    def is_complete(self) -> bool:
        return self.end_time is not None

    @property
    def total_tokens(self) -> int:
        return sum(op.usage.total_tokens for op in self.operations)

    @property
    def total_cost(self) -> float:
        return sum(op.usage.cost.total for op in self.operations if op.usage.cost)


@dataclass
class Breakdown:
    operations: int = 0
    tokens: int = 0
    cost: float = 0.0

    def add(self, op: UsageOperation) -> None:
        self.operations += 1
        self.tokens += op.usage.total_tokens
        self.cost += op.usage.cost.total if op.usage.cost else 0.0


@dataclass
class TotalUsage:
    """Aggregate across every ended session."""

    sessions: int = 0
    operations: int = 0
    tokens: int = 0
    cost: float = 0.0
    by_model: dict[str, Breakdown] = field(default_factory=dict)
    by_operation: dict[str, Breakdown] = field(default_factory=dict)

    def add_session(self, session: UsageSession) -> None:
        self.sessions += 1
        self.operations += len(session.operations)
        self.tokens += session.total_tokens
        self.cost += session.total_cost
        for op in session.operations:
            self.by_model.setdefault(op.model_id, Breakdown()).add(op)
            self.by_operation.setdefault(op.operation.value, Breakdown()).add(op)


class InMemoryUsageTracker:
    """Thread-safe tracker keeping sessions and running totals in memory.

    Args:
        pricing: Optional ``model_id -> (input, output)`` prices per million
            tokens. Records for priced models get a ``Cost`` attached.
    """

    def __init__(self, pricing: Mapping[str, tuple[float, float]] | None = None) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, UsageSession] = {}
        self._total = TotalUsage()
        self._pricing = dict(pricing or {})

    def start_session(self, session_id: str | None = None) -> str:
        sid = session_id or uuid.uuid4().hex
        with self._lock:
            self._sessions[sid] = UsageSession(id=sid, start_time=datetime.now(UTC))
        return sid

    def record_usage(
        self,
        session_id: str,
        model_id: str,
        usage: Usage,
        operation: OperationKind,
    ) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                logger.debug("Dropping usage for unknown session %s", session_id)
                return
            priced = self._price(model_id, usage)
            op = UsageOperation(
                timestamp=datetime.now(UTC),
                model_id=model_id,
                usage=priced,
                operation=operation,
            )
            self._sessions[session_id] = replace(
                session, operations=(*session.operations, op)
            )

    def end_session(self, session_id: str) -> UsageSession | None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.is_complete:
                return session
            ended = replace(session, end_time=datetime.now(UTC))
            self._sessions[session_id] = ended
            self._total.add_session(ended)
            return ended

    def get_session(self, session_id: str) -> UsageSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    @property
    def active_sessions(self) -> list[UsageSession]:
        with self._lock:
            return [s for s in self._sessions.values() if not s.is_complete]

    @property
    def completed_sessions(self) -> list[UsageSession]:
        with self._lock:
            return [s for s in self._sessions.values() if s.is_complete]

    @property
    def total(self) -> TotalUsage:
        with self._lock:
            return self._total

    def reset(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._total = TotalUsage()

    def _price(self, model_id: str, usage: Usage) -> Usage:
        prices = self._pricing.get(model_id)
        if prices is None:
            return usage
        per_input, per_output = prices
        return replace(
            usage,
            cost=Cost(
                input=usage.input_tokens * per_input / 1_000_000,
                output=usage.output_tokens * per_output / 1_000_000,
            ),
        )


# =============================================================================
# Scoped sessions
# =============================================================================


class _SessionHandle:
    """Handle yielded by :func:`tracked_session`; records at most once."""

    __slots__ = ("_tracker", "model_id", "recorded", "session_id")

    def __init__(self, tracker: UsageTracker, session_id: str, model_id: str) -> None:
        self._tracker = tracker
        self.session_id = session_id
        self.model_id = model_id
        self.recorded = False

    def record(self, usage: Usage, operation: OperationKind) -> None:
        if self.recorded:
            return
        self.recorded = True
        try:
            self._tracker.record_usage(self.session_id, self.model_id, usage, operation)
        except Exception as e:
            logger.warning(
                "Usage tracker '%s' failed to record: %s", type(self._tracker).__name__, e
            )


@contextmanager
def tracked_session(
    tracker: UsageTracker | None,
    *,
    model_id: str,
    session_id: str | None = None,
    prefix: str = "generation",
) -> Iterator[_SessionHandle]:
    """Open a usage session for one call and always close it.

    When *session_id* is supplied the caller owns that session: it is neither
    started nor ended here.
    """
    active = tracker if tracker is not None else NullUsageTracker()
    owns = session_id is None
    sid = session_id or f"{prefix}-{uuid.uuid4()}"
    if owns:
        try:
            active.start_session(sid)
        except Exception as e:
            logger.warning(
                "Usage tracker '%s' failed to start session: %s", type(active).__name__, e
            )
    try:
        yield _SessionHandle(active, sid, model_id)
    finally:
        if owns:
            try:
                active.end_session(sid)
            except Exception as e:
                logger.warning(
                    "Usage tracker '%s' failed to end session: %s",
                    type(active).__name__,
                    e,
                )
