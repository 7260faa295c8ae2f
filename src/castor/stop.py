"""Stop conditions for ending generation early.

Conditions inspect the accumulated text (and the newest delta when streaming).
They apply to the final text of ``generate_text`` and to live streams.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
import logging
import re
import time
from typing import Protocol, runtime_checkable

from castor._streams import aclose_quietly, approx_tokens
from castor.types import DeltaType, FinishReason, TextStreamDelta

logger = logging.getLogger(__name__)


@runtime_checkable
class StopCondition(Protocol):
    def should_stop(self, text: str, delta: str | None) -> bool:
        """Return True once generation should end."""
        ...

    def reset(self) -> None:
        """Clear internal state before a new stream."""
        ...


class StringStopCondition:
    """Stop once ``stop`` appears in the text."""

    def __init__(self, stop: str, *, case_sensitive: bool = True) -> None:
        self.stop = stop
        self.case_sensitive = case_sensitive

    def should_stop(self, text: str, delta: str | None) -> bool:
        return self.find(text) >= 0 or (delta is not None and self.find(delta) >= 0)

    def find(self, text: str) -> int:
        """Index of the first occurrence in *text*, or -1."""
        if self.case_sensitive:
            return text.find(self.stop)
        return text.lower().find(self.stop.lower())

    def reset(self) -> None:
        pass


class RegexStopCondition:
    """Stop once ``pattern`` matches."""

    def __init__(self, pattern: str | re.Pattern[str]) -> None:
        self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern

    def should_stop(self, text: str, delta: str | None) -> bool:
        if self.pattern.search(text):
            return True
        return delta is not None and self.pattern.search(delta) is not None

    def match_span(self, text: str) -> tuple[int, int] | None:
        m = self.pattern.search(text)
        return m.span() if m else None

    def reset(self) -> None:
        pass


class TokenCountStopCondition:
    """Stop after roughly ``max_tokens`` tokens (4 characters per token)."""

    def __init__(self, max_tokens: int) -> None:
        self.max_tokens = max_tokens
        self._tokens = 0

    def should_stop(self, text: str, delta: str | None) -> bool:
        if delta:
            self._tokens += approx_tokens(delta)
        elif text:
            self._tokens = max(1, len(text) // 4)
        return self._tokens >= self.max_tokens

    def reset(self) -> None:
        self._tokens = 0


class TimeoutStopCondition:
    """Stop once ``timeout_s`` has elapsed since the first check."""

    def __init__(self, timeout_s: float) -> None:
        self.timeout_s = timeout_s
        self._started: float | None = None

    def should_stop(self, text: str, delta: str | None) -> bool:
        now = time.monotonic()
        if self._started is None:
            self._started = now
        return now - self._started >= self.timeout_s

    def reset(self) -> None:
        self._started = None


class PredicateStopCondition:
    """Stop when a custom predicate returns True."""

    def __init__(self, predicate: Callable[[str, str | None], bool]) -> None:
        self.predicate = predicate

    def should_stop(self, text: str, delta: str | None) -> bool:
        return bool(self.predicate(text, delta))

    def reset(self) -> None:
        pass


def truncate_at_stop(text: str, condition: StopCondition) -> tuple[str, bool]:
    """Cut *text* at the stop point, returning ``(text, hit_length_limit)``."""
    if isinstance(condition, StringStopCondition):
        idx = condition.find(text)
        return (text[:idx] if idx >= 0 else text), False
    if isinstance(condition, RegexStopCondition):
        span = condition.match_span(text)
        return (text[: span[0]] if span else text), False
    if isinstance(condition, (TokenCountStopCondition, TimeoutStopCondition)):
        return text, True
    return text, False


async def stop_when(
    stream: AsyncIterator[TextStreamDelta],
    condition: StopCondition,
) -> AsyncIterator[TextStreamDelta]:
    """Forward *stream* until *condition* fires, then emit ``done`` and stop.

    The upstream iterator is closed when this generator finishes or is closed.
    """
    condition.reset()
    text = ""
    try:
        async for delta in stream:
            if delta.type is DeltaType.TEXT_DELTA and delta.content:
                text += delta.content
                if condition.should_stop(text, delta.content):
                    logger.debug("Stop condition %s fired", type(condition).__name__)
                    yield delta
                    yield TextStreamDelta.done(finish_reason=FinishReason.STOP)
                    return
            yield delta
            if delta.type is DeltaType.DONE:
                return
    finally:
        await aclose_quietly(stream)

