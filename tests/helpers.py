"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off provider subclasses as coverage expands.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from castor.providers.models import ProviderRequest, ProviderResponse
from castor.types import FinishReason, TextStreamDelta, ToolCall, Usage
from castor.usage import OperationKind
from tests.conftest import FakeProvider


@dataclass
class ScriptedProvider(FakeProvider):
    """FakeProvider that returns a scripted sequence of responses/exceptions.

    Useful for tool-loop tests without defining bespoke providers.
    """

    script: list[ProviderResponse | BaseException] = field(default_factory=list)
    generate_calls: int = 0

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        self.requests.append(request)
        self.generate_calls += 1
        if not self.script:
            return ProviderResponse(
                text="ok", usage=Usage(1, 1), finish_reason=FinishReason.STOP
            )
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


@dataclass
class StreamingProvider(FakeProvider):
    """FakeProvider streaming a fixed delta script; records pulls and closure."""

    deltas: list[TextStreamDelta | BaseException] = field(default_factory=list)
    pulled: int = 0
    closed: bool = False

    async def stream(self, request: ProviderRequest):
        self.requests.append(request)
        try:
            for item in self.deltas:
                if isinstance(item, BaseException):
                    raise item
                self.pulled += 1
                yield item
        finally:
            self.closed = True


@dataclass
class RecordingTracker:
    """UsageTracker double recording every call in order."""

    calls: list[tuple[Any, ...]] = field(default_factory=list)

    def start_session(self, session_id: str) -> str:
        self.calls.append(("start", session_id))
        return session_id

    def record_usage(
        self,
        session_id: str,
        model_id: str,
        usage: Usage,
        operation: OperationKind,
    ) -> None:
        self.calls.append(("record", session_id, model_id, usage, operation))

    def end_session(self, session_id: str) -> None:
        self.calls.append(("end", session_id))

    @property
    def records(self) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == "record"]


class ExplodingTracker:
    """UsageTracker whose every method raises."""

    def start_session(self, session_id: str) -> str:
        raise RuntimeError("tracker down")

    def record_usage(self, *args: Any) -> None:
        raise RuntimeError("tracker down")

    def end_session(self, session_id: str) -> None:
        raise RuntimeError("tracker down")


def tool_response(
    *calls: ToolCall,
    text: str = "",
    usage: Usage | None = None,
    finish_reason: FinishReason = FinishReason.TOOL_CALLS,
) -> ProviderResponse:
    return ProviderResponse(
        text=text,
        usage=usage or Usage(input_tokens=10, output_tokens=5),
        finish_reason=finish_reason,
        tool_calls=list(calls),
    )


def text_response(
    text: str,
    *,
    usage: Usage | None = None,
    finish_reason: FinishReason | None = FinishReason.STOP,
) -> ProviderResponse:
    return ProviderResponse(text=text, usage=usage, finish_reason=finish_reason)


def text_deltas(
    *chunks: str,
    usage: Usage | None = None,
    finish_reason: FinishReason = FinishReason.STOP,
) -> list[TextStreamDelta | BaseException]:
    deltas: list[TextStreamDelta | BaseException] = [
        TextStreamDelta.text(c) for c in chunks
    ]
    deltas.append(TextStreamDelta.done(usage=usage, finish_reason=finish_reason))
    return deltas
