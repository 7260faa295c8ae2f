"""Message model: immutable value types shared by every layer."""

from __future__ import annotations

import base64
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
import mimetypes
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal
import uuid

from castor.errors import InvalidInputError

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from castor.stop import StopCondition

Role = Literal["system", "user", "assistant", "tool"]
OutputFormat = Literal["text", "json"]


# =============================================================================
# Tool calls and results
# =============================================================================


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool call: exactly one of ``value`` or ``error`` applies."""

    tool_call_id: str
    value: Any = None
    error: str | None = None

    @classmethod
    def success(cls, tool_call_id: str, value: Any) -> ToolResult:
        return cls(tool_call_id=tool_call_id, value=value)

    @classmethod
    def failure(cls, tool_call_id: str, message: str) -> ToolResult:
        return cls(tool_call_id=tool_call_id, error=message)

    @property
    def is_error(self) -> bool:
        return self.error is not None


# =============================================================================
# Content parts
# =============================================================================


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    """Image content: base64 ``data`` plus its MIME type (``image/png``).

    ``data`` may also already be a ``data:`` or ``http(s)://`` URL.
    """

    data: str
    mime_type: str = "image/png"

    @property
    def url(self) -> str:
        if self.data.startswith(("data:", "http://", "https://")):
            return self.data
        mime = self.mime_type if "/" in self.mime_type else f"image/{self.mime_type}"
        return f"data:{mime};base64,{self.data}"

    @classmethod
    def from_file(cls, path: str | Path) -> ImagePart:
        """Load a local image as base64, guessing the MIME type from the extension.

        Unknown or non-image extensions fall back to ``image/png``.
        """
        p = Path(path)
        if not p.is_file():
            raise InvalidInputError(
                f"Image file not found: {p}",
                hint="Pass an existing file path or an ImagePart.",
            )
        mime = mimetypes.guess_type(str(p))[0]
        if mime is None or not mime.startswith("image/"):
            mime = "image/png"
        return cls(data=base64.b64encode(p.read_bytes()).decode("ascii"), mime_type=mime)


@dataclass(frozen=True)
class ToolCallPart:
    tool_call: ToolCall


@dataclass(frozen=True)
class ToolResultPart:
    tool_result: ToolResult


ContentPart = TextPart | ImagePart | ToolCallPart | ToolResultPart


# =============================================================================
# Messages
# =============================================================================


def _new_message_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Message:
    """One conversation turn.

    Messages are never mutated in place; transformations return new instances
    via ``dataclasses.replace``.
    """

    role: Role
    content: tuple[ContentPart, ...] = ()
    id: str = field(default_factory=_new_message_id)
    timestamp: datetime = field(default_factory=_now)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Accept lists from callers but store an immutable tuple.
        if not isinstance(self.content, tuple):
            object.__setattr__(self, "content", tuple(self.content))

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role="system", content=(TextPart(text),))

    @classmethod
    def user(cls, text: str, *, images: Iterable[ImagePart] = ()) -> Message:
        return cls(role="user", content=(TextPart(text), *images))

    @classmethod
    def assistant(cls, text: str = "", *, tool_calls: Iterable[ToolCall] = ()) -> Message:
        parts: list[ContentPart] = [TextPart(text)]
        parts.extend(ToolCallPart(tc) for tc in tool_calls)
        return cls(role="assistant", content=tuple(parts))

    @classmethod
    def tool(cls, result: ToolResult) -> Message:
        return cls(role="tool", content=(ToolResultPart(result),))

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [p.tool_call for p in self.content if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResult]:
        return [p.tool_result for p in self.content if isinstance(p, ToolResultPart)]


def check_tool_linkage(messages: Sequence[Message]) -> None:
    """Validate that every tool message answers a previously issued tool call.

    Raises:
        InvalidInputError: A tool message carries no result, or references a
            ``tool_call_id`` no earlier assistant message issued.
    """
    issued: set[str] = set()
    for idx, message in enumerate(messages):
        if message.role == "assistant":
            issued.update(tc.id for tc in message.tool_calls)
        elif message.role == "tool":
            results = message.tool_results
            if not results:
                raise InvalidInputError(
                    f"messages[{idx}] is a tool message without a tool result",
                    hint="Build tool messages with Message.tool(ToolResult(...)).",
                )
            for result in results:
                if result.tool_call_id not in issued:
                    raise InvalidInputError(
                        f"messages[{idx}] references unknown tool call "
                        f"{result.tool_call_id!r}",
                        hint="Tool results must follow the assistant message that issued the call.",
                    )


# =============================================================================
# Settings, usage, finish reasons
# =============================================================================


@dataclass(frozen=True)
class GenerationSettings:
    """Per-request generation knobs; ``None`` leaves the backend default."""

    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stop_sequences: tuple[str, ...] | None = None
    seed: int | None = None
    output_format: OutputFormat = "text"
    #: Applied by the orchestrator to the final text and by the streaming
    #: pipeline to the live stream. Not sent to the backend.
    stop_condition: StopCondition | None = None


@dataclass(frozen=True)
class Cost:
    input: float
    output: float

    @property
    def total(self) -> float:
        return self.input + self.output


@dataclass(frozen=True)
class Usage:
    """Token accounting for one or more provider calls.

    Addition is component-wise so totals only ever grow.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    cost: Cost | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: Usage) -> Usage:
        if not isinstance(other, Usage):
            return NotImplemented
        cost = self.cost
        if other.cost is not None:
            cost = (
                other.cost
                if cost is None
                else Cost(cost.input + other.cost.input, cost.output + other.cost.output)
            )
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cost=cost,
        )


class FinishReason(StrEnum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    OTHER = "other"


# =============================================================================
# Steps and results
# =============================================================================


@dataclass(frozen=True)
class GenerationStep:
    """Audit record for one orchestrator iteration."""

    index: int
    text: str
    tool_calls: tuple[ToolCall, ...] = ()
    tool_results: tuple[ToolResult, ...] = ()
    usage: Usage | None = None
    finish_reason: FinishReason | None = None


@dataclass(frozen=True)
class GenerateTextResult:
    text: str
    usage: Usage
    finish_reason: FinishReason
    steps: tuple[GenerationStep, ...]
    messages: tuple[Message, ...]

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [tc for step in self.steps for tc in step.tool_calls]

    @property
    def tool_results(self) -> list[ToolResult]:
        return [tr for step in self.steps for tr in step.tool_results]


@dataclass(frozen=True)
class GenerateObjectResult[T]:
    object: T
    usage: Usage | None
    finish_reason: FinishReason


# =============================================================================
# Stream deltas
# =============================================================================


class DeltaType(StrEnum):
    TEXT_DELTA = "text_delta"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    REASONING = "reasoning"
    DONE = "done"


@dataclass(frozen=True)
class TextStreamDelta:
    """One increment of a text stream; ``done`` is always the last one."""

    type: DeltaType
    content: str | None = None
    tool_call: ToolCall | None = None
    tool_result: ToolResult | None = None
    usage: Usage | None = None
    finish_reason: FinishReason | None = None

    @classmethod
    def text(cls, content: str) -> TextStreamDelta:
        return cls(type=DeltaType.TEXT_DELTA, content=content)

    @classmethod
    def reasoning(cls, content: str) -> TextStreamDelta:
        return cls(type=DeltaType.REASONING, content=content)

    @classmethod
    def tool(cls, call: ToolCall) -> TextStreamDelta:
        return cls(type=DeltaType.TOOL_CALL, tool_call=call)

    @classmethod
    def done(
        cls,
        *,
        usage: Usage | None = None,
        finish_reason: FinishReason | None = None,
    ) -> TextStreamDelta:
        return cls(type=DeltaType.DONE, usage=usage, finish_reason=finish_reason)


class ObjectDeltaType(StrEnum):
    START = "start"
    PARTIAL = "partial"
    COMPLETE = "complete"
    DONE = "done"


@dataclass(frozen=True)
class ObjectStreamDelta[T]:
    type: ObjectDeltaType
    object: T | None = None
    raw_text: str | None = None
