"""Streaming pipeline: a tracked, cancellable wrapper over provider streams.

Deltas are forwarded unchanged and in order. The wrapper only observes them to
approximate output tokens and to close the usage session when the stream ends,
fails, or is abandoned.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
import logging
from typing import TYPE_CHECKING, Any

from castor._streams import (
    aclose_quietly,
    approx_tokens,
    buffer_stream,
    filter_stream,
    map_stream,
    tap_stream,
)
from castor.providers.models import ProviderRequest
from castor.stop import stop_when
from castor.types import (
    DeltaType,
    GenerationSettings,
    Message,
    TextStreamDelta,
    Usage,
    check_tool_linkage,
)
from castor.usage import OperationKind, UsageTracker, tracked_session

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from castor.providers.base import Provider
    from castor.stop import StopCondition
    from castor.tools import Tool

logger = logging.getLogger(__name__)


class StreamTextResult:
    """Single-use async iterable of :class:`TextStreamDelta`.

    Closing it (``aclose()``, leaving ``async with``, or breaking out and
    letting it be collected) closes the provider stream and ends the usage
    session.

    Example:
        async with stream_text(provider, [Message.user("Hi")]) as result:
            async for delta in result:
                if delta.type is DeltaType.TEXT_DELTA:
                    print(delta.content, end="")
    """

    def __init__(
        self,
        deltas: AsyncGenerator[TextStreamDelta, None],
        *,
        model_id: str,
        settings: GenerationSettings,
    ) -> None:
        self._deltas = deltas
        self.model_id = model_id
        self.settings = settings

    def __aiter__(self) -> AsyncIterator[TextStreamDelta]:
        return self._deltas

    async def __aenter__(self) -> StreamTextResult:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._deltas.aclose()

    async def text(self) -> str:
        """Drain the stream and return the concatenated text deltas."""
        chunks: list[str] = []
        try:
            async for delta in self._deltas:
                if delta.type is DeltaType.TEXT_DELTA and delta.content:
                    chunks.append(delta.content)
        finally:
            await self.aclose()
        return "".join(chunks)

    def stop_when(self, condition: StopCondition) -> StreamTextResult:
        """Return a view of this stream that ends once *condition* fires."""
        return self._view(stop_when(self._deltas, condition))

    def filter(
        self, predicate: Callable[[TextStreamDelta], bool | Awaitable[bool]]
    ) -> StreamTextResult:
        """Return a view forwarding only the deltas *predicate* accepts."""
        return self._view(filter_stream(self._deltas, predicate))

    def tap(
        self, action: Callable[[TextStreamDelta], None | Awaitable[None]]
    ) -> StreamTextResult:
        """Return a view that runs *action* on each delta before forwarding it."""
        return self._view(tap_stream(self._deltas, action))

    def map[R](
        self, mapper: Callable[[TextStreamDelta], R | Awaitable[R]]
    ) -> AsyncGenerator[R, None]:
        """Stream ``mapper(delta)`` for every delta."""
        return map_stream(self._deltas, mapper)

    def buffer(
        self, size: int, *, flush_interval_s: float | None = None
    ) -> AsyncGenerator[list[TextStreamDelta], None]:
        """Stream the deltas in batches of *size*."""
        return buffer_stream(self._deltas, size, flush_interval_s=flush_interval_s)

    def text_chunks(self) -> AsyncGenerator[str, None]:
        """Stream only the text content of ``text_delta`` deltas."""
        text_only = filter_stream(
            self._deltas, lambda d: d.type is DeltaType.TEXT_DELTA and bool(d.content)
        )
        return map_stream(text_only, lambda d: d.content or "")

    def _view(self, deltas: AsyncGenerator[TextStreamDelta, None]) -> StreamTextResult:
        return StreamTextResult(deltas, model_id=self.model_id, settings=self.settings)


def stream_text(
    provider: Provider,
    messages: Sequence[Message],
    *,
    tools: Sequence[Tool] | None = None,
    settings: GenerationSettings | None = None,
    tracker: UsageTracker | None = None,
    session_id: str | None = None,
) -> StreamTextResult:
    """Open one streaming call; no tool loop runs.

    Output tokens are approximated from the text deltas (4 characters per
    token, at least 1 per delta) and recorded with the reported input tokens
    when the ``done`` delta arrives. ``settings.stop_condition`` is applied
    to the live stream before usage is counted.

    Raises:
        InvalidInputError: Broken tool linkage in *messages*.
    """
    settings = settings or GenerationSettings()
    check_tool_linkage(messages)
    request = ProviderRequest(
        messages=tuple(messages),
        tools=tuple(tools) if tools else None,
        settings=settings,
        output_format=settings.output_format,
    )
    return StreamTextResult(
        _tracked_stream(provider, request, tracker=tracker, session_id=session_id),
        model_id=provider.model_id,
        settings=settings,
    )


async def _tracked_stream(
    provider: Provider,
    request: ProviderRequest,
    *,
    tracker: UsageTracker | None,
    session_id: str | None,
) -> AsyncIterator[TextStreamDelta]:
    condition = request.settings.stop_condition
    upstream = provider.stream(request)
    source = stop_when(upstream, condition) if condition is not None else upstream
    output_tokens = 0

    with tracked_session(
        tracker, model_id=provider.model_id, session_id=session_id, prefix="stream"
    ) as session:
        try:
            async for delta in source:
                if delta.type is DeltaType.TEXT_DELTA and delta.content:
                    output_tokens += approx_tokens(delta.content)
                elif delta.type is DeltaType.DONE:
                    input_tokens = delta.usage.input_tokens if delta.usage else 0
                    session.record(
                        Usage(input_tokens=input_tokens, output_tokens=output_tokens),
                        OperationKind.TEXT_STREAMING,
                    )
                    logger.debug(
                        "Stream for %s done: reason=%s output≈%d",
                        provider.model_id,
                        delta.finish_reason,
                        output_tokens,
                    )
                    yield delta
                    return
                yield delta
        finally:
            await aclose_quietly(source)


def stream(
    provider: Provider,
    prompt: str,
    *,
    system: str | None = None,
    max_tokens: int | None = None,
    temperature: float | None = None,
    tracker: UsageTracker | None = None,
) -> StreamTextResult:
    """Single-prompt convenience over :func:`stream_text`."""
    messages = [Message.system(system)] if system else []
    messages.append(Message.user(prompt))
    return stream_text(
        provider,
        messages,
        settings=GenerationSettings(max_tokens=max_tokens, temperature=temperature),
        tracker=tracker,
    )
