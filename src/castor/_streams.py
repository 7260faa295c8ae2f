"""Small helpers shared by the stream wrappers.

The stream views (``filter_stream``, ``map_stream``, ``tap_stream``,
``buffer_stream``) are async generators that close their upstream when they
finish or are closed, so ``aclose()`` on the outermost view reaches the
provider stream.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
import inspect
import logging
import math
import re
import time
from typing import Any

from castor.errors import InvalidInputError

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\S+\s*")


async def aclose_quietly(stream: object) -> None:
    """Close an async iterator if it supports ``aclose``; log cleanup failures."""
    aclose = getattr(stream, "aclose", None)
    if not callable(aclose):
        return
    try:
        await aclose()
    except Exception as exc:
        # Cleanup should never mask the primary failure.
        logger.warning("Closing upstream stream failed: %s", exc)


def approx_tokens(text: str) -> int:
    """Rough token estimate: 4 characters per token, at least 1."""
    return max(1, math.ceil(len(text) / 4))


def chunk_words(text: str, size: int) -> list[str]:
    """Split *text* into groups of *size* words.

    Whitespace stays attached to the word before it (leading whitespace to the
    first chunk), so the chunks concatenate back to *text* exactly.
    """
    words = _WORD.findall(text)
    if not words:
        return [text] if text else []
    lead = text[: len(text) - len(text.lstrip())]
    words[0] = lead + words[0]
    return ["".join(words[i : i + size]) for i in range(0, len(words), size)]


async def _call(fn: Callable[[Any], Any], item: Any) -> Any:
    result = fn(item)
    if inspect.isawaitable(result):
        result = await result
    return result


async def filter_stream[T](
    stream: AsyncIterator[T],
    predicate: Callable[[T], bool | Awaitable[bool]],
) -> AsyncIterator[T]:
    """Forward only the items *predicate* accepts."""
    try:
        async for item in stream:
            if await _call(predicate, item):
                yield item
    finally:
        await aclose_quietly(stream)


async def map_stream[T, R](
    stream: AsyncIterator[T],
    mapper: Callable[[T], R | Awaitable[R]],
) -> AsyncIterator[R]:
    """Forward ``mapper(item)`` for every item."""
    try:
        async for item in stream:
            yield await _call(mapper, item)
    finally:
        await aclose_quietly(stream)


async def tap_stream[T](
    stream: AsyncIterator[T],
    action: Callable[[T], None | Awaitable[None]],
) -> AsyncIterator[T]:
    """Run *action* on every item, then forward it unchanged."""
    try:
        async for item in stream:
            await _call(action, item)
            yield item
    finally:
        await aclose_quietly(stream)


async def buffer_stream[T](
    stream: AsyncIterator[T],
    size: int,
    *,
    flush_interval_s: float | None = None,
) -> AsyncIterator[list[T]]:
    """Batch items into lists of *size*.

    A batch is also flushed early once *flush_interval_s* has passed since the
    previous flush. Leftover items are flushed when the upstream ends.
    """
    if size < 1:
        raise InvalidInputError(f"buffer size must be ≥ 1, got {size}")
    batch: list[T] = []
    last_flush = time.monotonic()
    try:
        async for item in stream:
            batch.append(item)
            now = time.monotonic()
            if len(batch) >= size or (
                flush_interval_s is not None and now - last_flush >= flush_interval_s
            ):
                yield batch
                batch = []
                last_flush = now
        if batch:
            yield batch
    finally:
        await aclose_quietly(stream)
