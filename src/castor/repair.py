"""Partial JSON repair and streamed structured output.

``repair_json`` turns a truncated JSON prefix into the closest well-formed
document by trimming the incomplete tail and closing open containers.
``stream_object`` runs it over a growing stream buffer so callers see typed
partial objects while the model is still writing.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import replace
from functools import lru_cache
import logging
import re
from typing import TYPE_CHECKING, Any, Final, Literal

from pydantic import TypeAdapter, ValidationError

from castor._streams import buffer_stream, filter_stream, map_stream, tap_stream
from castor.errors import InvalidInputError
from castor.streaming import StreamTextResult, stream_text
from castor.types import (
    DeltaType,
    GenerationSettings,
    ObjectDeltaType,
    ObjectStreamDelta,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from castor.providers.base import Provider
    from castor.types import Message
    from castor.usage import UsageTracker

logger = logging.getLogger(__name__)

_CLOSERS: Final = {"{": "}", "[": "]"}
_LITERALS: Final = frozenset({"true", "false", "null"})
_SCALAR = re.compile(r'[^\s,:\[\]{}"]+')
# Odd trailing backslash or a cut-off \uXXXX escape inside an open string.
_PARTIAL_ESCAPE = re.compile(r"(?<!\\)((?:\\\\)*)\\(?:u[0-9a-fA-F]{0,3})?$")

TokenKind = Literal["open", "close", "comma", "colon", "string", "partial_string", "scalar"]


def _tokenize(text: str) -> tuple[list[tuple[TokenKind, int, int]], list[str]] | None:
    """Split *text* into ``(kind, start, end)`` spans plus the open-container stack.

    Returns *None* for closers that do not match their opener.
    """
    tokens: list[tuple[TokenKind, int, int]] = []
    stack: list[str] = []
    i, n = 0, len(text)
    while i < n:
        c = text[i]
        if c.isspace():
            i += 1
        elif c in _CLOSERS:
            stack.append(c)
            tokens.append(("open", i, i + 1))
            i += 1
        elif c in "}]":
            if not stack or _CLOSERS[stack[-1]] != c:
                return None
            stack.pop()
            tokens.append(("close", i, i + 1))
            i += 1
        elif c == ",":
            tokens.append(("comma", i, i + 1))
            i += 1
        elif c == ":":
            tokens.append(("colon", i, i + 1))
            i += 1
        elif c == '"':
            j = i + 1
            escaped = False
            while j < n:
                if escaped:
                    escaped = False
                elif text[j] == "\\":
                    escaped = True
                elif text[j] == '"':
                    break
                j += 1
            if j < n:
                tokens.append(("string", i, j + 1))
                i = j + 1
            else:
                tokens.append(("partial_string", i, n))
                i = n
        else:
            m = _SCALAR.match(text, i)
            if m is None:
                return None
            tokens.append(("scalar", i, m.end()))
            i = m.end()
    return tokens, stack


def _is_key(tokens: list[tuple[TokenKind, int, int]], stack: list[str]) -> bool:
    if not stack or stack[-1] != "{":
        return False
    return len(tokens) < 2 or tokens[-2][0] in ("open", "comma")


def repair_json(text: str, *, final: bool = False) -> str | None:
    """Best-effort completion of a truncated JSON document.

    Repairs, in order: close an unterminated string value (dropping a cut-off
    escape), drop an incomplete trailing number or literal, strip trailing
    commas, drop dangling keys (``"k"`` or ``"k":``), then append the missing
    ``]``/``}`` closers in nesting order. A complete document comes back
    unchanged.

    With *final* set the buffer is known to be complete, so a trailing number
    or literal is kept as written.

    Returns *None* when nothing usable remains or the brackets are mismatched.
    """
    text = text.strip()
    if not text:
        return None
    scanned = _tokenize(text)
    if scanned is None:
        return None
    tokens, stack = scanned

    # A scalar touching the end of the buffer may still be growing.
    growing = not final and tokens and tokens[-1][0] == "scalar"
    if growing and stack and tokens[-1][2] == len(text):
        _, start, end = tokens[-1]
        if text[start:end] not in _LITERALS:
            tokens.pop()

    while tokens:
        kind = tokens[-1][0]
        if kind == "comma":
            tokens.pop()
        elif kind == "colon":
            tokens.pop()
            if tokens and tokens[-1][0] in ("string", "partial_string"):
                tokens.pop()
        elif kind in ("string", "partial_string") and _is_key(tokens, stack):
            tokens.pop()
        else:
            break

    if not tokens:
        return None
    kind, start, end = tokens[-1]
    if kind == "partial_string":
        body = _PARTIAL_ESCAPE.sub(r"\1", text[start:end])
        repaired = f'{text[:start]}{body}"'
    else:
        repaired = text[:end]
    return repaired + "".join(_CLOSERS[c] for c in reversed(stack))


@lru_cache(maxsize=128)
def _adapter(schema: Any) -> TypeAdapter[Any]:
    return TypeAdapter(schema)


def decode_json[T](text: str, schema: type[T] | Any) -> T | None:
    """Strictly decode *text* against *schema*, returning *None* on failure.

    *schema* is a pydantic model class or any type ``TypeAdapter`` accepts.
    """
    try:
        return _adapter(schema).validate_json(text)
    except ValidationError:
        return None


def parse_partial[T](text: str, schema: type[T] | Any, *, final: bool = False) -> T | None:
    """Decode *text*, falling back to its repaired form.

    Schemas with required fields only decode once those fields are present;
    give fields defaults to observe earlier partials. Pass *final* once the
    text can no longer grow (see :func:`repair_json`).
    """
    obj = decode_json(text, schema)
    if obj is not None:
        return obj
    repaired = repair_json(text, final=final)
    if repaired is None or repaired == text:
        return None
    return decode_json(repaired, schema)


# =============================================================================
# Object streams
# =============================================================================


class StreamObjectResult[T]:
    """Single-use async iterable of :class:`ObjectStreamDelta`.

    Yields ``start`` once, ``partial`` for every decodable prefix, exactly one
    ``complete``, then ``done``.
    """

    def __init__(
        self,
        deltas: AsyncGenerator[ObjectStreamDelta[T], None],
        *,
        model_id: str,
        settings: GenerationSettings,
        schema: type[T] | Any,
    ) -> None:
        self._deltas = deltas
        self.model_id = model_id
        self.settings = settings
        self.schema = schema

    def __aiter__(self) -> AsyncIterator[ObjectStreamDelta[T]]:
        return self._deltas

    async def __aenter__(self) -> StreamObjectResult[T]:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._deltas.aclose()

    async def object(self) -> T:
        """Drain the stream and return the complete object.

        Raises:
            InvalidInputError: The stream yielded no ``complete`` delta, for
                example because it was already consumed.
        """
        final: T | None = None
        try:
            async for delta in self._deltas:
                if delta.type is ObjectDeltaType.COMPLETE:
                    final = delta.object
        finally:
            await self.aclose()
        if final is None:
            raise InvalidInputError(
                "No complete object received in stream",
                hint="Object streams are single-use; call object() before iterating.",
            )
        return final

    def partial_objects(self) -> AsyncGenerator[T, None]:
        """Stream only the objects carried by ``partial`` deltas."""
        partials = filter_stream(
            self._deltas,
            lambda d: d.type is ObjectDeltaType.PARTIAL and d.object is not None,
        )
        return map_stream(partials, lambda d: d.object)

    def filter(
        self, predicate: Callable[[ObjectStreamDelta[T]], bool | Awaitable[bool]]
    ) -> StreamObjectResult[T]:
        """Return a view forwarding only the deltas *predicate* accepts."""
        return self._view(filter_stream(self._deltas, predicate))

    def tap(
        self, action: Callable[[ObjectStreamDelta[T]], None | Awaitable[None]]
    ) -> StreamObjectResult[T]:
        """Return a view that runs *action* on each delta before forwarding it."""
        return self._view(tap_stream(self._deltas, action))

    def map[R](
        self, mapper: Callable[[ObjectStreamDelta[T]], R | Awaitable[R]]
    ) -> AsyncGenerator[R, None]:
        """Stream ``mapper(delta)`` for every delta."""
        return map_stream(self._deltas, mapper)

    def buffer(
        self, size: int, *, flush_interval_s: float | None = None
    ) -> AsyncGenerator[list[ObjectStreamDelta[T]], None]:
        """Stream the deltas in batches of *size*."""
        return buffer_stream(self._deltas, size, flush_interval_s=flush_interval_s)

    def _view(
        self, deltas: AsyncGenerator[ObjectStreamDelta[T], None]
    ) -> StreamObjectResult[T]:
        return StreamObjectResult(
            deltas, model_id=self.model_id, settings=self.settings, schema=self.schema
        )


def stream_object[T](
    provider: Provider,
    messages: Sequence[Message],
    schema: type[T] | Any,
    *,
    settings: GenerationSettings | None = None,
    tracker: UsageTracker | None = None,
    session_id: str | None = None,
) -> StreamObjectResult[T]:
    """Stream JSON output and decode typed partial objects as it arrives.

    Raises:
        InvalidInputError: While iterating, when the stream ends without any
            decodable object.

    Example:
        class Person(BaseModel):
            name: str = ""
            age: int | None = None

        async for delta in stream_object(provider, [Message.user("Describe Ada")], Person):
            if delta.type is ObjectDeltaType.PARTIAL:
                print(delta.object)
    """
    settings = replace(settings or GenerationSettings(), output_format="json")
    text_stream = stream_text(
        provider, messages, settings=settings, tracker=tracker, session_id=session_id
    )
    return StreamObjectResult(
        _object_deltas(text_stream, schema),
        model_id=provider.model_id,
        settings=settings,
        schema=schema,
    )


async def _object_deltas[T](
    text_stream: StreamTextResult, schema: type[T] | Any
) -> AsyncIterator[ObjectStreamDelta[T]]:
    buffer = ""
    started = False
    last: T | None = None
    try:
        async for delta in text_stream:
            if delta.type is DeltaType.DONE:
                break
            if delta.type is not DeltaType.TEXT_DELTA or not delta.content:
                continue
            buffer += delta.content
            if not started:
                started = True
                yield ObjectStreamDelta(type=ObjectDeltaType.START)
            obj = parse_partial(buffer, schema)
            if obj is not None:
                last = obj
                yield ObjectStreamDelta(
                    type=ObjectDeltaType.PARTIAL, object=obj, raw_text=buffer
                )

        # The buffer is complete now, so a trailing number may be kept.
        final = parse_partial(buffer, schema, final=True)
        if final is None:
            logger.debug("Final buffer did not decode; using last partial object")
            final = last
        if final is None:
            raise InvalidInputError(
                "Failed to parse complete object from stream",
                hint="The model did not produce JSON matching the schema.",
            )
        yield ObjectStreamDelta(type=ObjectDeltaType.COMPLETE, object=final, raw_text=buffer)
        yield ObjectStreamDelta(type=ObjectDeltaType.DONE)
    finally:
        await text_stream.aclose()
