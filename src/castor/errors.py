"""Exception hierarchy for Castor.

Every error carries a ``kind`` tag so callers can branch on a closed set of
categories without ``isinstance`` ladders.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar, Literal

if TYPE_CHECKING:
    from collections.abc import Iterator

ErrorKind = Literal[
    "invalid_input",
    "unsupported_operation",
    "api_error",
    "network_error",
    "tool_execution",
    "configuration",
    "internal",
]


class CastorError(Exception):
    """Base exception for all Castor errors."""

    kind: ClassVar[ErrorKind] = "internal"

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(CastorError):
    """Configuration validation or resolution failed."""

    kind = "configuration"


class InvalidInputError(CastorError):
    """Input rejected before or after reaching the backend.

    Raised for malformed or oversized images, broken tool linkage in a
    caller-supplied history, and structured output that could not be parsed.
    """

    kind = "invalid_input"


class UnsupportedOperationError(CastorError):
    """A feature was requested that the backend does not support."""

    kind = "unsupported_operation"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        feature: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.feature = feature


class APIError(CastorError):
    """Backend returned a non-success response.

    Transport collaborators attach the status and body so callers (and any
    retry layer they own) can decide without substring matching.
    """

    kind = "api_error"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        status_code: int | None = None,
        body: str | None = None,
        retryable: bool | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.body = body
        self.retryable = retryable
        self.provider = provider
        self.phase = phase


class NetworkError(CastorError):
    """Transport-level failure (connection, DNS, timeout)."""

    kind = "network_error"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        provider: str | None = None,
        phase: str | None = None,
        timeout: bool = False,
    ) -> None:
        super().__init__(message, hint=hint)
        self.provider = provider
        self.phase = phase
        self.timeout = timeout


class ToolExecutionError(CastorError):
    """A tool failed while executing.

    The orchestrator never lets this escape: it is folded into an error
    ``ToolResult`` so the model can react to the failure.
    """

    kind = "tool_execution"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        tool_name: str | None = None,
        tool_call_id: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.tool_name = tool_name
        self.tool_call_id = tool_call_id


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
