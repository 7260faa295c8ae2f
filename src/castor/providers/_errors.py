"""Shared transport-side error helpers.

Transport collaborators call :func:`wrap_transport_error` so the core sees a
stable ``APIError``/``NetworkError`` taxonomy regardless of the HTTP client or
SDK underneath.
"""

from __future__ import annotations

import asyncio

import httpx

from castor.errors import APIError, CastorError, NetworkError, _walk_exception_chain

# Status codes a caller-side retry layer may reasonably retry.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})

_MAX_BODY_CHARS = 2000


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def extract_body(exc: BaseException) -> str | None:
    """Return the response body text attached to the exception chain, if any."""
    for e in _walk_exception_chain(exc):
        body = getattr(e, "body", None)
        if isinstance(body, str) and body:
            return body[:_MAX_BODY_CHARS]
        response = getattr(e, "response", None)
        if isinstance(response, httpx.Response):
            try:
                text = response.text
            except httpx.ResponseNotRead:
                continue
            if text:
                return text[:_MAX_BODY_CHARS]
    return None


def _is_network_failure(exc: BaseException) -> tuple[bool, bool]:
    """Return ``(is_network, is_timeout)`` for the exception chain."""
    for e in _walk_exception_chain(exc):
        if isinstance(e, (httpx.TimeoutException, TimeoutError)):
            return True, True
        if isinstance(e, httpx.RequestError):
            return True, False
    return False, False


def _auth_hint(status_code: int | None) -> str | None:
    if status_code in {401, 403}:
        return "Check the provider's API key and permissions."
    return None


def wrap_transport_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
    message: str | None = None,
    hint: str | None = None,
) -> CastorError:
    """Map transport/SDK exceptions into ``APIError`` or ``NetworkError``."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already wrapped: fill in missing context only.
    if isinstance(exc, (APIError, NetworkError)):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        if hint is not None and exc.hint is None:
            exc.hint = hint
        return exc
    if isinstance(exc, CastorError):
        return exc

    msg = message or f"{provider} {phase} failed"
    cause = str(exc)

    status_code = extract_status_code(exc)
    if status_code is None:
        is_network, is_timeout = _is_network_failure(exc)
        if is_network:
            return NetworkError(
                f"{msg}: {cause}" if cause else msg,
                hint=hint,
                provider=provider,
                phase=phase,
                timeout=is_timeout,
            )

    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    return APIError(
        f"{msg}{status_note}: {cause}" if cause else f"{msg}{status_note}",
        hint=hint if hint is not None else _auth_hint(status_code),
        status_code=status_code,
        body=extract_body(exc),
        retryable=status_code in RETRYABLE_STATUS_CODES if status_code else None,
        provider=provider,
        phase=phase,
    )
