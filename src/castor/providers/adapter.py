"""Provider adaptation: normalize requests against a per-backend profile.

``ProviderAdapter`` wraps any :class:`~castor.providers.base.Provider` and
presents the same contract while hiding backend quirks: missing system role,
strict role alternation, missing vision or streaming support, tool limits.
The profile is fixed when the adapter is built, either explicitly or by
best-effort detection from the model id and base URL.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum
from itertools import groupby
import logging
from types import MappingProxyType
from typing import TYPE_CHECKING, Final

from castor._streams import chunk_words
from castor.config import Config
from castor.errors import ConfigurationError, InvalidInputError, UnsupportedOperationError
from castor.types import (
    ContentPart,
    FinishReason,
    ImagePart,
    Message,
    TextPart,
    TextStreamDelta,
)

if TYPE_CHECKING:
    from castor.providers.base import ModelCapabilities, Provider
    from castor.providers.models import ProviderRequest, ProviderResponse

logger = logging.getLogger(__name__)

_MB: Final = 1024 * 1024
_LONG_CONTEXT_THRESHOLD: Final = 100_000
_SYSTEM_PREFIX: Final = "System: "


class ProviderFeature(StrEnum):
    STREAMING = "streaming"
    TOOL_CALLING = "tool_calling"
    SYSTEM_MESSAGES = "system_messages"
    VISION_INPUTS = "vision_inputs"
    MULTI_MODAL = "multi_modal"
    JSON_MODE = "json_mode"
    FUNCTION_CALLING = "function_calling"
    PARALLEL_TOOL_CALLS = "parallel_tool_calls"
    CONTEXT_CACHING = "context_caching"
    LONG_CONTEXT = "long_context"


@dataclass(frozen=True)
class ProviderConfiguration:
    """Static normalization rules and limits for one backend."""

    max_tokens: int = 4096
    max_context_length: int = 128_000
    supported_image_formats: frozenset[str] = frozenset({"jpeg", "png", "gif", "webp"})
    #: Approximate decoded bytes; *None* disables the size check.
    max_image_size: int | None = 20 * _MB
    max_tool_calls: int = 10
    supports_system_role: bool = True
    requires_alternating_roles: bool = False
    custom_headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze collections and validate limits."""
        object.__setattr__(
            self,
            "supported_image_formats",
            frozenset(f.lower() for f in self.supported_image_formats),
        )
        object.__setattr__(
            self, "custom_headers", MappingProxyType(dict(self.custom_headers))
        )
        if self.max_tokens < 1:
            raise ConfigurationError(
                f"max_tokens must be ≥ 1, got {self.max_tokens}",
                hint="Use the backend's documented output token limit.",
            )
        if self.max_tool_calls < 0:
            raise ConfigurationError(
                f"max_tool_calls must be ≥ 0, got {self.max_tool_calls}",
                hint="Use 0 for backends without tool support.",
            )
        if self.max_image_size is not None and self.max_image_size < 0:
            raise ConfigurationError(
                f"max_image_size must be ≥ 0 or None, got {self.max_image_size}",
                hint="Pass max_image_size=None to skip the size check.",
            )


OPENAI = ProviderConfiguration(max_tokens=4096, max_context_length=128_000)
ANTHROPIC = ProviderConfiguration(
    max_tokens=4096,
    max_context_length=200_000,
    requires_alternating_roles=True,
)
GOOGLE = ProviderConfiguration(
    max_tokens=8192,
    max_context_length=1_048_576,
    supports_system_role=False,
    requires_alternating_roles=True,
)
OLLAMA = ProviderConfiguration(
    max_tokens=2048,
    max_context_length=32_000,
    max_tool_calls=0,
)
DEFAULT = ProviderConfiguration()


def detect_configuration(model_id: str, base_url: str | None = None) -> ProviderConfiguration:
    """Guess a profile from the model id and base URL.

    Best-effort: substring matching only. Pass an explicit profile whenever
    the backend is known.
    """
    model = model_id.lower()
    url = (base_url or "").lower()
    if "gpt" in model or "openai" in url:
        return OPENAI
    if "claude" in model or "anthropic" in url:
        return ANTHROPIC
    if "gemini" in model or "google" in url:
        return GOOGLE
    if "localhost" in url or "ollama" in url:
        return OLLAMA
    return DEFAULT


# =============================================================================
# Message normalization
# =============================================================================


def transform_system_messages(messages: Sequence[Message]) -> list[Message]:
    """Rewrite ``system`` messages as ``user`` messages prefixed ``System: ``."""
    out: list[Message] = []
    for message in messages:
        if message.role != "system":
            out.append(message)
            continue
        parts = list(message.content)
        for i, part in enumerate(parts):
            if isinstance(part, TextPart):
                parts[i] = TextPart(f"{_SYSTEM_PREFIX}{part.text}")
                break
        else:
            parts.insert(0, TextPart(_SYSTEM_PREFIX.rstrip()))
        out.append(replace(message, role="user", content=tuple(parts)))
    return out


def merge_consecutive_roles(messages: Sequence[Message]) -> list[Message]:
    """Merge runs of same-role messages, keeping the first message's identity."""
    merged: list[Message] = []
    for _, group in groupby(messages, key=lambda m: m.role):
        run = list(group)
        first = run[0]
        if len(run) == 1:
            merged.append(first)
            continue
        content: tuple[ContentPart, ...] = tuple(p for m in run for p in m.content)
        merged.append(replace(first, content=content))
    return merged


def strip_images(messages: Sequence[Message]) -> list[Message]:
    out: list[Message] = []
    for message in messages:
        if any(isinstance(p, ImagePart) for p in message.content):
            kept = tuple(p for p in message.content if not isinstance(p, ImagePart))
            message = replace(message, content=kept)
        out.append(message)
    return out


def validate_image_url(url: str, profile: ProviderConfiguration) -> None:
    """Check a ``data:`` image URL against the profile; other URLs pass.

    Raises:
        InvalidInputError: Malformed data URL, unsupported format, or payload
            larger than ``profile.max_image_size``.
    """
    if not url.startswith("data:"):
        return
    components = url.split(",", 1)
    if len(components) != 2:
        raise InvalidInputError(
            "Invalid image data URL",
            hint="Expected 'data:image/<format>;base64,<payload>'.",
        )
    metadata, payload = components
    fmt = metadata.replace("data:image/", "").replace(";base64", "").lower()
    if fmt not in profile.supported_image_formats:
        raise InvalidInputError(
            f"Unsupported image format: {fmt}",
            hint=f"Supported formats: {', '.join(sorted(profile.supported_image_formats))}",
        )
    if profile.max_image_size is not None:
        size = len(payload) * 3 // 4
        if size > profile.max_image_size:
            raise InvalidInputError(
                f"Image size exceeds limit: {size} > {profile.max_image_size}",
                hint="Downscale or recompress the image before sending it.",
            )


# =============================================================================
# Adapter
# =============================================================================


class ProviderAdapter:
    """Provider wrapper enforcing a :class:`ProviderConfiguration`.

    Args:
        provider: The raw backend.
        profile: Normalization profile; detected from ``provider.model_id`` and
            ``provider.base_url`` when omitted.
        config: Runtime defaults (simulated stream chunking and pacing).
    """

    def __init__(
        self,
        provider: Provider,
        profile: ProviderConfiguration | None = None,
        *,
        config: Config | None = None,
    ) -> None:
        self._provider = provider
        self.profile = (
            profile
            if profile is not None
            else detect_configuration(provider.model_id, provider.base_url)
        )
        self._config = config or Config()

    @property
    def model_id(self) -> str:
        return self._provider.model_id

    @property
    def base_url(self) -> str | None:
        return self._provider.base_url

    @property
    def api_key(self) -> str | None:
        return self._provider.api_key

    @property
    def capabilities(self) -> ModelCapabilities:
        return self._provider.capabilities

    def supports(self, feature: ProviderFeature | str) -> bool:
        """Answer a feature query from capabilities and the active profile."""
        caps = self.capabilities
        match ProviderFeature(feature):
            case ProviderFeature.STREAMING:
                return caps.supports_streaming
            case ProviderFeature.TOOL_CALLING | ProviderFeature.FUNCTION_CALLING:
                return caps.supports_tools
            case ProviderFeature.SYSTEM_MESSAGES:
                return self.profile.supports_system_role
            case ProviderFeature.VISION_INPUTS | ProviderFeature.MULTI_MODAL:
                return caps.supports_vision
            case ProviderFeature.JSON_MODE:
                return caps.supports_json_mode
            case ProviderFeature.PARALLEL_TOOL_CALLS:
                return caps.supports_tools and self.profile.max_tool_calls > 1
            case ProviderFeature.CONTEXT_CACHING:
                return False
            case ProviderFeature.LONG_CONTEXT:
                return self.profile.max_context_length > _LONG_CONTEXT_THRESHOLD

    def validate_messages(self, messages: Sequence[Message]) -> list[Message]:
        """Return a normalized copy of *messages*; the input is not mutated."""
        validated = list(messages)
        if not self.profile.supports_system_role:
            validated = transform_system_messages(validated)
        if self.profile.requires_alternating_roles:
            validated = merge_consecutive_roles(validated)
        if not self.capabilities.supports_vision:
            return strip_images(validated)
        for message in validated:
            for part in message.content:
                if isinstance(part, ImagePart):
                    validate_image_url(part.url, self.profile)
        return validated

    def validate_request(self, request: ProviderRequest) -> ProviderRequest:
        messages = self.validate_messages(request.messages)

        tools = request.tools
        if tools:
            if not self.capabilities.supports_tools:
                raise UnsupportedOperationError(
                    "This model doesn't support tool calling",
                    hint="Remove tools or choose a backend with tool support.",
                    feature=ProviderFeature.TOOL_CALLING.value,
                )
            if len(tools) > self.profile.max_tool_calls:
                logger.debug(
                    "Truncating %d tool(s) to profile limit %d",
                    len(tools),
                    self.profile.max_tool_calls,
                )
                tools = tools[: self.profile.max_tool_calls]

        settings = request.settings
        if settings.max_tokens is not None and settings.max_tokens > self.profile.max_tokens:
            settings = replace(settings, max_tokens=self.profile.max_tokens)

        headers = request.headers
        if self.profile.custom_headers:
            headers = {**self.profile.custom_headers, **request.headers}

        return replace(
            request,
            messages=tuple(messages),
            tools=tools,
            settings=settings,
            headers=headers,
        )

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        return await self._provider.generate(self.validate_request(request))

    async def stream(self, request: ProviderRequest) -> AsyncIterator[TextStreamDelta]:
        """Stream deltas, simulating a stream when the backend cannot."""
        if not self.capabilities.supports_streaming:
            async for delta in self._simulate_stream(request):
                yield delta
            return

        upstream = self._provider.stream(self.validate_request(request))
        try:
            async for delta in upstream:
                yield delta
        finally:
            aclose = getattr(upstream, "aclose", None)
            if callable(aclose):
                await aclose()

    async def _simulate_stream(
        self, request: ProviderRequest
    ) -> AsyncIterator[TextStreamDelta]:
        response = await self.generate(request)
        chunks = chunk_words(response.text, self._config.stream_chunk_words or 20)
        logger.debug(
            "Simulating stream for %s with %d chunk(s)", self.model_id, len(chunks)
        )
        delay = self._config.stream_chunk_delay_s or 0.0
        for i, chunk in enumerate(chunks):
            yield TextStreamDelta.text(chunk)
            if delay and i < len(chunks) - 1:
                await asyncio.sleep(delay)
        yield TextStreamDelta.done(
            usage=response.usage,
            finish_reason=response.finish_reason or FinishReason.STOP,
        )


def adapt(
    provider: Provider,
    profile: ProviderConfiguration | None = None,
    *,
    config: Config | None = None,
) -> ProviderAdapter:
    """Wrap *provider* with feature-parity normalization."""
    return ProviderAdapter(provider, profile, config=config)
