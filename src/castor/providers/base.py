"""Provider protocol: the capability-typed contract every backend satisfies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from castor.providers.models import ProviderRequest, ProviderResponse
    from castor.types import TextStreamDelta


@dataclass(frozen=True)
class ModelCapabilities:
    """Static feature flags reported by a backend."""

    supports_streaming: bool = True
    supports_tools: bool = True
    supports_vision: bool = False
    supports_json_mode: bool = False


@runtime_checkable
class Provider(Protocol):
    """Minimal provider protocol: generate, stream, capabilities.

    ``stream`` is typically an ``async def`` generator; closing the returned
    iterator must stop any underlying transport work.
    """

    @property
    def model_id(self) -> str:
        """Backend model identifier."""
        ...

    @property
    def base_url(self) -> str | None:
        """Endpoint base URL, when the backend has one."""
        ...

    @property
    def api_key(self) -> str | None:
        """Credential in use; never resolved by Castor itself."""
        ...

    @property
    def capabilities(self) -> ModelCapabilities:
        """Feature flags for capability-aware adaptation."""
        ...

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        """Generate a complete response."""
        ...

    def stream(self, request: ProviderRequest) -> AsyncIterator[TextStreamDelta]:
        """Stream response deltas, ending with a ``done`` delta."""
        ...
