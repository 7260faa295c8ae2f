"""Mock provider for testing."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from castor.providers.base import ModelCapabilities
from castor.providers.models import ProviderRequest, ProviderResponse
from castor.types import FinishReason, TextStreamDelta, Usage

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class MockProvider:
    """Mock provider for testing without API calls.

    Echoes the last user message. With ``output_format="json"`` it wraps the
    echo in a JSON object so structured-output recipes stay runnable.
    """

    def __init__(
        self,
        model_id: str = "mock-model",
        *,
        capabilities: ModelCapabilities | None = None,
        base_url: str | None = None,
    ) -> None:
        self._model_id = model_id
        self._capabilities = capabilities or ModelCapabilities(supports_vision=True)
        self._base_url = base_url

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def base_url(self) -> str | None:
        return self._base_url

    @property
    def api_key(self) -> str | None:
        return None

    @property
    def capabilities(self) -> ModelCapabilities:
        return self._capabilities

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        """Return a deterministic echo response."""
        text = self._reply(request)
        return ProviderResponse(
            text=text,
            usage=self._usage(request, text),
            finish_reason=FinishReason.STOP,
        )

    async def stream(self, request: ProviderRequest) -> AsyncIterator[TextStreamDelta]:
        """Stream the echo word by word."""
        text = self._reply(request)
        words = text.split(" ")
        for i, word in enumerate(words):
            yield TextStreamDelta.text(word if i == len(words) - 1 else f"{word} ")
        yield TextStreamDelta.done(
            usage=self._usage(request, text), finish_reason=FinishReason.STOP
        )

    def _reply(self, request: ProviderRequest) -> str:
        prompt = next(
            (m.text for m in reversed(request.messages) if m.role == "user"), ""
        )
        if request.output_format == "json":
            return json.dumps({"echo": prompt[:100]})
        return f"echo: {prompt[:100]}"

    @staticmethod
    def _usage(request: ProviderRequest, text: str) -> Usage:
        prompt_chars = sum(len(m.text) for m in request.messages)
        return Usage(
            input_tokens=max(1, prompt_chars // 4), output_tokens=max(1, len(text) // 4)
        )
