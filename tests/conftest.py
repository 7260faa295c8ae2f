"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration, the shared provider
double, and automatic API test skipping. All fixtures here are autouse unless
noted.
"""

from __future__ import annotations

from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os

import pytest

from castor.providers.base import ModelCapabilities
from castor.providers.models import ProviderRequest, ProviderResponse
from castor.types import FinishReason, TextStreamDelta, Usage

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class FakeProvider:
    """Provider test double for orchestration behavior verification.

    Records every request and returns a fixed response. ``stream`` yields the
    same text word by word followed by ``done``.
    """

    model_id: str = "fake-model"
    base_url: str | None = None
    api_key: str | None = None
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)
    text: str = "ok"
    usage: Usage | None = field(
        default_factory=lambda: Usage(input_tokens=10, output_tokens=5)
    )
    requests: list[ProviderRequest] = field(default_factory=list)

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        self.requests.append(request)
        return ProviderResponse(
            text=self.text, usage=self.usage, finish_reason=FinishReason.STOP
        )

    async def stream(self, request: ProviderRequest):
        self.requests.append(request)
        words = self.text.split(" ")
        for i, word in enumerate(words):
            yield TextStreamDelta.text(word if i == len(words) - 1 else f"{word} ")
        yield TextStreamDelta.done(usage=self.usage, finish_reason=FinishReason.STOP)


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_castor_env(request, monkeypatch):
    """Ensure a clean CASTOR_* environment for each test.

    Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.api
    """
    if request.node.get_closest_marker("allow_env_pollution") or (
        "api" in request.node.keywords
    ):
        return

    for key in list(os.environ.keys()):
        if key.startswith("CASTOR_"):
            monkeypatch.delenv(key, raising=False)
    # Simulated streams pause between chunks; tests run them without delay.
    monkeypatch.setenv("CASTOR_STREAM_CHUNK_DELAY_S", "0")


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# Shared Fixtures
# =============================================================================


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()
