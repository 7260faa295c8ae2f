"""Provider contract, adaptation layer, and the mock backend."""

from .adapter import (
    ANTHROPIC,
    DEFAULT,
    GOOGLE,
    OLLAMA,
    OPENAI,
    ProviderAdapter,
    ProviderConfiguration,
    ProviderFeature,
    adapt,
    detect_configuration,
)
from .base import ModelCapabilities, Provider
from .mock import MockProvider
from .models import ProviderRequest, ProviderResponse

__all__ = [
    "ANTHROPIC",
    "DEFAULT",
    "GOOGLE",
    "OLLAMA",
    "OPENAI",
    "MockProvider",
    "ModelCapabilities",
    "Provider",
    "ProviderAdapter",
    "ProviderConfiguration",
    "ProviderFeature",
    "ProviderRequest",
    "ProviderResponse",
    "adapt",
    "detect_configuration",
]
