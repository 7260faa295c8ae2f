"""Wire-neutral request/response shapes exchanged with providers."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from castor.types import GenerationSettings

if TYPE_CHECKING:
    from castor.tools import Tool
    from castor.types import FinishReason, Message, OutputFormat, ToolCall, Usage


@dataclass(frozen=True)
class ProviderRequest:
    """A unified request payload for a provider call."""

    messages: tuple[Message, ...]
    tools: tuple[Tool, ...] | None = None
    settings: GenerationSettings = field(default_factory=GenerationSettings)
    output_format: OutputFormat | None = None
    #: Extra transport headers contributed by the adaptation profile.
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass
class ProviderResponse:
    """A standardized response from a provider generation call."""

    text: str = ""
    usage: Usage | None = None
    finish_reason: FinishReason | None = None
    tool_calls: list[ToolCall] | None = None
    raw: Any = None
