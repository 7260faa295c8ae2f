"""Castor: provider-agnostic text, tool-calling, and streaming generation.

Public API:
    - generate_text(): Multi-step generation with tool execution
    - stream_text(): Tracked, cancellable delta streams
    - stream_object() / generate_object(): Typed structured output
    - adapt(): Normalize a provider against a backend profile
    - Message, GenerationSettings: Request building blocks
    - Config: Runtime defaults
"""

from __future__ import annotations

import logging

from castor.config import Config
from castor.errors import (
    APIError,
    CastorError,
    ConfigurationError,
    InvalidInputError,
    NetworkError,
    ToolExecutionError,
    UnsupportedOperationError,
)
from castor.generation import analyze_image, generate, generate_object, generate_text
from castor.providers import (
    MockProvider,
    ModelCapabilities,
    Provider,
    ProviderAdapter,
    ProviderConfiguration,
    ProviderFeature,
    adapt,
)
from castor.repair import StreamObjectResult, parse_partial, repair_json, stream_object
from castor.stop import (
    PredicateStopCondition,
    RegexStopCondition,
    StopCondition,
    StringStopCondition,
    TimeoutStopCondition,
    TokenCountStopCondition,
    stop_when,
)
from castor.streaming import StreamTextResult, stream, stream_text
from castor.tools import FunctionTool, Tool, ToolExecutionContext, tool
from castor.types import (
    Cost,
    DeltaType,
    FinishReason,
    GenerateObjectResult,
    GenerateTextResult,
    GenerationSettings,
    GenerationStep,
    ImagePart,
    Message,
    ObjectDeltaType,
    ObjectStreamDelta,
    TextPart,
    TextStreamDelta,
    ToolCall,
    ToolCallPart,
    ToolResult,
    ToolResultPart,
    Usage,
)
from castor.usage import (
    InMemoryUsageTracker,
    NullUsageTracker,
    OperationKind,
    UsageTracker,
    tracked_session,
)

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("castor-ai")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("castor").addHandler(logging.NullHandler())

__all__ = [
    "APIError",
    "CastorError",
    "Config",
    "ConfigurationError",
    "Cost",
    "DeltaType",
    "FinishReason",
    "FunctionTool",
    "GenerateObjectResult",
    "GenerateTextResult",
    "GenerationSettings",
    "GenerationStep",
    "ImagePart",
    "InMemoryUsageTracker",
    "InvalidInputError",
    "Message",
    "MockProvider",
    "ModelCapabilities",
    "NetworkError",
    "NullUsageTracker",
    "ObjectDeltaType",
    "ObjectStreamDelta",
    "OperationKind",
    "PredicateStopCondition",
    "Provider",
    "ProviderAdapter",
    "ProviderConfiguration",
    "ProviderFeature",
    "RegexStopCondition",
    "StopCondition",
    "StreamObjectResult",
    "StreamTextResult",
    "StringStopCondition",
    "TextPart",
    "TextStreamDelta",
    "TimeoutStopCondition",
    "TokenCountStopCondition",
    "Tool",
    "ToolCall",
    "ToolCallPart",
    "ToolExecutionContext",
    "ToolExecutionError",
    "ToolResult",
    "ToolResultPart",
    "UnsupportedOperationError",
    "Usage",
    "UsageTracker",
    "adapt",
    "analyze_image",
    "generate",
    "generate_object",
    "generate_text",
    "parse_partial",
    "repair_json",
    "stop_when",
    "stream",
    "stream_object",
    "stream_text",
    "tool",
    "tracked_session",
]
