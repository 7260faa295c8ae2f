"""Generation orchestrator: the multi-step request/tool loop.

Each step sends the running history to the provider. When the model asks for
tools, they run sequentially in issuing order, their results are appended as
``tool`` messages, and the loop continues until the model stops calling tools,
the finish reason is terminal, or ``max_steps`` is reached.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import replace
import logging
from typing import TYPE_CHECKING, Any

from castor.config import Config
from castor.errors import (
    InvalidInputError,
    NetworkError,
    ToolExecutionError,
    UnsupportedOperationError,
)
from castor.providers.models import ProviderRequest
from castor.repair import decode_json
from castor.stop import truncate_at_stop
from castor.tools import ToolExecutionContext
from castor.types import (
    FinishReason,
    GenerateObjectResult,
    GenerateTextResult,
    GenerationSettings,
    GenerationStep,
    ImagePart,
    Message,
    ToolResult,
    Usage,
    check_tool_linkage,
)
from castor.usage import OperationKind, UsageTracker, tracked_session

if TYPE_CHECKING:
    from pathlib import Path

    from castor.providers.base import Provider
    from castor.providers.models import ProviderResponse
    from castor.tools import Tool
    from castor.types import ToolCall

logger = logging.getLogger(__name__)

_CONTINUE_REASONS = frozenset({FinishReason.TOOL_CALLS, FinishReason.STOP})


async def generate_text(
    provider: Provider,
    messages: Sequence[Message],
    *,
    tools: Sequence[Tool] | None = None,
    settings: GenerationSettings | None = None,
    max_steps: int | None = None,
    timeout_s: float | None = None,
    tracker: UsageTracker | None = None,
    session_id: str | None = None,
    config: Config | None = None,
) -> GenerateTextResult:
    """Run the request/tool loop and return the final text with its audit trail.

    Args:
        provider: Backend to call; wrap it with :func:`castor.providers.adapt`
            first to normalize backend quirks.
        messages: Conversation history. Tool messages must answer tool calls
            issued by an earlier assistant message.
        tools: Tools the model may call.
        settings: Generation settings; ``stop_condition`` is applied to the
            final text.
        max_steps: Loop bound. Defaults to ``config.max_steps`` (1).
        timeout_s: Per provider call timeout. Defaults to ``config.timeout_s``.
        tracker: Usage tracker; one record of the accumulated usage is made.
        session_id: Existing tracker session to record into. The caller owns
            its lifecycle.
        config: Runtime defaults. Resolved from the environment when omitted.

    Returns:
        GenerateTextResult whose ``messages`` is the full resulting history.

    Raises:
        InvalidInputError: Broken tool linkage or ``max_steps`` below 1.
        NetworkError: A provider call exceeded ``timeout_s``.
        CastorError: Provider errors propagate unchanged.

    Example:
        result = await generate_text(
            adapt(provider),
            [Message.user("What's the weather in Paris?")],
            tools=[weather],
            max_steps=3,
        )
        print(result.text)
    """
    operation = OperationKind.TOOL_CALL if tools else OperationKind.TEXT_GENERATION
    return await _generate_text(
        provider,
        messages,
        tools=tools,
        settings=settings,
        max_steps=max_steps,
        timeout_s=timeout_s,
        tracker=tracker,
        session_id=session_id,
        config=config,
        operation=operation,
    )


async def _generate_text(
    provider: Provider,
    messages: Sequence[Message],
    *,
    tools: Sequence[Tool] | None,
    settings: GenerationSettings | None,
    max_steps: int | None,
    timeout_s: float | None,
    tracker: UsageTracker | None,
    session_id: str | None,
    config: Config | None,
    operation: OperationKind,
) -> GenerateTextResult:
    cfg = config or Config()
    settings = settings or GenerationSettings()
    steps_limit = max_steps if max_steps is not None else cfg.max_steps or 1
    if steps_limit < 1:
        raise InvalidInputError(
            f"max_steps must be ≥ 1, got {steps_limit}",
            hint="Use max_steps=1 for a single request without a tool loop.",
        )
    call_timeout = timeout_s if timeout_s is not None else cfg.timeout_s
    check_tool_linkage(messages)

    # First registration wins when two tools share a name.
    by_name: dict[str, Tool] = {}
    for t in tools or ():
        by_name.setdefault(t.name, t)
    tool_specs = tuple(tools) if tools else None

    history: list[Message] = list(messages)
    steps: list[GenerationStep] = []
    total: Usage | None = None

    with tracked_session(
        tracker, model_id=provider.model_id, session_id=session_id
    ) as session:
        try:
            for step_index in range(steps_limit):
                request = ProviderRequest(
                    messages=tuple(history), tools=tool_specs, settings=settings
                )
                response = await _call_provider(provider, request, call_timeout)
                if response.usage is not None:
                    total = response.usage if total is None else total + response.usage

                calls = tuple(response.tool_calls or ())
                step = GenerationStep(
                    index=step_index,
                    text=response.text,
                    tool_calls=calls,
                    usage=response.usage,
                    finish_reason=response.finish_reason,
                )
                steps.append(step)
                logger.debug(
                    "Step %d finished: reason=%s tool_calls=%d",
                    step_index,
                    response.finish_reason,
                    len(calls),
                )

                history.append(Message.assistant(response.text, tool_calls=calls))
                if not calls:
                    break

                results: list[ToolResult] = []
                for call in calls:
                    tool = by_name.get(call.name)
                    if tool is None:
                        logger.debug(
                            "No tool named %r; skipping call %s", call.name, call.id
                        )
                        continue
                    if cfg.verbose:
                        logger.debug(
                            "Executing tool %r with %r", call.name, dict(call.arguments)
                        )
                    context = ToolExecutionContext(
                        messages=tuple(history),
                        model_id=provider.model_id,
                        settings=settings,
                        session_id=session.session_id,
                        step_index=step_index,
                        tool_call_id=call.id,
                    )
                    try:
                        value = await _execute_tool(tool, call, context)
                    except ToolExecutionError as e:
                        logger.debug("Tool %r failed: %s", call.name, e)
                        result = ToolResult.failure(call.id, str(e))
                    else:
                        result = ToolResult.success(call.id, value)
                    results.append(result)
                    history.append(Message.tool(result))

                steps[step_index] = replace(step, tool_results=tuple(results))

                if response.finish_reason not in _CONTINUE_REASONS:
                    break
        finally:
            # Usage from completed steps is recorded even when a later step fails.
            if total is not None:
                session.record(total, operation)

    last = steps[-1]
    text = last.text
    finish_reason = last.finish_reason or FinishReason.OTHER

    condition = settings.stop_condition
    if condition is not None:
        condition.reset()
        if condition.should_stop(text, None):
            text, hit_limit = truncate_at_stop(text, condition)
            finish_reason = FinishReason.LENGTH if hit_limit else FinishReason.STOP

    return GenerateTextResult(
        text=text,
        usage=total or Usage(),
        finish_reason=finish_reason,
        steps=tuple(steps),
        messages=tuple(history),
    )


async def _call_provider(
    provider: Provider,
    request: ProviderRequest,
    timeout_s: float | None,
) -> ProviderResponse:
    if timeout_s is None:
        return await provider.generate(request)
    try:
        async with asyncio.timeout(timeout_s) as cm:
            return await provider.generate(request)
    except TimeoutError as e:
        if not cm.expired():
            raise
        raise NetworkError(
            f"Provider call timed out after {timeout_s}s",
            hint="Raise timeout_s or check backend latency.",
            provider=provider.model_id,
            phase="generate",
            timeout=True,
        ) from e


async def _execute_tool(tool: Tool, call: ToolCall, context: ToolExecutionContext) -> Any:
    try:
        return await tool.execute(call.arguments, context=context)
    except Exception as e:
        raise ToolExecutionError(
            str(e) or type(e).__name__,
            tool_name=call.name,
            tool_call_id=call.id,
        ) from e


# =============================================================================
# Structured output and conveniences
# =============================================================================


async def generate_object[T](
    provider: Provider,
    messages: Sequence[Message],
    schema: type[T] | Any,
    *,
    settings: GenerationSettings | None = None,
    timeout_s: float | None = None,
    tracker: UsageTracker | None = None,
    session_id: str | None = None,
    config: Config | None = None,
) -> GenerateObjectResult[T]:
    """Request JSON output and decode it strictly against *schema*.

    *schema* is a pydantic model class or any type ``pydantic.TypeAdapter``
    accepts (dataclasses, ``TypedDict``, ``list[int]``...).

    Raises:
        InvalidInputError: The response is not valid JSON for *schema*.
    """
    cfg = config or Config()
    settings = replace(settings or GenerationSettings(), output_format="json")
    check_tool_linkage(messages)
    request = ProviderRequest(
        messages=tuple(messages), settings=settings, output_format="json"
    )
    call_timeout = timeout_s if timeout_s is not None else cfg.timeout_s

    with tracked_session(
        tracker, model_id=provider.model_id, session_id=session_id
    ) as session:
        response = await _call_provider(provider, request, call_timeout)
        if response.usage is not None:
            session.record(response.usage, OperationKind.OBJECT_GENERATION)

    obj = decode_json(response.text, schema)
    if obj is None:
        raise InvalidInputError(
            "Failed to decode structured output",
            hint="The model did not return valid JSON for the requested schema.",
        )
    return GenerateObjectResult(
        object=obj,
        usage=response.usage,
        finish_reason=response.finish_reason or FinishReason.OTHER,
    )


async def generate(
    provider: Provider,
    prompt: str,
    *,
    system: str | None = None,
    max_tokens: int | None = None,
    temperature: float | None = None,
    timeout_s: float | None = None,
    tracker: UsageTracker | None = None,
    config: Config | None = None,
) -> str:
    """Single-prompt convenience returning only the text."""
    messages = [Message.system(system)] if system else []
    messages.append(Message.user(prompt))
    result = await generate_text(
        provider,
        messages,
        settings=GenerationSettings(max_tokens=max_tokens, temperature=temperature),
        timeout_s=timeout_s,
        tracker=tracker,
        config=config,
    )
    return result.text


async def analyze_image(
    provider: Provider,
    image: ImagePart | str | Path,
    prompt: str,
    *,
    settings: GenerationSettings | None = None,
    timeout_s: float | None = None,
    tracker: UsageTracker | None = None,
    session_id: str | None = None,
    config: Config | None = None,
) -> str:
    """Ask a vision-capable model about one image.

    Args:
        image: An :class:`ImagePart`, or a path to a local image file.

    Raises:
        UnsupportedOperationError: The provider does not accept images.
        InvalidInputError: The image file does not exist.
    """
    if not provider.capabilities.supports_vision:
        raise UnsupportedOperationError(
            f"Model {provider.model_id} does not support vision",
            hint="Choose a vision-capable model for image analysis.",
            feature="vision_inputs",
        )
    part = image if isinstance(image, ImagePart) else ImagePart.from_file(image)
    result = await _generate_text(
        provider,
        [Message.user(prompt, images=[part])],
        tools=None,
        settings=settings,
        max_steps=1,
        timeout_s=timeout_s,
        tracker=tracker,
        session_id=session_id,
        config=config,
        operation=OperationKind.IMAGE_ANALYSIS,
    )
    return result.text
