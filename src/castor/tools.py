"""Tool contract and a callable-backed implementation."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
import inspect
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from castor.types import GenerationSettings, Message


@dataclass(frozen=True)
class ToolExecutionContext:
    """What a tool can see about the call that invoked it."""

    messages: tuple[Message, ...]
    model_id: str
    settings: GenerationSettings
    session_id: str
    step_index: int
    tool_call_id: str


@runtime_checkable
class Tool(Protocol):
    """A named capability the model may call.

    ``execute`` may raise anything; the orchestrator converts failures into
    error results instead of aborting the loop.
    """

    @property
    def name(self) -> str: ...  # noqa: D102

    @property
    def description(self) -> str: ...  # noqa: D102

    @property
    def parameters(self) -> Mapping[str, Any]: ...  # noqa: D102

    async def execute(  # noqa: D102
        self,
        arguments: Mapping[str, Any],
        *,
        context: ToolExecutionContext,
    ) -> Any: ...


@dataclass(frozen=True)
class FunctionTool:
    """Tool backed by a plain or async function.

    The function receives the argument mapping, plus the execution context when
    ``takes_context`` is set.
    """

    name: str
    fn: Callable[..., Any]
    description: str = ""
    #: JSON Schema for the arguments object.
    parameters: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    takes_context: bool = False

    async def execute(
        self,
        arguments: Mapping[str, Any],
        *,
        context: ToolExecutionContext,
    ) -> Any:
        if self.takes_context:
            result = self.fn(arguments, context)
        else:
            result = self.fn(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


def tool(
    name: str | None = None,
    *,
    description: str | None = None,
    parameters: Mapping[str, Any] | None = None,
    takes_context: bool = False,
) -> Callable[[Callable[..., Any]], FunctionTool]:
    """Decorator building a :class:`FunctionTool` from a function.

    Example:
        @tool(parameters={"type": "object", "properties": {"city": {"type": "string"}}})
        async def weather(args):
            return {"city": args["city"], "forecast": "sunny"}
    """

    def wrap(fn: Callable[..., Any]) -> FunctionTool:
        return FunctionTool(
            name=name or fn.__name__,
            fn=fn,
            description=description
            if description is not None
            else inspect.getdoc(fn) or "",
            parameters=parameters
            if parameters is not None
            else {"type": "object", "properties": {}},
            takes_context=takes_context,
        )

    return wrap
