"""Configuration: frozen runtime defaults with environment overrides."""

from __future__ import annotations

from dataclasses import dataclass
import os

from dotenv import load_dotenv

from castor.errors import ConfigurationError

load_dotenv()

_TRUTHY = frozenset({"1", "true", "yes", "on"})


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be an integer, got {raw!r}",
            hint=f"Unset {name} or set it to a whole number.",
        ) from e


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be a number, got {raw!r}",
            hint=f"Unset {name} or set it to a number of seconds.",
        ) from e


@dataclass(frozen=True)
class Config:
    """Immutable runtime defaults for Castor calls.

    Fields left as *None* resolve from ``CASTOR_*`` environment variables
    (a ``.env`` file is honored), then fall back to built-in defaults.

    Example:
        config = Config(max_steps=4)
        result = await generate_text(provider, messages, tools=tools, config=config)
    """

    #: Tool-calling loop bound. ``CASTOR_MAX_STEPS``; default 1.
    max_steps: int | None = None
    #: Per provider call timeout. ``CASTOR_TIMEOUT_S``; default none.
    timeout_s: float | None = None
    #: Words per chunk when simulating a stream. ``CASTOR_STREAM_CHUNK_WORDS``.
    stream_chunk_words: int | None = None
    #: Pause between simulated chunks. ``CASTOR_STREAM_CHUNK_DELAY_S``.
    stream_chunk_delay_s: float | None = None
    #: Log tool-call arguments at debug level. ``CASTOR_VERBOSE``.
    verbose: bool | None = None

    def __post_init__(self) -> None:
        """Resolve unset fields from the environment and validate."""
        if self.max_steps is None:
            steps = _env_int("CASTOR_MAX_STEPS")
            object.__setattr__(self, "max_steps", 1 if steps is None else steps)
        if self.timeout_s is None:
            object.__setattr__(self, "timeout_s", _env_float("CASTOR_TIMEOUT_S"))
        if self.stream_chunk_words is None:
            words = _env_int("CASTOR_STREAM_CHUNK_WORDS")
            object.__setattr__(
                self, "stream_chunk_words", 20 if words is None else words
            )
        if self.stream_chunk_delay_s is None:
            delay = _env_float("CASTOR_STREAM_CHUNK_DELAY_S")
            object.__setattr__(
                self, "stream_chunk_delay_s", 0.05 if delay is None else delay
            )
        if self.verbose is None:
            raw = os.environ.get("CASTOR_VERBOSE", "")
            object.__setattr__(self, "verbose", raw.strip().lower() in _TRUTHY)

        if self.max_steps is not None and self.max_steps < 1:
            raise ConfigurationError(
                f"max_steps must be ≥ 1, got {self.max_steps}",
                hint="This bounds how many request/tool rounds one call may run.",
            )
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ConfigurationError(
                f"timeout_s must be > 0, got {self.timeout_s}",
                hint="Leave timeout_s unset to wait indefinitely.",
            )
        if self.stream_chunk_words is not None and self.stream_chunk_words < 1:
            raise ConfigurationError(
                f"stream_chunk_words must be ≥ 1, got {self.stream_chunk_words}",
                hint="This controls how simulated streams are chunked.",
            )
        if self.stream_chunk_delay_s is not None and self.stream_chunk_delay_s < 0:
            raise ConfigurationError(
                f"stream_chunk_delay_s must be ≥ 0, got {self.stream_chunk_delay_s}",
                hint="Use 0 to emit simulated chunks without pausing.",
            )
