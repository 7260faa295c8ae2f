"""Provider adaptation contract tests.

These pin the normalization a profile applies before a request reaches the
backend: role rewrites, merges, image handling, tool limits, settings
clamping, and the simulated stream for backends without streaming.
"""

from __future__ import annotations

import pytest

from castor.config import Config
from castor.errors import InvalidInputError, UnsupportedOperationError
from castor.providers import (
    ANTHROPIC,
    DEFAULT,
    GOOGLE,
    OLLAMA,
    OPENAI,
    ModelCapabilities,
    Provider,
    ProviderAdapter,
    ProviderConfiguration,
    ProviderFeature,
    ProviderRequest,
    adapt,
    detect_configuration,
)
from castor.tools import FunctionTool
from castor.types import (
    DeltaType,
    FinishReason,
    GenerationSettings,
    ImagePart,
    Message,
    TextPart,
    Usage,
)
from tests.conftest import FakeProvider
from tests.helpers import StreamingProvider, text_deltas

pytestmark = pytest.mark.contract


def _tools(n: int) -> tuple[FunctionTool, ...]:
    return tuple(FunctionTool(name=f"t{i}", fn=lambda args: None) for i in range(n))


def _png_data_url(payload_len: int) -> str:
    return "data:image/png;base64," + "A" * payload_len


# =============================================================================
# Profiles and detection
# =============================================================================


def test_presets_carry_documented_limits() -> None:
    assert (OPENAI.max_tokens, OPENAI.max_context_length) == (4096, 128_000)
    assert (ANTHROPIC.max_tokens, ANTHROPIC.max_context_length) == (4096, 200_000)
    assert ANTHROPIC.requires_alternating_roles
    assert (GOOGLE.max_tokens, GOOGLE.max_context_length) == (8192, 1_048_576)
    assert not GOOGLE.supports_system_role
    assert GOOGLE.requires_alternating_roles
    assert (OLLAMA.max_tokens, OLLAMA.max_context_length) == (2048, 32_000)
    assert OLLAMA.max_tool_calls == 0
    assert DEFAULT == ProviderConfiguration()


@pytest.mark.parametrize(
    ("model_id", "base_url", "expected"),
    [
        ("gpt-4o", None, OPENAI),
        ("my-model", "https://api.openai.com/v1", OPENAI),
        ("Claude-3-Opus", None, ANTHROPIC),
        ("gemini-2.0-flash", None, GOOGLE),
        ("llama3", "http://localhost:11434", OLLAMA),
        ("mystery", "https://example.test", DEFAULT),
    ],
)
def test_detect_configuration_matches_substrings(model_id, base_url, expected) -> None:
    assert detect_configuration(model_id, base_url) is expected


def test_adapter_detects_profile_when_not_given() -> None:
    adapter = ProviderAdapter(FakeProvider(model_id="claude-3-haiku"))
    assert adapter.profile is ANTHROPIC


def test_explicit_profile_wins_over_detection() -> None:
    adapter = adapt(FakeProvider(model_id="gpt-4o"), GOOGLE)
    assert adapter.profile is GOOGLE


def test_adapter_satisfies_provider_protocol() -> None:
    adapter = adapt(FakeProvider())
    assert isinstance(adapter, Provider)
    assert adapter.model_id == "fake-model"


# =============================================================================
# Message normalization
# =============================================================================


def test_system_messages_become_prefixed_user_messages() -> None:
    system = Message.system("Be terse.")
    adapter = adapt(FakeProvider(), ProviderConfiguration(supports_system_role=False))

    [rewritten, user] = adapter.validate_messages([system, Message.user("Hi")])

    assert rewritten.role == "user"
    assert rewritten.text == "System: Be terse."
    assert rewritten.id == system.id
    assert user.text == "Hi"


def test_consecutive_same_role_messages_are_merged() -> None:
    first, second = Message.user("a"), Message.user("b")
    reply = Message.assistant("c")
    adapter = adapt(FakeProvider(), ANTHROPIC)

    merged = adapter.validate_messages([first, second, reply])

    assert [m.role for m in merged] == ["user", "assistant"]
    assert merged[0].content == (TextPart("a"), TextPart("b"))
    assert merged[0].id == first.id
    assert merged[0].timestamp == first.timestamp
    assert merged[1] is reply


def test_system_rewrite_runs_before_merge() -> None:
    adapter = adapt(FakeProvider(), GOOGLE)

    merged = adapter.validate_messages([Message.system("rules"), Message.user("q")])

    assert len(merged) == 1
    assert merged[0].role == "user"
    assert merged[0].text == "System: rulesq"


def test_images_are_dropped_for_backends_without_vision() -> None:
    msg = Message.user("look", images=[ImagePart("AAAA")])
    adapter = adapt(FakeProvider(capabilities=ModelCapabilities(supports_vision=False)))

    [stripped] = adapter.validate_messages([msg])

    assert stripped.content == (TextPart("look"),)
    assert stripped.id == msg.id


def test_validation_does_not_mutate_caller_messages() -> None:
    messages = [Message.system("s"), Message.user("a"), Message.user("b")]
    snapshot = list(messages)

    adapt(FakeProvider(), GOOGLE).validate_messages(messages)

    assert messages == snapshot


# =============================================================================
# Image validation
# =============================================================================


def _vision_adapter(profile: ProviderConfiguration) -> ProviderAdapter:
    return adapt(
        FakeProvider(capabilities=ModelCapabilities(supports_vision=True)), profile
    )


def test_oversized_image_is_rejected() -> None:
    limit = 1024
    adapter = _vision_adapter(ProviderConfiguration(max_image_size=limit))
    # 4 base64 chars decode to 3 bytes; this payload decodes to 1026 bytes.
    msg = Message.user("x", images=[ImagePart(_png_data_url(1368))])

    with pytest.raises(InvalidInputError, match="exceeds limit"):
        adapter.validate_messages([msg])


def test_image_at_the_size_limit_is_accepted() -> None:
    adapter = _vision_adapter(ProviderConfiguration(max_image_size=1026))
    msg = Message.user("x", images=[ImagePart(_png_data_url(1368))])

    assert adapter.validate_messages([msg])[0] is msg


def test_size_check_is_skipped_without_a_limit() -> None:
    adapter = _vision_adapter(ProviderConfiguration(max_image_size=None))
    msg = Message.user("x", images=[ImagePart(_png_data_url(100_000))])

    adapter.validate_messages([msg])


def test_unsupported_image_format_is_rejected() -> None:
    adapter = _vision_adapter(DEFAULT)
    msg = Message.user("x", images=[ImagePart("AAAA", "image/tiff")])

    with pytest.raises(InvalidInputError, match="Unsupported image format: tiff"):
        adapter.validate_messages([msg])


def test_malformed_data_url_is_rejected() -> None:
    adapter = _vision_adapter(DEFAULT)
    msg = Message.user("x", images=[ImagePart("data:image/png;base64")])

    with pytest.raises(InvalidInputError, match="Invalid image data URL"):
        adapter.validate_messages([msg])


def test_remote_image_urls_are_not_validated() -> None:
    adapter = _vision_adapter(DEFAULT)
    msg = Message.user("x", images=[ImagePart("https://example.test/cat.tiff")])

    adapter.validate_messages([msg])


# =============================================================================
# Request shaping
# =============================================================================


@pytest.mark.asyncio
async def test_tools_are_truncated_to_profile_limit() -> None:
    provider = FakeProvider()
    adapter = adapt(provider, ProviderConfiguration(max_tool_calls=2))

    await adapter.generate(ProviderRequest(messages=(Message.user("x"),), tools=_tools(5)))

    sent = provider.requests[0].tools
    assert sent is not None
    assert [t.name for t in sent] == ["t0", "t1"]


@pytest.mark.asyncio
async def test_tools_on_backend_without_tool_support_are_unsupported() -> None:
    provider = FakeProvider(capabilities=ModelCapabilities(supports_tools=False))
    adapter = adapt(provider, DEFAULT)

    with pytest.raises(UnsupportedOperationError) as exc:
        await adapter.generate(
            ProviderRequest(messages=(Message.user("x"),), tools=_tools(1))
        )

    assert exc.value.feature == "tool_calling"
    assert provider.requests == []


@pytest.mark.asyncio
async def test_max_tokens_is_clamped_and_headers_attached() -> None:
    provider = FakeProvider()
    profile = ProviderConfiguration(max_tokens=100, custom_headers={"x-team": "core"})

    await adapt(provider, profile).generate(
        ProviderRequest(
            messages=(Message.user("x"),),
            settings=GenerationSettings(max_tokens=5000, temperature=0.2),
        )
    )

    sent = provider.requests[0]
    assert sent.settings.max_tokens == 100
    assert sent.settings.temperature == 0.2
    assert sent.headers == {"x-team": "core"}


@pytest.mark.asyncio
async def test_max_tokens_within_limit_is_untouched() -> None:
    provider = FakeProvider()
    settings = GenerationSettings(max_tokens=50)

    await adapt(provider, DEFAULT).generate(
        ProviderRequest(messages=(Message.user("x"),), settings=settings)
    )

    assert provider.requests[0].settings is settings


# =============================================================================
# Streaming
# =============================================================================


@pytest.mark.asyncio
async def test_backend_without_streaming_gets_chunked_simulated_stream() -> None:
    words = [f"w{i}" for i in range(45)]
    provider = FakeProvider(
        text=" ".join(words),
        usage=Usage(input_tokens=7, output_tokens=45),
        capabilities=ModelCapabilities(supports_streaming=False),
    )
    adapter = adapt(provider, DEFAULT, config=Config(stream_chunk_delay_s=0))

    deltas = [d async for d in adapter.stream(ProviderRequest(messages=(Message.user("x"),)))]

    text = [d for d in deltas if d.type is DeltaType.TEXT_DELTA]
    assert len(text) == 3
    assert text[0].content == " ".join(words[:20]) + " "
    assert text[1].content == " ".join(words[20:40]) + " "
    assert text[2].content == " ".join(words[40:])
    assert deltas[-1].type is DeltaType.DONE
    assert deltas[-1].usage == Usage(input_tokens=7, output_tokens=45)
    assert deltas[-1].finish_reason is FinishReason.STOP
    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_simulated_stream_honors_configured_chunk_size() -> None:
    provider = FakeProvider(
        text="a b c d e", capabilities=ModelCapabilities(supports_streaming=False)
    )
    adapter = adapt(provider, DEFAULT, config=Config(stream_chunk_words=2))

    chunks = [
        d.content
        async for d in adapter.stream(ProviderRequest(messages=(Message.user("x"),)))
        if d.type is DeltaType.TEXT_DELTA
    ]

    assert chunks == ["a b ", "c d ", "e"]


@pytest.mark.asyncio
async def test_simulated_stream_preserves_original_whitespace() -> None:
    text = "  lead  double\tspace\nnew line  "
    provider = FakeProvider(text=text, capabilities=ModelCapabilities(supports_streaming=False))
    adapter = adapt(provider, DEFAULT, config=Config(stream_chunk_words=2))

    chunks = [
        d.content
        async for d in adapter.stream(ProviderRequest(messages=(Message.user("x"),)))
        if d.type is DeltaType.TEXT_DELTA
    ]

    assert chunks == ["  lead  double\t", "space\nnew ", "line  "]
    assert "".join(chunks) == text


@pytest.mark.asyncio
async def test_native_stream_is_forwarded_and_closed_on_abandon() -> None:
    provider = StreamingProvider(deltas=text_deltas("a", "b", "c"))
    stream = adapt(provider, DEFAULT).stream(ProviderRequest(messages=(Message.user("x"),)))

    first = await anext(stream)
    await stream.aclose()

    assert first.content == "a"
    assert provider.closed is True
    assert provider.pulled == 1


# =============================================================================
# Feature queries
# =============================================================================


def test_supports_answers_from_capabilities_and_profile() -> None:
    caps = ModelCapabilities(
        supports_streaming=True,
        supports_tools=True,
        supports_vision=False,
        supports_json_mode=True,
    )
    adapter = adapt(FakeProvider(capabilities=caps), GOOGLE)

    assert adapter.supports(ProviderFeature.STREAMING)
    assert adapter.supports("function_calling")
    assert adapter.supports(ProviderFeature.PARALLEL_TOOL_CALLS)
    assert adapter.supports(ProviderFeature.JSON_MODE)
    assert adapter.supports(ProviderFeature.LONG_CONTEXT)
    assert not adapter.supports(ProviderFeature.SYSTEM_MESSAGES)
    assert not adapter.supports(ProviderFeature.MULTI_MODAL)
    assert not adapter.supports(ProviderFeature.CONTEXT_CACHING)


def test_parallel_tools_and_long_context_follow_profile_limits() -> None:
    adapter = adapt(FakeProvider(), OLLAMA)

    assert not adapter.supports(ProviderFeature.PARALLEL_TOOL_CALLS)
    assert not adapter.supports(ProviderFeature.LONG_CONTEXT)
