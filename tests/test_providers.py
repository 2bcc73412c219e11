import asyncio
from types import SimpleNamespace

import anthropic
import httpx
import openai
import pytest

from promptlab.config import Settings
from promptlab.providers.anthropic_provider import AnthropicProvider
from promptlab.providers.base import GenerationRequest, ProviderConfigurationError, ProviderError
from promptlab.providers.openai_provider import OpenAIProvider
from promptlab.providers.pricing import ModelPrice, PriceTable, estimate_cost
from promptlab.providers.registry import ProviderRegistry

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
OPENAI_URL = "https://api.openai.com/v1/chat/completions"

REQUEST = GenerationRequest(system_prompt="be brief", user_prompt="hello", timeout=1.0)


def status_error(error_cls, status, url):
    response = httpx.Response(status, request=httpx.Request("POST", url))
    return error_cls(f"upstream said {status}", response=response, body=None)


def anthropic_client(create):
    return SimpleNamespace(messages=SimpleNamespace(create=create))


def openai_client(create):
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


def test_cost_for_one_million_tokens_each():
    assert estimate_cost(1_000_000, 1_000_000, ModelPrice(input=3.0, output=15.0)) == 18.0


def test_price_lookup_prefers_exact_then_longest_prefix_then_default():
    table = PriceTable.from_pairs({"gpt-4o": (2.5, 10.0), "gpt-4o-mini": (0.15, 0.6)}, default_model="gpt-4o")
    assert table.lookup("gpt-4o-mini") == ModelPrice(0.15, 0.6)
    assert table.lookup("gpt-4o-mini-2024-07-18") == ModelPrice(0.15, 0.6)
    assert table.lookup("gpt-4o-2024-08-06") == ModelPrice(2.5, 10.0)
    assert table.lookup("some-new-model") == ModelPrice(2.5, 10.0)


def test_price_table_requires_priced_default():
    with pytest.raises(ValueError):
        PriceTable.from_pairs({"a": (1.0, 1.0)}, default_model="b")


@pytest.mark.asyncio
async def test_anthropic_success_maps_text_and_usage():
    calls = []

    async def create(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text="hi there")],
            model="claude-3-haiku-20240307",
            usage=SimpleNamespace(input_tokens=1000, output_tokens=2000),
            stop_reason="end_turn",
        )

    provider = AnthropicProvider(client=anthropic_client(create))
    result = await provider.generate(REQUEST)

    assert result.text == "hi there"
    assert result.finish_reason == "end_turn"
    assert result.usage.total_tokens == 3000
    assert result.usage.estimated_cost_usd == pytest.approx(1000 / 1e6 * 0.25 + 2000 / 1e6 * 1.25)
    assert calls[0]["system"] == "be brief"
    assert calls[0]["messages"] == [{"role": "user", "content": "hello"}]
    assert calls[0]["model"] == "claude-3-haiku-20240307"


@pytest.mark.asyncio
async def test_unknown_model_is_priced_with_default_tier():
    async def create(**kwargs):
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text="hi")],
            model="claude-next",
            usage=SimpleNamespace(input_tokens=1_000_000, output_tokens=1_000_000),
            stop_reason=None,
        )

    result = await AnthropicProvider(client=anthropic_client(create)).generate(REQUEST)
    assert result.usage.estimated_cost_usd == pytest.approx(18.0)
    assert result.finish_reason == "unknown"


@pytest.mark.parametrize(
    "error, retryable, status",
    [
        (status_error(anthropic.RateLimitError, 429, ANTHROPIC_URL), True, 429),
        (status_error(anthropic.InternalServerError, 500, ANTHROPIC_URL), True, 500),
        (status_error(anthropic.APIStatusError, 503, ANTHROPIC_URL), True, 503),
        (status_error(anthropic.BadRequestError, 400, ANTHROPIC_URL), False, 400),
        (status_error(anthropic.AuthenticationError, 401, ANTHROPIC_URL), False, 401),
        (status_error(anthropic.PermissionDeniedError, 403, ANTHROPIC_URL), False, 403),
        (anthropic.APIConnectionError(request=httpx.Request("POST", ANTHROPIC_URL)), True, None),
        (anthropic.APITimeoutError(request=httpx.Request("POST", ANTHROPIC_URL)), True, None),
        (ConnectionRefusedError("connection refused"), True, None),
        (RuntimeError("something odd"), False, None),
    ],
)
@pytest.mark.asyncio
async def test_anthropic_error_classification(error, retryable, status):
    async def create(**kwargs):
        raise error

    with pytest.raises(ProviderError) as excinfo:
        await AnthropicProvider(client=anthropic_client(create)).generate(REQUEST)

    assert excinfo.value.is_retryable is retryable
    assert excinfo.value.upstream_status == status
    assert excinfo.value.provider == "anthropic"


@pytest.mark.asyncio
async def test_anthropic_response_without_text_is_not_retryable():
    async def create(**kwargs):
        return SimpleNamespace(
            content=[SimpleNamespace(type="tool_use")],
            model="claude-3-haiku-20240307",
            usage=SimpleNamespace(input_tokens=1, output_tokens=1),
            stop_reason="tool_use",
        )

    with pytest.raises(ProviderError) as excinfo:
        await AnthropicProvider(client=anthropic_client(create)).generate(REQUEST)
    assert not excinfo.value.is_retryable
    assert excinfo.value.message == "No text content in response"


@pytest.mark.asyncio
async def test_timeout_cancels_call_and_is_retryable():
    cancelled = asyncio.Event()

    async def create(**kwargs):
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    provider = AnthropicProvider(client=anthropic_client(create))
    with pytest.raises(ProviderError) as excinfo:
        await provider.generate(GenerationRequest(system_prompt="s", user_prompt="u", timeout=0.01))

    assert excinfo.value.is_retryable
    assert "timeout" in excinfo.value.message.lower()
    assert cancelled.is_set()


@pytest.mark.asyncio
async def test_openai_success_maps_text_and_usage():
    calls = []

    async def create(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="done"), finish_reason="stop")],
            model="gpt-4o-mini-2024-07-18",
            usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5),
        )

    result = await OpenAIProvider(client=openai_client(create)).generate(REQUEST)

    assert result.text == "done"
    assert result.model == "gpt-4o-mini-2024-07-18"
    assert result.usage.total_tokens == 15
    assert result.usage.estimated_cost_usd == pytest.approx(10 / 1e6 * 0.15 + 5 / 1e6 * 0.6)
    assert calls[0]["messages"][0] == {"role": "system", "content": "be brief"}
    assert calls[0]["model"] == "gpt-3.5-turbo"


@pytest.mark.parametrize(
    "error, retryable",
    [
        (status_error(openai.RateLimitError, 429, OPENAI_URL), True),
        (status_error(openai.APIStatusError, 503, OPENAI_URL), True),
        (status_error(openai.BadRequestError, 400, OPENAI_URL), False),
        (status_error(openai.AuthenticationError, 401, OPENAI_URL), False),
        (openai.APIConnectionError(request=httpx.Request("POST", OPENAI_URL)), True),
        (openai.APITimeoutError(request=httpx.Request("POST", OPENAI_URL)), True),
    ],
)
@pytest.mark.asyncio
async def test_openai_error_classification(error, retryable):
    async def create(**kwargs):
        raise error

    with pytest.raises(ProviderError) as excinfo:
        await OpenAIProvider(client=openai_client(create)).generate(REQUEST)
    assert excinfo.value.is_retryable is retryable


@pytest.mark.asyncio
async def test_openai_empty_choices_is_not_retryable():
    async def create(**kwargs):
        return SimpleNamespace(choices=[], model="gpt-4o", usage=None)

    with pytest.raises(ProviderError) as excinfo:
        await OpenAIProvider(client=openai_client(create)).generate(REQUEST)
    assert not excinfo.value.is_retryable


def test_providers_require_credentials():
    with pytest.raises(ValueError):
        AnthropicProvider(api_key=None)
    with pytest.raises(ValueError):
        OpenAIProvider(api_key="")


def test_registry_only_exposes_configured_providers():
    registry = ProviderRegistry.from_settings(
        Settings(_env_file=None, openai_api_key="sk-test", anthropic_api_key=None)
    )
    assert registry.names() == ["openai"]
    assert registry.get("openai").default_model == "gpt-3.5-turbo"

    with pytest.raises(ProviderConfigurationError) as excinfo:
        registry.get("anthropic")
    assert not excinfo.value.is_retryable
