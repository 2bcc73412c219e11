"""OpenAI chat completions backend."""

from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from .base import (
    GenerationProvider,
    GenerationRequest,
    GenerationResult,
    ProviderError,
    is_retryable_status,
)
from .pricing import OPENAI_PRICES, PriceTable


class OpenAIProvider(GenerationProvider):
    name = "openai"

    def __init__(
        self,
        api_key: str = None,
        default_model: str = "gpt-3.5-turbo",
        pricing: PriceTable = OPENAI_PRICES,
        client=None,
        base_url: str = None,
        **defaults,
    ):
        super().__init__(pricing, default_model, **defaults)
        if client is None:
            if not api_key:
                raise ValueError("OpenAI API key is required")
            client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)
        self._client = client

    async def _generate(self, request: GenerationRequest) -> GenerationResult:
        temperature = request.temperature if request.temperature is not None else self.default_temperature
        response = await self._client.chat.completions.create(
            model=request.model or self.default_model,
            max_tokens=request.max_tokens or self.default_max_tokens,
            temperature=temperature,
            messages=[
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
        )

        choice = response.choices[0] if response.choices else None
        text = choice.message.content if choice else None
        if not text:
            raise self.empty_response()

        input_tokens = response.usage.prompt_tokens if response.usage else 0
        output_tokens = response.usage.completion_tokens if response.usage else 0
        return GenerationResult(
            text=text,
            model=response.model,
            usage=self.usage(response.model, input_tokens, output_tokens),
            finish_reason=choice.finish_reason or "unknown",
        )

    def classify(self, exc: Exception) -> ProviderError:
        if isinstance(exc, APITimeoutError):
            return ProviderError("Request timed out", self.name, is_retryable=True)
        if isinstance(exc, APIConnectionError):
            return ProviderError(f"Network error: {exc}", self.name, is_retryable=True)
        if isinstance(exc, APIStatusError):
            return ProviderError(
                exc.message,
                self.name,
                is_retryable=is_retryable_status(exc.status_code),
                upstream_status=exc.status_code,
            )
        return super().classify(exc)

    async def aclose(self):
        await self._client.close()
