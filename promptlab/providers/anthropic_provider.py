"""Anthropic Messages API backend."""

import anthropic

from .base import (
    GenerationProvider,
    GenerationRequest,
    GenerationResult,
    ProviderError,
    is_retryable_status,
)
from .pricing import ANTHROPIC_PRICES, PriceTable


class AnthropicProvider(GenerationProvider):
    name = "anthropic"

    def __init__(
        self,
        api_key: str = None,
        default_model: str = "claude-3-haiku-20240307",
        pricing: PriceTable = ANTHROPIC_PRICES,
        client=None,
        **defaults,
    ):
        super().__init__(pricing, default_model, **defaults)
        if client is None:
            if not api_key:
                raise ValueError("Anthropic API key is required")
            # retries are owned by the job scheduler
            client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)
        self._client = client

    async def _generate(self, request: GenerationRequest) -> GenerationResult:
        temperature = request.temperature if request.temperature is not None else self.default_temperature
        response = await self._client.messages.create(
            model=request.model or self.default_model,
            max_tokens=request.max_tokens or self.default_max_tokens,
            temperature=temperature,
            system=request.system_prompt,
            messages=[{"role": "user", "content": request.user_prompt}],
        )

        text = next((block.text for block in response.content if block.type == "text"), None)
        if not text:
            raise self.empty_response()

        return GenerationResult(
            text=text,
            model=response.model,
            usage=self.usage(response.model, response.usage.input_tokens, response.usage.output_tokens),
            finish_reason=response.stop_reason or "unknown",
        )

    def classify(self, exc: Exception) -> ProviderError:
        # APITimeoutError subclasses APIConnectionError
        if isinstance(exc, anthropic.APITimeoutError):
            return ProviderError("Request timed out", self.name, is_retryable=True)
        if isinstance(exc, anthropic.APIConnectionError):
            return ProviderError(f"Network error: {exc}", self.name, is_retryable=True)
        if isinstance(exc, anthropic.APIStatusError):
            return ProviderError(
                exc.message,
                self.name,
                is_retryable=is_retryable_status(exc.status_code),
                upstream_status=exc.status_code,
            )
        return super().classify(exc)

    async def aclose(self):
        await self._client.close()
