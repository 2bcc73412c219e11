"""Generation provider contract.

Every backend turns a (system prompt, user prompt) pair into text plus usage,
bounded by a timeout. Whatever goes wrong, callers only ever see a
``ProviderError`` whose ``is_retryable`` flag drives the job retry policy:

- retryable: timeouts, 408/429/5xx responses, connection failures
- not retryable: other 4xx (bad request, auth, permissions), responses with no
  usable text, anything unrecognised
"""

import abc
import asyncio
import logging
from typing import Optional

from pydantic import BaseModel, Field

from ..errors import AppError
from ..schemas import Usage
from .pricing import PriceTable, estimate_cost

logger = logging.getLogger(__name__)


class ProviderError(AppError):
    code = "provider_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        provider: str,
        is_retryable: bool = False,
        upstream_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.is_retryable = is_retryable
        self.upstream_status = upstream_status

    def __repr__(self):
        return (
            f"ProviderError(provider={self.provider!r}, retryable={self.is_retryable}, "
            f"status={self.upstream_status}, message={self.message!r})"
        )


class ProviderConfigurationError(ProviderError):
    def __init__(self, message: str, provider: str):
        super().__init__(message, provider, is_retryable=False)


def is_retryable_status(status: Optional[int]) -> bool:
    if status is None:
        return False
    return status in (408, 429) or status >= 500


class GenerationRequest(BaseModel):
    system_prompt: str
    user_prompt: str
    model: Optional[str] = None
    max_tokens: Optional[int] = Field(default=None, ge=1)
    temperature: Optional[float] = None
    timeout: Optional[float] = Field(default=None, gt=0)


class GenerationResult(BaseModel):
    text: str
    model: str
    usage: Usage
    finish_reason: str


class GenerationProvider(abc.ABC):
    name: str = "base"

    def __init__(
        self,
        pricing: PriceTable,
        default_model: str,
        default_max_tokens: int = 4096,
        default_timeout: float = 30.0,
        default_temperature: float = 1.0,
    ):
        self.pricing = pricing
        self.default_model = default_model
        self.default_max_tokens = default_max_tokens
        self.default_timeout = default_timeout
        self.default_temperature = default_temperature

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        timeout = request.timeout or self.default_timeout
        try:
            return await asyncio.wait_for(self._generate(request), timeout=timeout)
        except asyncio.TimeoutError:
            raise ProviderError(f"Request timeout after {timeout:g}s", self.name, is_retryable=True)
        except ProviderError:
            raise
        except Exception as exc:
            error = self.classify(exc)
            logger.debug("%s call failed: %r", self.name, error)
            raise error from exc

    @abc.abstractmethod
    async def _generate(self, request: GenerationRequest) -> GenerationResult:
        ...

    def classify(self, exc: Exception) -> ProviderError:
        """Fallback classification for errors a backend does not recognise."""
        if isinstance(exc, (ConnectionError, OSError)):
            return ProviderError(f"Network error: {exc}", self.name, is_retryable=True)
        return ProviderError(str(exc) or "Unknown error", self.name, is_retryable=False)

    def usage(self, model: str, input_tokens: int, output_tokens: int) -> Usage:
        price = self.pricing.lookup(model)
        return Usage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            estimated_cost_usd=estimate_cost(input_tokens, output_tokens, price),
        )

    def empty_response(self) -> ProviderError:
        return ProviderError("No text content in response", self.name, is_retryable=False)

    async def aclose(self):
        return None
