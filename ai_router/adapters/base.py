"""
Abstract base class for AI provider adapters.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from ..models import OperationKind, TokenUsage
from ..prompts import OPERATION_SPECS, build_prompt, parse_response


class ProviderError(Exception):
    """Exception raised when a provider API call fails."""

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        self.provider = provider
        self.message = message
        self.status_code = status_code
        super().__init__(f"[{provider}] {message}")

    @property
    def is_request_error(self) -> bool:
        """The request itself was rejected; no provider would accept it."""
        return self.status_code in (400, 422)


@dataclass
class RawLLMResult:
    """Raw result from a provider API call before processing."""
    text: str
    input_tokens: int | None = None
    output_tokens: int | None = None
    raw_response: dict | None = None


@dataclass
class ProviderResult:
    """Processed result of one resume operation."""
    data: Any
    text: str
    model: str
    usage: TokenUsage


class ProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    Subclasses implement ``generate()`` against their vendor API. The
    operation interface (``perform``) is shared: it renders the prompt for
    the operation, calls ``generate()`` once and post-processes the answer.
    Retrying is the caller's job.
    """

    name: str = "base"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        timeout: float = 60.0,
        **kwargs,
    ):
        """
        Initialize the adapter.

        Args:
            api_key: API key for the provider
            model: Model identifier used for every operation
            base_url: Optional custom base URL (proxies, compatible gateways)
            timeout: Request timeout in seconds
            **kwargs: Additional provider-specific configuration
        """
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.config = kwargs
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            )
        return self._client

    async def _post_json(self, url: str, **kwargs) -> dict:
        """
        POST and decode a JSON body, mapping transport failures to ProviderError.
        """
        try:
            response = await self._get_client().post(url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException:
            raise ProviderError(self.name, "Request timed out")
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                self.name,
                f"API error: {e.response.text}",
                status_code=e.response.status_code,
            )
        except httpx.TransportError as e:
            raise ProviderError(self.name, f"Service unavailable: {e}")
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise ProviderError(self.name, f"Invalid response body: {e}")

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        model: str,
        json_mode: bool = False,
        max_tokens: int | None = None,
    ) -> RawLLMResult:
        """
        Generate a completion for a prompt.

        Raises:
            ProviderError: If the API call fails
        """
        pass

    async def perform(self, kind: OperationKind, payload: dict[str, Any]) -> ProviderResult:
        """
        Run one resume operation against this provider.

        Raises:
            PayloadError: If the payload lacks required fields
            ProviderError: If the API call fails or the answer is malformed
        """
        spec = OPERATION_SPECS[kind]
        prompt = build_prompt(kind, payload)
        result = await self.generate(
            prompt,
            self.model,
            json_mode=spec.expects_json,
            max_tokens=spec.max_output_tokens,
        )

        try:
            data = parse_response(kind, result.text)
        except ValueError as e:
            raise ProviderError(self.name, f"Invalid JSON in {kind.value} response: {e}")

        if result.input_tokens is not None and result.output_tokens is not None:
            usage = TokenUsage(result.input_tokens, result.output_tokens)
        else:
            usage = self.estimate_tokens(prompt, result.text)

        return ProviderResult(data=data, text=result.text, model=self.model, usage=usage)

    def estimate_tokens(self, prompt: str, output: str) -> TokenUsage:
        """
        Estimate token usage when the vendor response carries no counts.

        Rough estimation: ~4 characters per token for English text.
        """
        return TokenUsage(
            input_tokens=max(1, len(prompt) // 4),
            output_tokens=max(1, len(output) // 4),
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
