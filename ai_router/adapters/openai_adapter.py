"""
OpenAI provider adapter implementation.
"""

from .base import ProviderAdapter, ProviderError, RawLLMResult


class OpenAIAdapter(ProviderAdapter):
    """
    Adapter for the OpenAI chat completions API.

    Extracts token usage from the API response (prompt_tokens, completion_tokens).
    """

    name: str = "openai"
    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    SYSTEM_PROMPT = "You are an expert resume writer and ATS optimisation assistant."

    def __init__(self, api_key: str, model: str = "gpt-4o", base_url: str | None = None, **kwargs):
        super().__init__(api_key, model, base_url=base_url or self.DEFAULT_BASE_URL, **kwargs)

    async def generate(
        self,
        prompt: str,
        model: str,
        json_mode: bool = False,
        max_tokens: int | None = None,
    ) -> RawLLMResult:
        """
        Generate a response using the OpenAI API.

        Raises:
            ProviderError: If API call fails
        """
        url = f"{self.base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": self.SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.3 if json_mode else 0.7,
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens

        data = await self._post_json(url, headers=headers, json=payload)

        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(self.name, f"Invalid response format: {e}")
        if not text:
            raise ProviderError(self.name, "Empty completion")

        usage = data.get("usage") or {}
        return RawLLMResult(
            text=text,
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
            raw_response=data,
        )
