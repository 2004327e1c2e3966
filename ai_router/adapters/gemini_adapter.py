"""
Google Gemini provider adapter implementation (HTTP API).
"""

from .base import ProviderAdapter, ProviderError, RawLLMResult


class GeminiAdapter(ProviderAdapter):
    """
    Adapter for the Google Gemini ``generateContent`` API.

    Token usage comes from ``usageMetadata`` (promptTokenCount,
    candidatesTokenCount).
    """

    name: str = "gemini"
    DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        base_url: str | None = None,
        **kwargs,
    ):
        super().__init__(api_key, model, base_url=base_url or self.DEFAULT_BASE_URL, **kwargs)

    async def generate(
        self,
        prompt: str,
        model: str,
        json_mode: bool = False,
        max_tokens: int | None = None,
    ) -> RawLLMResult:
        """
        Generate a response using the Gemini API.

        Raises:
            ProviderError: If API call fails
        """
        url = f"{self.base_url}/models/{model}:generateContent"
        params = {"key": self.api_key}
        generation_config: dict = {}
        if json_mode:
            generation_config["responseMimeType"] = "application/json"
        if max_tokens:
            generation_config["maxOutputTokens"] = max_tokens
        payload: dict = {"contents": [{"parts": [{"text": prompt}]}]}
        if generation_config:
            payload["generationConfig"] = generation_config

        data = await self._post_json(url, params=params, json=payload)

        try:
            candidate = data["candidates"][0]
            text = "".join(part.get("text", "") for part in candidate["content"]["parts"])
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            finish = None
            candidates = data.get("candidates") if isinstance(data, dict) else None
            if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
                finish = candidates[0].get("finishReason")
            detail = f" (finishReason={finish})" if finish else ""
            raise ProviderError(self.name, f"Invalid response format: {e}{detail}")

        usage_metadata = data.get("usageMetadata") or {}
        return RawLLMResult(
            text=text,
            input_tokens=usage_metadata.get("promptTokenCount"),
            output_tokens=usage_metadata.get("candidatesTokenCount"),
            raw_response=data,
        )
