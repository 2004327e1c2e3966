"""
Deterministic in-process adapter for tests and local development.
No network calls, no provider keys required.
"""

import asyncio
import json
from collections import deque
from typing import Iterable

from .base import ProviderAdapter, RawLLMResult


class StubAdapter(ProviderAdapter):
    """
    Scriptable adapter.

    Each call to ``generate()`` consumes the next scripted step: an exception
    instance is raised, a string is returned as the completion text. Once the
    script is empty, a canned answer is returned.

    Example:
        adapter = StubAdapter(name="gemini", script=[
            ProviderError("gemini", "overloaded", status_code=503),
            '{"matchScore": 80}',
        ])
    """

    name: str = "stub"

    def __init__(
        self,
        api_key: str = "",
        model: str = "stub-model",
        name: str | None = None,
        script: Iterable[str | BaseException] = (),
        input_tokens: int = 120,
        output_tokens: int = 80,
        delay: float = 0.0,
        **kwargs,
    ):
        super().__init__(api_key, model, **kwargs)
        if name:
            self.name = name
        self.script: deque[str | BaseException] = deque(script)
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.delay = delay
        self.calls: list[str] = []

    def push(self, *steps: str | BaseException) -> None:
        """Append steps to the script."""
        self.script.extend(steps)

    async def generate(
        self,
        prompt: str,
        model: str,
        json_mode: bool = False,
        max_tokens: int | None = None,
    ) -> RawLLMResult:
        self.calls.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)

        if self.script:
            step = self.script.popleft()
            if isinstance(step, BaseException):
                raise step
            text = step
        elif json_mode:
            text = json.dumps({"stub": True, "provider": self.name})
        else:
            text = f"stub: deterministic response from {self.name}"

        return RawLLMResult(
            text=text,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
        )
