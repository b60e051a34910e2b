"""Text completion via the OpenAI API."""

import logging
from typing import Optional, Protocol

import openai
from openai import AsyncOpenAI

from fulfillment.orchestrator.errors import CompletionError

logger = logging.getLogger(__name__)


class CompletionProvider(Protocol):
    """Prompt in, text out. Raises CompletionError on transient failure."""

    async def complete(self, model: str, system_prompt: str, user_prompt: str) -> str: ...


class OpenAICompletionProvider:
    """Generate task output with OpenAI chat completions."""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        max_tokens: int = 4096,
        default_model: str = "gpt-4o-mini",
    ):
        """Initialize the provider."""
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        self.max_tokens = max_tokens
        self.default_model = default_model

    async def complete(self, model: str, system_prompt: str, user_prompt: str) -> str:
        """Run one chat completion and return the first choice's text."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        try:
            response = await self.client.chat.completions.create(
                model=model or self.default_model,
                max_tokens=self.max_tokens,
                messages=messages,
            )
        except openai.APIError as e:
            logger.warning(f"Completion request failed: {e}")
            raise CompletionError(str(e)) from e

        if not response.choices:
            raise CompletionError("Completion returned no choices")

        return response.choices[0].message.content or ""
