"""OpenAI API LLM provider (chat completions)."""
import logging

from openai import AsyncOpenAI

from lqa.services.llm_provider import ContentFilteredError, LLMProvider

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """OpenAI API provider. One AsyncOpenAI client per provider instance."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        temperature: float = 0.1,
    ):
        self.model = model
        self.base_url = base_url
        self.temperature = temperature
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate full response from OpenAI chat completions."""
        extra = {}
        if kwargs.get("json_mode"):
            extra["response_format"] = {"type": "json_object"}
        resp = await self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            stream=False,
            temperature=kwargs.get("temperature", self.temperature),
            **extra,
        )
        if not resp.choices:
            return ""
        choice = resp.choices[0]
        if choice.finish_reason == "content_filter":
            raise ContentFilteredError(f"{self.model}: response blocked by content filter")
        return choice.message.content or ""
