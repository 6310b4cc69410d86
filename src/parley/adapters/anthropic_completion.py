import logging

import anthropic

from parley.domain.errors import BackendBadStatus, BackendDecodeFailure, BackendUnreachable

logger = logging.getLogger(__name__)


class AnthropicCompletion:
    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-5",
        system_prompt: str = "",
        max_tokens: int = 1024,
    ) -> None:
        self._client = anthropic.AsyncAnthropic(api_key=api_key or None)
        self._model = model.removeprefix("anthropic/")
        self._system_prompt = system_prompt
        self._max_tokens = max_tokens

    async def complete(self, prompt: str) -> str:
        kwargs: dict = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if self._system_prompt:
            kwargs["system"] = self._system_prompt

        try:
            message = await self._client.messages.create(**kwargs)
        except anthropic.APIStatusError as exc:
            logger.debug("Anthropic API error: %s %s", exc.status_code, exc.message)
            raise BackendBadStatus(exc.status_code, exc.message) from exc
        except anthropic.APIConnectionError as exc:
            raise BackendUnreachable(f"Anthropic unreachable: {exc}") from exc

        text = "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )
        if not text.strip():
            raise BackendDecodeFailure("Anthropic reply had no text content")
        return text
