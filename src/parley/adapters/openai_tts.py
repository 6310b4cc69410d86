import logging
from collections.abc import AsyncIterator

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


class OpenAITtsSynthesizer:
    """OpenAI speech endpoint streamed as raw 24 kHz s16le PCM."""

    def __init__(self, api_key: str, model: str = "tts-1") -> None:
        self._client = AsyncOpenAI(api_key=api_key)
        self._model = model
        self._cancelled = False

    async def synthesize(self, text: str, voice: str = "onyx") -> AsyncIterator[bytes]:
        self._cancelled = False
        async with self._client.audio.speech.with_streaming_response.create(
            model=self._model,
            voice=voice,
            input=text,
            response_format="pcm",
        ) as response:
            async for chunk in response.iter_bytes(chunk_size=4096):
                if self._cancelled:
                    break
                yield chunk

    async def cancel(self) -> None:
        self._cancelled = True
