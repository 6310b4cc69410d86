import asyncio
import logging
from collections.abc import AsyncIterator

from edge_tts import Communicate

logger = logging.getLogger(__name__)

PCM_READ_CHUNK_SIZE = 4096


def ffmpeg_decode_command(sample_rate: int) -> list[str]:
    return [
        "ffmpeg",
        "-i", "pipe:0",
        "-f", "s16le",
        "-acodec", "pcm_s16le",
        "-ar", str(sample_rate),
        "-ac", "1",
        "-loglevel", "error",
        "pipe:1",
    ]


class EdgeTtsSynthesizer:
    """edge-tts MP3 stream decoded to mono s16le PCM through an ffmpeg pipe."""

    def __init__(self, sample_rate: int = 24000) -> None:
        self._sample_rate = sample_rate
        self._cancelled = False
        self._process: asyncio.subprocess.Process | None = None

    async def synthesize(self, text: str, voice: str = "en-US-GuyNeural") -> AsyncIterator[bytes]:
        self._cancelled = False
        self._process = await asyncio.create_subprocess_exec(
            *ffmpeg_decode_command(self._sample_rate),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        process = self._process
        feed_task = asyncio.create_task(self._feed_mp3(process, text, voice))

        try:
            while not self._cancelled:
                chunk = await process.stdout.read(PCM_READ_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            feed_task.cancel()
            try:
                await feed_task
            except asyncio.CancelledError:
                pass
            if process.returncode is None:
                process.kill()
                await process.wait()
            self._process = None

    async def _feed_mp3(self, process: asyncio.subprocess.Process, text: str, voice: str) -> None:
        try:
            communicate = Communicate(text, voice=voice)
            async for chunk in communicate.stream():
                if self._cancelled:
                    break
                if chunk["type"] == "audio" and chunk["data"]:
                    process.stdin.write(chunk["data"])
                    await process.stdin.drain()
        except asyncio.CancelledError:
            raise
        except Exception:
            if not self._cancelled:
                logger.exception("Edge TTS stream failed for: %s", text[:50])
        finally:
            if process.stdin and not process.stdin.is_closing():
                process.stdin.close()

    async def cancel(self) -> None:
        self._cancelled = True
        if self._process and self._process.returncode is None:
            self._process.kill()
