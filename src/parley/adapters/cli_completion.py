import asyncio
import logging

from parley.domain.errors import BackendBadStatus, BackendDecodeFailure, BackendUnreachable

logger = logging.getLogger(__name__)


class CliCompletion:
    """Pipes the assembled prompt to a shell command and returns its stdout."""

    def __init__(self, command: str, timeout_seconds: float = 120.0) -> None:
        self._command = command
        self._timeout = timeout_seconds

    async def complete(self, prompt: str) -> str:
        try:
            process = await asyncio.create_subprocess_shell(
                self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise BackendUnreachable(f"Cannot run '{self._command}': {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(prompt.encode()), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise BackendUnreachable(f"'{self._command}' timed out after {self._timeout:.0f}s") from exc

        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip()
            logger.debug("CLI command exited with code %d: %s", process.returncode, detail)
            raise BackendBadStatus(process.returncode, detail)

        try:
            text = stdout.decode()
        except UnicodeDecodeError as exc:
            raise BackendDecodeFailure("CLI output is not valid UTF-8") from exc
        if not text.strip():
            raise BackendDecodeFailure("CLI command produced no output")
        return text.strip()

