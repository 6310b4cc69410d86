import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator
from pathlib import Path

from parley.ports.control import ControlCommand

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/tmp/parley.sock"
REQUEST_READ_TIMEOUT_SECONDS = 5.0
RESPONSE_TIMEOUT_SECONDS = 90.0


def encode_line(message: dict) -> bytes:
    return (json.dumps(message) + "\n").encode()


def decode_line(raw: bytes) -> dict:
    message = json.loads(raw.decode().strip())
    if not isinstance(message, dict):
        raise ValueError("control message must be a JSON object")
    return message


class UnixSocketControlServer:
    """One JSON request line in, one JSON response line out, per connection.

    Each request becomes a ControlCommand carrying a reply future; the
    connection stays open until the consumer calls respond() or the
    response timeout passes.
    """

    def __init__(
        self,
        socket_path: str = DEFAULT_SOCKET_PATH,
        response_timeout: float = RESPONSE_TIMEOUT_SECONDS,
    ) -> None:
        self._socket_path = Path(socket_path)
        self._response_timeout = response_timeout
        self._server: asyncio.Server | None = None
        self._pending: asyncio.Queue[ControlCommand] = asyncio.Queue()

    async def start(self) -> None:
        self._remove_socket_file()
        self._server = await asyncio.start_unix_server(self._serve, path=str(self._socket_path))
        os.chmod(self._socket_path, 0o600)
        logger.info("Control socket listening at %s", self._socket_path)

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.close()
            await server.wait_closed()
        self._remove_socket_file()

    async def commands(self) -> AsyncIterator[ControlCommand]:
        while True:
            yield await self._pending.get()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            raw = await asyncio.wait_for(reader.readline(), timeout=REQUEST_READ_TIMEOUT_SECONDS)
            if raw:
                response = await self._dispatch(raw)
                writer.write(encode_line(response))
                await writer.drain()
        except asyncio.TimeoutError:
            logger.warning("Control client sent nothing within %.0fs", REQUEST_READ_TIMEOUT_SECONDS)
        except ConnectionError:
            logger.debug("Control client went away before the response")
        finally:
            writer.close()
            await writer.wait_closed()

    async def _dispatch(self, raw: bytes) -> dict:
        try:
            request = decode_line(raw)
        except ValueError as exc:
            logger.warning("Rejected control request: %s", exc)
            return {"status": "error", "error": f"invalid request: {exc}"}

        action = str(request.get("action", ""))
        reply = asyncio.get_running_loop().create_future()
        await self._pending.put(ControlCommand(action=action, payload=request.get("payload"), reply=reply))
        try:
            return await asyncio.wait_for(reply, timeout=self._response_timeout)
        except asyncio.TimeoutError:
            logger.warning("No response to control action '%s'", action)
            return {"status": "error", "action": action, "error": "timed out"}

    def _remove_socket_file(self) -> None:
        if self._socket_path.exists():
            self._socket_path.unlink()


class UnixSocketControlClient:
    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH) -> None:
        self._socket_path = socket_path

    async def send_command(self, action: str, payload: dict | None = None) -> dict:
        request: dict = {"action": action}
        if payload:
            request["payload"] = payload

        reader, writer = await asyncio.open_unix_connection(self._socket_path)
        try:
            writer.write(encode_line(request))
            await writer.drain()
            raw = await asyncio.wait_for(reader.readline(), timeout=RESPONSE_TIMEOUT_SECONDS + 5.0)
        finally:
            writer.close()
            await writer.wait_closed()
        return decode_line(raw)
