import logging

import httpx

from parley.domain.errors import BackendBadStatus, BackendDecodeFailure, BackendUnreachable

logger = logging.getLogger(__name__)


class WorkerCompletion:
    """Non-streaming JSON worker: POST {prompt, model, stream} -> {text, raw}."""

    def __init__(
        self,
        worker_url: str,
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._worker_url = worker_url
        self._model = model
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    async def complete(self, prompt: str) -> str:
        payload = {
            "prompt": prompt,
            "model": self._model,
            "stream": False,
            "prompt_id": None,
        }

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.post(self._worker_url, json=payload)
            except (httpx.ConnectError, httpx.TimeoutException) as exc:
                raise BackendUnreachable(f"Worker unreachable: {exc}") from exc
            except httpx.HTTPError as exc:
                raise BackendUnreachable(f"Worker request failed: {exc}") from exc

        logger.debug("Worker response status: %d", response.status_code)
        if response.status_code != 200:
            raise BackendBadStatus(response.status_code, _error_message(response))

        try:
            body = response.json()
        except ValueError as exc:
            raise BackendDecodeFailure("Worker returned invalid JSON") from exc

        text = extract_reply_text(body)
        if not text:
            raise BackendDecodeFailure("No text found in worker response")
        return text


def extract_reply_text(body: object) -> str:
    if not isinstance(body, dict):
        return ""
    text = body.get("text")
    if isinstance(text, str) and text.strip():
        return text
    try:
        nested = body["raw"]["output"][0]["content"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return ""
    return nested if isinstance(nested, str) else ""


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message", ""))
        if isinstance(error, str):
            return error
    return ""
