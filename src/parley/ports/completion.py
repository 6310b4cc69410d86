from typing import Protocol


class CompletionPort(Protocol):
    async def complete(self, prompt: str) -> str: ...
