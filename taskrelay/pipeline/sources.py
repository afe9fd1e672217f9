"""Response sources — pluggable backends that turn a prompt into raw text."""

from typing import Dict, List, Optional, Protocol


class ResponseSourceError(Exception):
    """Raised when a response source cannot produce text."""
    pass


class ResponseSource(Protocol):
    """Protocol for response generation — the pipeline only reads the text."""

    async def fetch(self, prompt: str, target: str) -> str: ...


class StaticResponseSource:
    """Returns canned responses in order. Used for tests and dry runs."""

    def __init__(self, responses: Optional[List[str]] = None):
        self._responses = list(responses or [])
        self.prompts: List[str] = []

    def queue(self, response: str) -> None:
        self._responses.append(response)

    async def fetch(self, prompt: str, target: str) -> str:
        self.prompts.append(prompt)
        if not self._responses:
            raise ResponseSourceError(f"No response available from {target}")
        return self._responses.pop(0)


class ResponseSourceRegistry:
    """Maps target identifiers (e.g. "chatgpt") to response sources."""

    def __init__(self):
        self._sources: Dict[str, ResponseSource] = {}

    def register(self, target: str, source: ResponseSource) -> None:
        self._sources[target] = source

    def targets(self) -> List[str]:
        return sorted(self._sources)

    def get(self, target: str) -> ResponseSource:
        source = self._sources.get(target)
        if source is None:
            raise ResponseSourceError(f"Unsupported response target: {target}")
        return source
