"""
Text-completion collaborator contract used by extraction and summarization.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class CompletionRequest:
    system_prompt: str
    user_prompt: str
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class CompletionResponse:
    """Raw completion text on success, an error message otherwise."""
    success: bool
    raw: str = ''
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> 'CompletionResponse':
        return cls(success=False, error=error)


class TextCompletionClient(ABC):
    """A backend that turns a system/user prompt pair into raw text."""

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Run one completion. Implementations report transport failures in the response."""
        ...
