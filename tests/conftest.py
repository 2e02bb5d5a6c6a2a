"""Shared fixtures for memory subsystem tests."""

import asyncio
import itertools
import json
from typing import List, Optional

import pytest

from companion_memory.models.core import Memory, MemorySource
from companion_memory.storage.in_memory import InMemoryPersistentStore
from companion_memory.utils.completion import CompletionRequest, CompletionResponse, TextCompletionClient
from companion_memory.utils.config import StorageRetryConfig

NOW = 1_700_000_000.0
DAY = 24 * 60 * 60.0


class FakeCompletionClient(TextCompletionClient):
    """Returns queued responses in order and records every request."""

    def __init__(self, responses: Optional[List[CompletionResponse]] = None, delay: float = 0.0):
        self.responses = list(responses or [])
        self.requests: List[CompletionRequest] = []
        self.delay = delay

    def queue_json(self, payload) -> None:
        self.responses.append(CompletionResponse(success=True, raw=json.dumps(payload)))

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.responses:
            return CompletionResponse.failure('no response queued')
        return self.responses.pop(0)


@pytest.fixture
def retry_config():
    return StorageRetryConfig(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def store(retry_config):
    """Fresh in-memory persistent store with instant retries."""
    return InMemoryPersistentStore(retry_config=retry_config)


@pytest.fixture
def completion_client():
    return FakeCompletionClient()


@pytest.fixture
def make_memory():
    """Factory for Memory objects with sensible defaults and unique ids."""
    counter = itertools.count(1)

    def factory(memory_type: str = 'skill',
                content: str = 'User knows Python',
                importance: float = 0.5,
                confidence: float = 0.8,
                created_at: float = NOW,
                last_accessed: Optional[float] = None,
                url: Optional[str] = None,
                **kwargs) -> Memory:
        memory_id = kwargs.pop('id', None) or f'mem-{next(counter)}'
        return Memory(id=memory_id,
                      type=memory_type,
                      content=content,
                      importance=importance,
                      confidence=confidence,
                      created_at=created_at,
                      last_accessed=created_at if last_accessed is None else last_accessed,
                      source=MemorySource(url=url),
                      **kwargs)

    return factory
