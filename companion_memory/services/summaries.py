"""
Conversation summaries: generation through the completion backend and storage.
"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..models.core import ConversationMessage, ConversationSummary
from ..storage.base import PersistentStore
from ..utils.completion import CompletionRequest, TextCompletionClient
from ..utils.config import ExtractionConfig, config
from ..utils.json_utils import extract_json_object
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import now_seconds
from .prompts import SUMMARY_SYSTEM_PROMPT, build_summary_prompt

logger = get_logger(__name__)

MIN_MESSAGES_FOR_SUMMARY = 10
MAX_SUMMARY_LENGTH = 500
MAX_KEY_TOPICS = 5


@dataclass
class SummaryResult:
    success: bool
    summary: Optional[ConversationSummary] = None
    error: Optional[str] = None


def should_generate_summary(message_count: int, has_summary: bool) -> bool:
    return not has_summary and message_count >= MIN_MESSAGES_FOR_SUMMARY


class SummaryGenerator:
    """Asks the completion backend for a short summary and key topics of a finished conversation."""

    def __init__(self, completion_client: TextCompletionClient, extraction_config: Optional[ExtractionConfig] = None):
        self.completion_client = completion_client
        self.config = extraction_config or config.extraction

    async def generate(self,
                       messages: Sequence[ConversationMessage],
                       conversation_id: str,
                       memory_ids: Sequence[str] = (),
                       url: Optional[str] = None,
                       started_at: Optional[float] = None,
                       ended_at: Optional[float] = None) -> SummaryResult:
        """Summarize a conversation.

        Args:
            messages: Conversation messages; system messages are ignored
            conversation_id: Conversation the summary belongs to
            memory_ids: Memories extracted from this conversation
            url: Page the conversation happened on
            started_at: Conversation start time
            ended_at: Conversation end time, defaults to now

        Returns:
            SummaryResult with the summary, or the reason none was produced
        """
        relevant = [m for m in messages if m.role in ('user', 'assistant')]
        if len(relevant) < MIN_MESSAGES_FOR_SUMMARY:
            return SummaryResult(success=False,
                                 error=f'Conversation too short ({len(relevant)} < {MIN_MESSAGES_FOR_SUMMARY} messages)')

        request = CompletionRequest(system_prompt=SUMMARY_SYSTEM_PROMPT.format(max_length=MAX_SUMMARY_LENGTH,
                                                                               max_topics=MAX_KEY_TOPICS),
                                    user_prompt=build_summary_prompt([(m.role, m.content) for m in relevant]))
        try:
            response = await asyncio.wait_for(self.completion_client.complete(request), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f'Summary generation for {conversation_id} timed out')
            return SummaryResult(success=False, error='Summary request timed out')

        if not response.success:
            logger.warning(f'Summary generation failed: {response.error}')
            return SummaryResult(success=False, error=response.error or 'Summary generation failed')

        parsed = extract_json_object(response.raw)
        if not isinstance(parsed, dict) or not isinstance(parsed.get('summary'), str) or not parsed['summary'].strip():
            return SummaryResult(success=False, error='Malformed summary response')

        topics = parsed.get('keyTopics') or []
        if not isinstance(topics, list):
            topics = []

        now = now_seconds()
        summary = ConversationSummary(id=f'summary-{conversation_id}',
                                      conversation_id=conversation_id,
                                      summary=parsed['summary'].strip()[:MAX_SUMMARY_LENGTH],
                                      key_topics=[str(t).strip() for t in topics if str(t).strip()][:MAX_KEY_TOPICS],
                                      memory_ids=list(memory_ids),
                                      message_count=len(relevant),
                                      url=url,
                                      conversation_started_at=started_at,
                                      conversation_ended_at=ended_at if ended_at is not None else now,
                                      created_at=now)
        return SummaryResult(success=True, summary=summary)


class SummaryStore:
    """Summaries collection access. Storage errors propagate as StorageError."""

    def __init__(self, store: PersistentStore):
        self.store = store

    @property
    def collection(self):
        return self.store.summaries

    async def save(self, summary: ConversationSummary) -> None:
        await self.collection.put(summary.to_dict())
        logger.debug(f'Saved summary {summary.id}')

    async def get(self, summary_id: str) -> Optional[ConversationSummary]:
        record = await self.collection.get(summary_id)
        return ConversationSummary.from_dict(record) if record else None

    async def get_by_conversation(self, conversation_id: str) -> Optional[ConversationSummary]:
        records = await self.collection.get_by_index('by-conversation', conversation_id)
        return ConversationSummary.from_dict(records[0]) if records else None

    async def get_by_url(self, url: str) -> List[ConversationSummary]:
        return [ConversationSummary.from_dict(r) for r in await self.collection.get_by_index('by-url', url)]

    async def get_all(self) -> List[ConversationSummary]:
        return [ConversationSummary.from_dict(r) for r in await self.collection.get_all()]

    async def get_recent(self, limit: int = 10) -> List[ConversationSummary]:
        summaries = await self.get_all()
        return sorted(summaries, key=lambda s: s.created_at, reverse=True)[:limit]

    async def get_for_memories(self, memory_ids: Sequence[str]) -> List[ConversationSummary]:
        """Summaries sharing memories with `memory_ids`, largest overlap first."""
        wanted = set(memory_ids)
        if not wanted:
            return []
        scored = []
        for summary in await self.get_all():
            shared = wanted.intersection(summary.memory_ids)
            if shared:
                scored.append((len(shared) / max(len(wanted), len(summary.memory_ids)), summary))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [summary for _, summary in scored]

    async def delete(self, summary_id: str) -> None:
        await self.collection.delete(summary_id)

    async def clear(self) -> None:
        await self.collection.clear()
