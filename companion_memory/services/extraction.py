"""
Extraction pipeline: turns a conversation transcript into validated memory drafts.
"""

import asyncio
import math
import numbers
import re
from typing import Any, List, Optional, Sequence

from ..models.core import ConversationMessage, ExtractedMemory, ExtractionResult, Memory, clamp
from ..utils.completion import CompletionRequest, TextCompletionClient
from ..utils.config import MEMORY_TYPES, ExtractionConfig, config
from ..utils.json_utils import extract_json_array
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import now_seconds
from .prompts import EXTRACTION_SYSTEM_PROMPT, build_extraction_prompt

logger = get_logger(__name__)

SENSITIVE_PATTERNS = [
    re.compile(r'password', re.IGNORECASE),
    re.compile(r'api[_-]?key', re.IGNORECASE),
    re.compile(r'secret', re.IGNORECASE),
    re.compile(r'token', re.IGNORECASE),
    re.compile(r'credential', re.IGNORECASE),
    re.compile(r'\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b'),  # card number
    re.compile(r'\b\d{3}-\d{2}-\d{4}\b'),  # SSN
]


def contains_sensitive_content(text: Optional[str]) -> bool:
    if not text:
        return False
    return any(pattern.search(text) for pattern in SENSITIVE_PATTERNS)


def filter_sensitive_memories(memories: List[ExtractedMemory]) -> List[ExtractedMemory]:
    """Drop drafts whose content or context looks like a secret."""
    kept = []
    for memory in memories:
        if contains_sensitive_content(memory.content) or contains_sensitive_content(memory.context):
            logger.debug(f'Filtered sensitive memory: {memory.content[:30]}...')
            continue
        kept.append(memory)
    return kept


def _score(value: Any) -> float:
    # bool is a Number subclass but never a meaningful score
    if isinstance(value, bool):
        return 0.5
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0.5
    if not isinstance(value, numbers.Real) or not math.isfinite(value):
        return 0.5
    return clamp(float(value))


def parse_extraction_response(response: str, extraction_config: Optional[ExtractionConfig] = None) -> List[ExtractedMemory]:
    """Parse raw completion text into memory drafts.

    Malformed output yields an empty list; invalid records are skipped one by one.

    Args:
        response: Raw completion text
        extraction_config: Confidence floor and content length cap

    Returns:
        Accepted drafts in response order
    """
    extraction_config = extraction_config or config.extraction
    items = extract_json_array(response)
    if not isinstance(items, list):
        logger.debug('No JSON array found in extraction response')
        return []

    memories = []
    for item in items:
        if not isinstance(item, dict):
            continue
        memory_type = item.get('type')
        content = item.get('content')
        if memory_type not in MEMORY_TYPES:
            logger.debug(f'Skipping memory with invalid type: {memory_type}')
            continue
        if not isinstance(content, str) or not content.strip():
            logger.debug('Skipping memory without content')
            continue
        if len(content) > extraction_config.max_content_length:
            logger.debug(f'Skipping oversized memory: {content[:30]}...')
            continue

        confidence = _score(item.get('confidence'))
        if confidence < extraction_config.min_confidence:
            logger.debug(f'Skipping low confidence memory: {content[:30]}... ({confidence})')
            continue

        context = item.get('context')
        memories.append(
            ExtractedMemory(type=memory_type,
                            content=content.strip(),
                            context=str(context).strip() if context else None,
                            importance=_score(item.get('importance')),
                            confidence=confidence))

    return memories


def should_extract(last_extraction_at: Optional[float],
                   message_count: int,
                   now: Optional[float] = None,
                   extraction_config: Optional[ExtractionConfig] = None) -> bool:
    """Whether enough conversation has happened, and enough time passed, to run extraction again."""
    extraction_config = extraction_config or config.extraction
    if message_count < 2:
        return False
    if last_extraction_at:
        elapsed = now_seconds(now) - last_extraction_at
        if elapsed < extraction_config.min_extraction_interval_seconds:
            return False
    return True


def get_unprocessed_messages(messages: Sequence[ConversationMessage], last_processed_ts: float) -> List[ConversationMessage]:
    return [m for m in messages if (m.ts or 0) > last_processed_ts]


class ExtractionPipeline:
    """Prompt a completion backend with the transcript and known facts, then validate its answer."""

    def __init__(self, completion_client: TextCompletionClient, extraction_config: Optional[ExtractionConfig] = None):
        self.completion_client = completion_client
        self.config = extraction_config or config.extraction

    def build_request(self,
                      messages: Sequence[ConversationMessage],
                      existing_memories: Sequence[Memory],
                      request_id: Optional[str] = None) -> CompletionRequest:
        user_prompt = build_extraction_prompt([(m.role, m.content) for m in messages],
                                              [(m.type, m.content) for m in existing_memories])
        request = CompletionRequest(system_prompt=EXTRACTION_SYSTEM_PROMPT, user_prompt=user_prompt)
        if request_id:
            request.request_id = request_id
        return request

    async def extract(self,
                      messages: Sequence[ConversationMessage],
                      existing_memories: Sequence[Memory] = (),
                      request_id: Optional[str] = None) -> ExtractionResult:
        """Extract memory drafts from a conversation.

        Args:
            messages: Conversation messages in order
            existing_memories: Already stored memories, listed in the prompt to discourage repeats
            request_id: Optional id forwarded to the completion backend

        Returns:
            ExtractionResult; success is False only when the backend fails or times out
        """
        relevant = [m for m in messages if m.role in ('user', 'assistant')]
        if not any(m.role == 'user' for m in relevant):
            return ExtractionResult(memories=[], success=True)

        request = self.build_request(relevant, existing_memories, request_id)
        try:
            response = await asyncio.wait_for(self.completion_client.complete(request), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f'Extraction request {request.request_id} timed out after {self.config.timeout_seconds}s')
            return ExtractionResult(memories=[], success=False, error='Extraction request timed out')
        except Exception as e:
            logger.error(f'Extraction request {request.request_id} failed: {e}')
            return ExtractionResult(memories=[], success=False, error=str(e))

        if not response.success:
            return ExtractionResult(memories=[], success=False, error=response.error, raw=response.raw or None)

        memories = filter_sensitive_memories(parse_extraction_response(response.raw, self.config))
        logger.info(f'Extracted {len(memories)} memories from conversation')
        return ExtractionResult(memories=memories, success=True, raw=response.raw)
