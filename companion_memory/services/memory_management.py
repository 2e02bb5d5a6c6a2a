"""
Memory store: deduplicating writes, cascading deletes and capacity pruning over the persistent store.
"""

import copy
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..models.core import MEMORY_TYPES, ExtractedMemory, Memory, MemorySource, StoreResult, clamp, validate_memory_type
from ..storage.base import PersistentStore, StorageError
from ..utils.config import MemoryConfig, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import now_seconds
from .decay import DecayModel
from .entity_clustering import EntityClusterer
from .keyword_index import jaccard_similarity

logger = get_logger(__name__)

_TOKEN = re.compile(r'\w+')

# Boilerplate ignored when comparing memory content for duplicates
SIMILARITY_STOP_WORDS = frozenset({
    'a', 'an', 'and', 'are', 'as', 'at', 'be', 'by', 'for', 'from', 'has', 'he', 'in', 'is', 'it', 'its', 'of', 'on', 'or',
    'that', 'the', 'to', 'was', 'were', 'will', 'with', 'this', 'they', 'their', 'them', 'user', 'person', 'i', 'me', 'my',
    'we', 'our', 'you', 'your'
})

# Fields a user edit may change
EDITABLE_FIELDS = ('type', 'content', 'context', 'importance', 'confidence', 'expires_at')


def content_tokens(content: str) -> List[str]:
    """Lower-cased words longer than two characters, minus boilerplate."""
    return [t for t in _TOKEN.findall(content.lower()) if len(t) > 2 and t not in SIMILARITY_STOP_WORDS]


def content_similarity(first: str, second: str) -> float:
    return jaccard_similarity(content_tokens(first), content_tokens(second))


def is_duplicate_content(first: str, second: str) -> bool:
    """Exact match ignoring case, or containment either way."""
    a = first.strip().lower()
    b = second.strip().lower()
    if a == b:
        return True
    return bool(a and b and (a in b or b in a))


def is_similar_content(first: str, second: str, threshold: float) -> bool:
    """Duplicate content, or token Jaccard at or above `threshold`."""
    return is_duplicate_content(first, second) or content_similarity(first, second) >= threshold


def _merge(existing: Memory, draft: ExtractedMemory, now: float) -> Memory:
    merged = copy.deepcopy(existing)
    merged.importance = max(existing.importance, draft.importance)
    merged.confidence = max(existing.confidence, draft.confidence)
    merged.access_count += 1
    merged.last_accessed = now
    return merged.clamp_scores()


class MemoryStore:
    """In-process view of every memory, kept in step with the persistent store.

    Local state changes only after the corresponding write succeeded, so a failed
    write leaves both sides as they were. Storage failures are reported through
    `StoreResult`, never raised.
    """

    def __init__(self,
                 store: PersistentStore,
                 clusterer: Optional[EntityClusterer] = None,
                 decay_model: Optional[DecayModel] = None,
                 memory_config: Optional[MemoryConfig] = None):
        self.store = store
        self.memory_config = memory_config or config.memory
        self.decay_model = decay_model or DecayModel(self.memory_config)
        self.clusterer = clusterer or EntityClusterer(store, memory_config=self.memory_config)
        self._memories: Dict[str, Memory] = {}
        self.loaded = False

    @property
    def memories(self) -> List[Memory]:
        return list(self._memories.values())

    @property
    def memories_by_id(self) -> Dict[str, Memory]:
        return dict(self._memories)

    def __len__(self) -> int:
        return len(self._memories)

    async def load(self) -> StoreResult:
        """Load every stored memory into the local view."""
        try:
            records = await self.store.memories.get_all()
        except StorageError as e:
            logger.error(f'Failed to load memories: {e}')
            self.loaded = True
            return StoreResult(success=False, error=str(e))

        self._memories = {}
        for record in sorted(records, key=lambda r: r.get('createdAt', 0)):
            memory = Memory.from_dict(record)
            self._memories[memory.id] = memory
        self.loaded = True
        logger.info(f'Loaded {len(self._memories)} memories')
        return StoreResult(success=True, memories=self.memories)

    def find_similar(self, draft: ExtractedMemory, candidates: Optional[Iterable[Memory]] = None) -> Optional[Memory]:
        """Same-type memory the draft duplicates.

        An exact or containment match wins outright; otherwise the memory with the
        highest token Jaccard at or above the similarity threshold.
        """
        best: Optional[Memory] = None
        best_score = 0.0
        for memory in candidates if candidates is not None else self._memories.values():
            if memory.type != draft.type:
                continue
            if is_duplicate_content(memory.content, draft.content):
                return memory
            score = content_similarity(memory.content, draft.content)
            if score > best_score and score >= self.memory_config.similarity_threshold:
                best, best_score = memory, score
        return best

    async def _process_entities(self, memories: Sequence[Memory], now: float) -> None:
        for memory in memories:
            try:
                await self.clusterer.process_memory(memory, now)
            except StorageError as e:
                logger.warning(f'Entity linking failed for memory {memory.id}: {e}')

    async def _cleanup_entities(self, memory_ids: Sequence[str]) -> None:
        try:
            await self.clusterer.cleanup_deleted_memories(memory_ids)
        except StorageError as e:
            logger.warning(f'Entity cleanup failed for {len(memory_ids)} memories: {e}')

    async def _save(self, memory: Memory) -> None:
        await self.store.memories.put(memory.clamp_scores().to_dict())
        self._memories[memory.id] = memory

    async def add_memory(self,
                         draft: ExtractedMemory,
                         source: Optional[MemorySource] = None,
                         now: Optional[float] = None) -> StoreResult:
        """Store a draft, merging it into an existing duplicate when there is one.

        Args:
            draft: Memory draft from extraction or a user edit
            source: Where the draft came from
            now: Write time in epoch seconds

        Returns:
            StoreResult holding the created or merged memory
        """
        now = now_seconds(now)
        existing = self.find_similar(draft)
        try:
            if existing is not None:
                merged = _merge(existing, draft, now)
                await self._save(merged)
                logger.debug(f'Similar memory exists, merged into {existing.id}')
                return StoreResult(success=True, memories=[merged], updated=1)

            memory = Memory.from_draft(draft, now, source)
            await self._save(memory)
        except StorageError as e:
            logger.error(f'Failed to add memory: {e}')
            return StoreResult(success=False, error=str(e))

        logger.info(f'Added memory: {memory.type} - "{memory.content[:50]}"')
        await self._process_entities([memory], now)
        await self.prune_if_needed(now)
        return StoreResult(success=True, memories=[memory], created=1)

    async def add_memories(self,
                           drafts: Sequence[ExtractedMemory],
                           source: Optional[MemorySource] = None,
                           now: Optional[float] = None) -> StoreResult:
        """Store a batch of drafts with one batch write.

        Drafts are deduplicated against stored memories and against memories
        created earlier in the same batch.
        """
        if not drafts:
            return StoreResult(success=True)

        now = now_seconds(now)
        staged: Dict[str, Memory] = {}
        created_ids: List[str] = []

        for draft in drafts:
            candidates = list(staged.values()) + [m for m in self._memories.values() if m.id not in staged]
            existing = self.find_similar(draft, candidates)
            if existing is not None:
                staged[existing.id] = _merge(existing, draft, now)
            else:
                memory = Memory.from_draft(draft, now, source)
                staged[memory.id] = memory
                created_ids.append(memory.id)

        try:
            await self.store.memories.put_many([m.clamp_scores().to_dict() for m in staged.values()])
        except StorageError as e:
            logger.error(f'Failed to add {len(drafts)} memories: {e}')
            return StoreResult(success=False, error=str(e))

        self._memories.update(staged)
        created = [staged[memory_id] for memory_id in created_ids]
        updated = [m for memory_id, m in staged.items() if memory_id not in created_ids]
        logger.info(f'Added {len(created)} new, updated {len(updated)} existing memories')

        await self._process_entities(created, now)
        await self.prune_if_needed(now)
        return StoreResult(success=True, memories=created + updated, created=len(created), updated=len(updated))

    async def update_memory(self, memory_id: str, changes: Dict[str, Any], now: Optional[float] = None) -> StoreResult:
        """Apply a user edit. Edited memories count as verified by the user.

        Raises:
            ValueError: If `changes` names a field that cannot be edited or an unknown type
        """
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f'Cannot edit memory fields: {", ".join(sorted(unknown))}')
        if 'type' in changes:
            validate_memory_type(changes['type'])

        existing = self._memories.get(memory_id)
        if existing is None:
            logger.warning(f'Memory {memory_id} not found for update')
            return StoreResult(success=True)

        updated = copy.deepcopy(existing)
        for name, value in changes.items():
            setattr(updated, name, value)
        updated.user_verified = True
        updated.last_accessed = now_seconds(now)

        try:
            await self._save(updated)
        except StorageError as e:
            logger.error(f'Failed to update memory {memory_id}: {e}')
            return StoreResult(success=False, error=str(e))

        if {'type', 'content', 'context'} & set(changes):
            await self._cleanup_entities([memory_id])
            await self._process_entities([updated], updated.last_accessed)
        return StoreResult(success=True, memories=[updated], updated=1)

    async def _delete(self, memory_ids: Sequence[str]) -> StoreResult:
        removed = []
        for memory_id in memory_ids:
            try:
                await self.store.memories.delete(memory_id)
            except StorageError as e:
                logger.error(f'Failed to delete memory {memory_id}: {e}')
                await self._cleanup_entities(removed)
                return StoreResult(success=False, error=str(e), removed=len(removed))
            self._memories.pop(memory_id, None)
            removed.append(memory_id)

        await self._cleanup_entities(removed)
        return StoreResult(success=True, removed=len(removed))

    async def remove_memory(self, memory_id: str) -> StoreResult:
        if memory_id not in self._memories:
            logger.warning(f'Memory {memory_id} not found for removal')
            return StoreResult(success=True)
        result = await self._delete([memory_id])
        if result.success:
            logger.info(f'Removed memory: {memory_id}')
        return result

    async def remove_memories_by_type(self, memory_type: str) -> StoreResult:
        validate_memory_type(memory_type)
        result = await self._delete([m.id for m in self._memories.values() if m.type == memory_type])
        logger.info(f'Removed {result.removed} memories of type {memory_type}')
        return result

    async def clear_all(self) -> StoreResult:
        count = len(self._memories)
        try:
            await self.store.memories.clear()
            await self.clusterer.clear()
        except StorageError as e:
            logger.error(f'Failed to clear memories: {e}')
            return StoreResult(success=False, error=str(e))
        self._memories = {}
        logger.info('Cleared all memories')
        return StoreResult(success=True, removed=count)

    async def _update(self, memory_id: str, mutate, action: str) -> StoreResult:
        existing = self._memories.get(memory_id)
        if existing is None:
            logger.warning(f'Memory {memory_id} not found for {action}')
            return StoreResult(success=True)
        updated = copy.deepcopy(existing)
        mutate(updated)
        try:
            await self._save(updated)
        except StorageError as e:
            logger.error(f'Failed to {action} memory {memory_id}: {e}')
            return StoreResult(success=False, error=str(e))
        return StoreResult(success=True, memories=[updated], updated=1)

    async def mark_accessed(self, memory_id: str, now: Optional[float] = None) -> StoreResult:
        now = now_seconds(now)

        def mutate(memory: Memory) -> None:
            memory.last_accessed = now
            memory.access_count += 1

        return await self._update(memory_id, mutate, 'mark accessed')

    async def update_importance(self, memory_id: str, delta: float) -> StoreResult:

        def mutate(memory: Memory) -> None:
            previous = memory.importance
            memory.importance = clamp(memory.importance + delta)
            logger.debug(f'Importance for {memory_id}: {previous:.2f} -> {memory.importance:.2f}')

        return await self._update(memory_id, mutate, 'update importance of')

    async def track_usage(self, memory_ids: Iterable[str], now: Optional[float] = None) -> StoreResult:
        """Record that memories were injected into a response."""
        now = now_seconds(now)
        staged = []
        for memory_id in memory_ids:
            existing = self._memories.get(memory_id)
            if existing is None:
                logger.debug(f'Memory {memory_id} not found for usage tracking')
                continue
            updated = copy.deepcopy(existing)
            updated.usage_count += 1
            updated.last_used_at = now
            updated.adaptive_decay_rate = self.decay_model.calculate_adaptive_decay_rate(updated, now)
            staged.append(updated.clamp_scores())

        if not staged:
            return StoreResult(success=True)
        try:
            await self.store.memories.put_many([m.to_dict() for m in staged])
        except StorageError as e:
            logger.error(f'Failed to track usage of {len(staged)} memories: {e}')
            return StoreResult(success=False, error=str(e))
        self._memories.update({m.id: m for m in staged})
        return StoreResult(success=True, memories=staged, updated=len(staged))

    async def apply_feedback(self, memory_id: str, engaged: bool, now: Optional[float] = None) -> StoreResult:
        """Apply an engage/dismiss outcome: feedback score, interaction counters and decay rate."""
        return await self._update(memory_id, lambda m: self.decay_model.record_interaction(m, engaged, now), 'apply feedback to')

    async def cleanup_expired_memories(self, now: Optional[float] = None) -> StoreResult:
        now = now_seconds(now)
        expired = [m.id for m in self._memories.values() if m.expires_at is not None and m.expires_at <= now]
        if not expired:
            logger.debug('No expired memories found for cleanup')
            return StoreResult(success=True)
        result = await self._delete(expired)
        logger.info(f'Cleaned up {result.removed} expired memories')
        return result

    def _limit(self, fraction: float) -> int:
        # Rounded before flooring so 100 * 0.7 is 70, not 69
        return math.floor(round(self.memory_config.capacity * fraction, 9))

    async def prune_if_needed(self, now: Optional[float] = None) -> int:
        """Delete the least important memories once the store nears capacity.

        Best effort: failures are logged and pruning continues with the next memory.

        Returns:
            Number of memories removed
        """
        count = len(self._memories)
        if count < self._limit(self.memory_config.prune_threshold):
            return 0

        target = self._limit(self.memory_config.prune_target)
        to_remove = count - target
        if to_remove <= 0:
            return 0

        logger.info(f'Pruning needed: {count} memories, target {target}')
        ranked = sorted(self._memories.values(), key=lambda m: self.decay_model.calculate_decayed_importance(m, now))

        removed = []
        for memory in ranked[:to_remove]:
            try:
                await self.store.memories.delete(memory.id)
            except StorageError as e:
                logger.warning(f'Failed to prune memory {memory.id}: {e}')
                continue
            self._memories.pop(memory.id, None)
            removed.append(memory.id)

        await self._cleanup_entities(removed)
        logger.info(f'Pruned {len(removed)} memories')
        return len(removed)

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        return self._memories.get(memory_id)

    def get_by_type(self, memory_type: str) -> List[Memory]:
        validate_memory_type(memory_type)
        return [m for m in self._memories.values() if m.type == memory_type]

    def get_recent(self, limit: int = 20) -> List[Memory]:
        return sorted(self._memories.values(), key=lambda m: m.last_accessed, reverse=True)[:limit]

    def search(self, query: str) -> List[Memory]:
        """Case-insensitive substring search over content and context."""
        needle = query.lower()
        return [m for m in self._memories.values() if needle in m.content.lower() or needle in (m.context or '').lower()]

    def get_stats(self) -> Dict[str, Any]:
        by_type = {memory_type: 0 for memory_type in MEMORY_TYPES}
        for memory in self._memories.values():
            by_type[memory.type] += 1
        created = [m.created_at for m in self._memories.values()]
        return {
            'total': len(self._memories),
            'byType': by_type,
            'oldestMemory': min(created) if created else None,
            'newestMemory': max(created) if created else None,
        }
