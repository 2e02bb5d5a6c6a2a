"""
Core data models for the personal memory subsystem.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..utils.config import MEMORY_TYPES

ENTITY_TYPES = ('person', 'project', 'skill', 'technology')
MESSAGE_ROLES = ('user', 'assistant', 'system')


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def validate_memory_type(memory_type: str) -> str:
    if memory_type not in MEMORY_TYPES:
        raise ValueError(f'Unknown memory type: {memory_type!r}')
    return memory_type


@dataclass
class MemorySource:
    """Where a memory came from."""
    conversation_id: str = ''
    message_id: str = ''
    url: Optional[str] = None
    timestamp: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'conversationId': self.conversation_id,
            'messageId': self.message_id,
            'url': self.url,
            'timestamp': self.timestamp
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'MemorySource':
        data = data or {}
        return cls(conversation_id=data.get('conversationId', ''),
                   message_id=data.get('messageId', ''),
                   url=data.get('url'),
                   timestamp=data.get('timestamp'))


@dataclass
class ExtractedMemory:
    """A memory draft as produced by extraction, before it is stored."""
    type: str
    content: str
    importance: float = 0.5
    confidence: float = 0.5
    context: Optional[str] = None

    def __post_init__(self):
        validate_memory_type(self.type)
        self.importance = clamp(float(self.importance))
        self.confidence = clamp(float(self.confidence))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'content': self.content,
            'context': self.context,
            'importance': self.importance,
            'confidence': self.confidence
        }


@dataclass
class Memory:
    """A durable fact about the user.

    Importance and confidence are clamped to [0, 1] and the feedback score to
    [-1, 1] on construction; MemoryStore re-applies `clamp_scores` after every
    mutation.
    """
    id: str
    type: str
    content: str
    importance: float
    confidence: float
    created_at: float
    last_accessed: float
    context: Optional[str] = None
    access_count: int = 0
    usage_count: int = 0
    last_used_at: Optional[float] = None
    feedback_score: float = 0.0
    user_verified: bool = False
    positive_interactions: int = 0
    negative_interactions: int = 0
    adaptive_decay_rate: float = 1.0
    embedding: Optional[List[float]] = None
    expires_at: Optional[float] = None
    source: MemorySource = field(default_factory=MemorySource)

    def __post_init__(self):
        validate_memory_type(self.type)
        self.clamp_scores()

    def clamp_scores(self) -> 'Memory':
        self.importance = clamp(float(self.importance))
        self.confidence = clamp(float(self.confidence))
        self.feedback_score = clamp(float(self.feedback_score), -1.0, 1.0)
        self.adaptive_decay_rate = clamp(float(self.adaptive_decay_rate), 0.5, 2.0)
        return self

    @property
    def text(self) -> str:
        """Content and context joined, as scanned by keyword and entity extraction."""
        return f'{self.content} {self.context or ""}'

    @classmethod
    def from_draft(cls,
                   draft: ExtractedMemory,
                   now: float,
                   source: Optional[MemorySource] = None,
                   memory_id: Optional[str] = None) -> 'Memory':
        return cls(id=memory_id or str(uuid.uuid4()),
                   type=draft.type,
                   content=draft.content,
                   context=draft.context,
                   importance=draft.importance,
                   confidence=draft.confidence,
                   created_at=now,
                   last_accessed=now,
                   source=source or MemorySource(timestamp=now))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'content': self.content,
            'context': self.context,
            'importance': self.importance,
            'confidence': self.confidence,
            'createdAt': self.created_at,
            'lastAccessed': self.last_accessed,
            'accessCount': self.access_count,
            'usageCount': self.usage_count,
            'lastUsedAt': self.last_used_at,
            'feedbackScore': self.feedback_score,
            'userVerified': self.user_verified,
            'positiveInteractions': self.positive_interactions,
            'negativeInteractions': self.negative_interactions,
            'adaptiveDecayRate': self.adaptive_decay_rate,
            'embedding': self.embedding,
            'expiresAt': self.expires_at,
            'source': self.source.to_dict()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Memory':
        """Build a Memory from a storage record, backfilling fields added by later schema versions."""
        return cls(id=data['id'],
                   type=data['type'],
                   content=data['content'],
                   context=data.get('context'),
                   importance=data.get('importance', 0.5),
                   confidence=data.get('confidence', 0.5),
                   created_at=data['createdAt'],
                   last_accessed=data.get('lastAccessed', data['createdAt']),
                   access_count=data.get('accessCount', 0),
                   usage_count=data.get('usageCount') or 0,
                   last_used_at=data.get('lastUsedAt'),
                   feedback_score=data.get('feedbackScore') or 0.0,
                   user_verified=bool(data.get('userVerified', False)),
                   positive_interactions=data.get('positiveInteractions') or 0,
                   negative_interactions=data.get('negativeInteractions') or 0,
                   adaptive_decay_rate=data.get('adaptiveDecayRate') or 1.0,
                   embedding=data.get('embedding'),
                   expires_at=data.get('expiresAt'),
                   source=MemorySource.from_dict(data.get('source')))


@dataclass
class EntityLink:
    """An entity (person, project, skill, technology) and the memories mentioning it."""
    entity_id: str
    entity_type: str
    entity_name: str
    display_name: str
    memory_ids: List[str]
    created_at: float
    updated_at: float

    def __post_init__(self):
        if self.entity_type not in ENTITY_TYPES:
            raise ValueError(f'Unknown entity type: {self.entity_type!r}')
        # Keep first occurrence order, drop duplicates
        self.memory_ids = list(dict.fromkeys(self.memory_ids))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entityId': self.entity_id,
            'entityType': self.entity_type,
            'entityName': self.entity_name,
            'displayName': self.display_name,
            'memoryIds': list(self.memory_ids),
            'createdAt': self.created_at,
            'updatedAt': self.updated_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EntityLink':
        return cls(entity_id=data['entityId'],
                   entity_type=data['entityType'],
                   entity_name=data['entityName'],
                   display_name=data.get('displayName', data['entityName']),
                   memory_ids=list(data.get('memoryIds', [])),
                   created_at=data.get('createdAt', 0.0),
                   updated_at=data.get('updatedAt', 0.0))


@dataclass
class ConversationSummary:
    """A summary of a finished conversation, linked to the memories it produced."""
    id: str
    conversation_id: str
    summary: str
    key_topics: List[str]
    memory_ids: List[str]
    message_count: int
    created_at: float
    conversation_ended_at: float
    conversation_started_at: Optional[float] = None
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'conversationId': self.conversation_id,
            'summary': self.summary,
            'keyTopics': list(self.key_topics),
            'memoryIds': list(self.memory_ids),
            'messageCount': self.message_count,
            'url': self.url,
            'conversationStartedAt': self.conversation_started_at,
            'conversationEndedAt': self.conversation_ended_at,
            'createdAt': self.created_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConversationSummary':
        return cls(id=data['id'],
                   conversation_id=data['conversationId'],
                   summary=data.get('summary', ''),
                   key_topics=list(data.get('keyTopics', [])),
                   memory_ids=list(data.get('memoryIds', [])),
                   message_count=data.get('messageCount', 0),
                   url=data.get('url'),
                   conversation_started_at=data.get('conversationStartedAt'),
                   conversation_ended_at=data.get('conversationEndedAt', data.get('createdAt', 0.0)),
                   created_at=data.get('createdAt', 0.0))


@dataclass
class ConversationMessage:
    """One transcript message."""
    role: str
    content: str
    id: Optional[str] = None
    ts: Optional[float] = None

    def __post_init__(self):
        if self.role not in MESSAGE_ROLES:
            raise ValueError(f'Unknown message role: {self.role!r}')


@dataclass
class ExtractionResult:
    """Outcome of one extraction run."""
    memories: List[ExtractedMemory] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None
    raw: Optional[str] = None


@dataclass
class StoreResult:
    """Outcome of a MemoryStore mutation."""
    success: bool = True
    memories: List[Memory] = field(default_factory=list)
    error: Optional[str] = None
    created: int = 0
    updated: int = 0
    removed: int = 0

    @property
    def memory(self) -> Optional[Memory]:
        return self.memories[0] if self.memories else None
