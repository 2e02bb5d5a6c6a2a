"""
Entity clustering: links memories that mention the same person, project, skill or technology.
"""

import hashlib
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from ..models.core import ENTITY_TYPES, EntityLink, Memory
from ..storage.base import PersistentStore
from ..utils.config import MemoryConfig, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import now_seconds

logger = get_logger(__name__)

MIN_ENTITY_LENGTH = 2
MAX_ENTITY_LENGTH = 50
DEFAULT_RELATED_LIMIT = 5

ENTITY_WEIGHTS = {
    'person': 1.5,
    'project': 1.3,
    'skill': 1.0,
    'technology': 0.8,
}

TECHNOLOGY_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'\b(react|vue|angular|svelte|next\.?js|nuxt|gatsby|remix)\b',
        r'\b(typescript|javascript|python|rust|go|java|c\+\+|c#|ruby|php|swift|kotlin)(?![\w+#])',
        r'\b(node\.?js|deno|bun|express|fastify|nest\.?js|django|flask|rails|spring)\b',
        r'\b(mongodb|postgres|mysql|redis|elasticsearch|dynamodb|supabase|firebase)\b',
        r'\b(aws|gcp|azure|vercel|netlify|cloudflare|docker|kubernetes|k8s)\b',
        r'\b(graphql|rest|grpc|websocket|webrtc)\b',
        r'\b(tailwind|sass|less|styled-components|emotion|css-in-js)\b',
        r'\b(webpack|vite|rollup|esbuild|turbopack|parcel)\b',
        r'\b(jest|vitest|cypress|playwright|mocha|pytest)\b',
        r'\b(git|github|gitlab|bitbucket|jira|confluence|notion)\b',
        r'\b(figma|sketch|adobe xd|photoshop|illustrator)\b',
        r'\b(openai|anthropic|claude|gpt|llm|langchain|llamaindex)\b',
        r'\b(tensorflow|pytorch|keras|scikit-learn|pandas|numpy)\b',
        r'\b(linux|ubuntu|macos|windows|ios|android)\b',
        r'\b(vim|neovim|emacs|vscode|intellij|webstorm)\b',
    )
]

SKILL_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'\b(frontend|backend|fullstack|full-stack|devops|sre|data science|machine learning|ml|ai)\b',
        r'\b(web development|mobile development|game development|embedded|systems programming)\b',
        r'\b(ux design|ui design|product design|graphic design)\b',
        r'\b(project management|agile|scrum|kanban)\b',
        r'\b(teaching|mentoring|technical writing|public speaking)\b',
        r'\b(security|penetration testing|cryptography)\b',
        r'\b(database design|api design|system design|architecture)\b',
    )
]

_PROJECT_NOUNS = r'(?:app|project|tool|website|platform|service|api|extension|plugin|library|framework)'
PROJECT_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'working on\s+(?:a\s+)?([^,.]+' + _PROJECT_NOUNS + r')',
        r'building\s+(?:a\s+)?([^,.]+' + _PROJECT_NOUNS + r')',
        r'developing\s+(?:a\s+)?([^,.]+)',
        r'my\s+([^,.]+(?:project|app|startup|company|side project))',
        r'called\s+"?([^",.]+)"?',
        r'named\s+"?([^",.]+)"?',
    )
]

_NAME = r'([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)'
PERSON_PATTERNS = [
    re.compile(r'(?:my\s+)?(?:friend|colleague|coworker|boss|manager|mentor|partner|wife|husband|girlfriend|boyfriend|'
               r'brother|sister|mom|dad|mother|father)\s+' + _NAME),
    re.compile(_NAME + r'\s+(?:is my|is a|works|lives|helps|teaches|mentors)'),
    re.compile(r'working with\s+' + _NAME),
    re.compile(r'(?:met|know|talked to|spoke with)\s+' + _NAME),
]

COMMON_WORDS = frozenset({
    'the', 'a', 'an', 'and', 'or', 'but', 'is', 'are', 'was', 'were', 'be', 'been', 'being', 'have', 'has', 'had', 'do',
    'does', 'did', 'will', 'would', 'could', 'should', 'may', 'might', 'must', 'can', 'that', 'this', 'these', 'those',
    'what', 'which', 'who', 'whom', 'i', 'me', 'my', 'we', 'us', 'our', 'you', 'your', 'he', 'she', 'it', 'they',
    'them', 'their', 'user', 'person', 'people', 'someone'
})

_WHITESPACE = re.compile(r'\s+')
_NAME_JUNK = re.compile(r'[^\w\s.-]')


@dataclass(frozen=True)
class ExtractedEntity:
    entity_type: str
    entity_name: str
    display_name: str


@dataclass
class RelatedMemory:
    """A memory sharing entities with the one asked about."""
    memory: Memory
    relevance_score: float
    shared_entities: List[EntityLink] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'memory': self.memory.to_dict(),
            'relevanceScore': self.relevance_score,
            'sharedEntities': [{
                'entityId': e.entity_id,
                'entityType': e.entity_type,
                'entityName': e.entity_name,
                'displayName': e.display_name
            } for e in self.shared_entities]
        }


@dataclass
class MemoryCluster:
    entity: EntityLink
    memories: List[Memory]
    total_score: float


def normalize_entity_name(name: str) -> str:
    return _NAME_JUNK.sub('', _WHITESPACE.sub(' ', name.lower().strip()))


def generate_entity_id(entity_type: str, normalized_name: str) -> str:
    """Stable id for an entity: the same type and name always map to the same id."""
    digest = hashlib.sha1(f'{entity_type}:{normalized_name}'.encode('utf-8')).hexdigest()
    return f'entity-{entity_type}-{digest[:12]}'


def _scan(text: str, patterns: Sequence[re.Pattern], entity_type: str, bounded: bool = False,
          skip_common: bool = False) -> List[ExtractedEntity]:
    entities = []
    seen = set()
    for pattern in patterns:
        for match in pattern.finditer(text):
            display_name = match.group(1) or match.group(0)
            normalized = normalize_entity_name(display_name)
            if len(normalized) < MIN_ENTITY_LENGTH or normalized in seen:
                continue
            if bounded and len(normalized) > MAX_ENTITY_LENGTH:
                continue
            if skip_common and normalized in COMMON_WORDS:
                continue
            seen.add(normalized)
            entities.append(ExtractedEntity(entity_type, normalized, display_name.strip()))
    return entities


def extract_technologies(text: str) -> List[ExtractedEntity]:
    return _scan(text, TECHNOLOGY_PATTERNS, 'technology')


def extract_skills(text: str) -> List[ExtractedEntity]:
    return _scan(text, SKILL_PATTERNS, 'skill')


def extract_projects(text: str) -> List[ExtractedEntity]:
    return _scan(text, PROJECT_PATTERNS, 'project', bounded=True)


def extract_people(text: str) -> List[ExtractedEntity]:
    return _scan(text, PERSON_PATTERNS, 'person', bounded=True, skip_common=True)


def extract_entities_from_memory(memory: Memory, max_entities: Optional[int] = None) -> List[ExtractedEntity]:
    """Type-directed entity extraction for one memory.

    Skill and project memories scan their own vocabulary plus technologies, person
    memories scan for names, every other type runs all extractors. Technologies are
    scanned for every memory. Results are deduplicated by (type, name) and capped.
    """
    max_entities = config.memory.max_entities_per_memory if max_entities is None else max_entities
    text = memory.text
    entities: List[ExtractedEntity] = []

    if memory.type == 'skill':
        entities += extract_skills(text)
    elif memory.type == 'project':
        entities += extract_projects(text)
    elif memory.type == 'person':
        entities += extract_people(text)
    else:
        entities += extract_technologies(text) + extract_skills(text) + extract_people(text) + extract_projects(text)
    entities += extract_technologies(text)

    deduped: Dict[tuple, ExtractedEntity] = {}
    for entity in entities:
        deduped.setdefault((entity.entity_type, entity.entity_name), entity)

    limited = list(deduped.values())[:max_entities]
    if limited:
        logger.debug(f'Extracted {len(limited)} entities from memory: {memory.content[:40]}...')
    return limited


def create_entity_links(memory: Memory,
                        extracted: Iterable[ExtractedEntity],
                        existing: Mapping[str, EntityLink],
                        now: Optional[float] = None) -> List[EntityLink]:
    """Links to write for `memory`: new links, or existing ones with the memory id appended.

    Links that already reference the memory are not returned.
    """
    now = now_seconds(now)
    updated = []
    for entity in extracted:
        entity_id = generate_entity_id(entity.entity_type, entity.entity_name)
        link = existing.get(entity_id)
        if link is None:
            updated.append(
                EntityLink(entity_id=entity_id,
                           entity_type=entity.entity_type,
                           entity_name=entity.entity_name,
                           display_name=entity.display_name,
                           memory_ids=[memory.id],
                           created_at=now,
                           updated_at=now))
        elif memory.id not in link.memory_ids:
            updated.append(
                EntityLink(entity_id=link.entity_id,
                           entity_type=link.entity_type,
                           entity_name=link.entity_name,
                           display_name=link.display_name,
                           memory_ids=link.memory_ids + [memory.id],
                           created_at=link.created_at,
                           updated_at=now))
    return updated


class EntityClusterer:
    """Maintains entity links in the persistent store and answers relatedness queries."""

    def __init__(self, store: PersistentStore, strategy=None, memory_config: Optional[MemoryConfig] = None):
        if strategy is None:
            from .strategies import HeuristicExtractionStrategy
            strategy = HeuristicExtractionStrategy()
        self.store = store
        self.strategy = strategy
        self.memory_config = memory_config or config.memory

    @property
    def links(self):
        return self.store.entity_links

    async def get_all_links(self) -> List[EntityLink]:
        return [EntityLink.from_dict(record) for record in await self.links.get_all()]

    async def get_links_for_memory(self, memory_id: str) -> List[EntityLink]:
        return [EntityLink.from_dict(record) for record in await self.links.get_by_index('by-memory', memory_id)]

    async def get_links_by_type(self, entity_type: str) -> List[EntityLink]:
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f'Unknown entity type: {entity_type!r}')
        return [EntityLink.from_dict(record) for record in await self.links.get_by_index('by-type', entity_type)]

    async def process_memory(self, memory: Memory, now: Optional[float] = None) -> List[EntityLink]:
        """Extract entities from a memory and write the resulting links.

        Raises:
            StorageError: If reading or writing links fails after retries
        """
        extracted = self.strategy.extract_memory_entities(memory, self.memory_config.max_entities_per_memory)
        if not extracted:
            return []

        existing: Dict[str, EntityLink] = {}
        for entity in extracted:
            entity_id = generate_entity_id(entity.entity_type, entity.entity_name)
            record = await self.links.get(entity_id)
            if record is not None:
                existing[entity_id] = EntityLink.from_dict(record)

        links = create_entity_links(memory, extracted, existing, now)
        await self.links.put_many([link.to_dict() for link in links])
        logger.debug(f'Processed {len(links)} entity links for memory {memory.id}')
        return links

    async def process_memories(self, memories: Iterable[Memory], now: Optional[float] = None) -> int:
        total = 0
        for memory in memories:
            total += len(await self.process_memory(memory, now))
        return total

    async def find_related_memories(self,
                                    memory_id: str,
                                    memories: Mapping[str, Memory],
                                    limit: int = DEFAULT_RELATED_LIMIT) -> List[RelatedMemory]:
        """Memories sharing entities with `memory_id`, highest weighted overlap first.

        Args:
            memory_id: Memory to find relatives of
            memories: Live memories by id; ids missing here are skipped
            limit: Maximum number of results

        Returns:
            Related memories with their shared entities
        """
        scores: Dict[str, RelatedMemory] = {}
        for link in await self.get_links_for_memory(memory_id):
            weight = ENTITY_WEIGHTS.get(link.entity_type, 1.0)
            for related_id in link.memory_ids:
                if related_id == memory_id or related_id not in memories:
                    continue
                related = scores.get(related_id)
                if related is None:
                    related = scores[related_id] = RelatedMemory(memory=memories[related_id], relevance_score=0.0)
                related.relevance_score += weight
                related.shared_entities.append(link)

        results = sorted(scores.values(), key=lambda r: r.relevance_score, reverse=True)[:limit]
        logger.debug(f'Found {len(results)} related memories for {memory_id}')
        return results

    async def cleanup_deleted_memory(self, memory_id: str) -> int:
        """Remove a memory from every link that references it, deleting links left empty.

        Returns:
            Number of links updated or deleted
        """
        links = await self.get_links_for_memory(memory_id)
        for link in links:
            remaining = [m for m in link.memory_ids if m != memory_id]
            if remaining:
                link.memory_ids = remaining
                link.updated_at = now_seconds()
                await self.links.put(link.to_dict())
            else:
                await self.links.delete(link.entity_id)
        return len(links)

    async def cleanup_deleted_memories(self, memory_ids: Iterable[str]) -> int:
        total = 0
        for memory_id in memory_ids:
            total += await self.cleanup_deleted_memory(memory_id)
        return total

    async def clear(self) -> None:
        await self.links.clear()

    async def reindex_all(self, memories: Sequence[Memory]) -> Dict[str, int]:
        """Drop every link and rebuild from the given memories."""
        await self.links.clear()
        logger.info('Cleared existing entity links for reindex')
        entities = await self.process_memories(memories)
        logger.info(f'Reindexed {len(memories)} memories, wrote {entities} entity links')
        return {'processed': len(memories), 'entities': entities}

    async def build_clusters(self, memories: Mapping[str, Memory], min_size: int = 1) -> List[MemoryCluster]:
        """Group memories around each entity, most important clusters first."""
        clusters = []
        for link in await self.get_all_links():
            members = [memories[m] for m in link.memory_ids if m in memories]
            if len(members) >= min_size:
                clusters.append(MemoryCluster(entity=link, memories=members, total_score=sum(m.importance for m in members)))
        return sorted(clusters, key=lambda c: c.total_score, reverse=True)

    async def get_entity_stats(self, top: int = 10) -> Dict:
        links = await self.get_all_links()
        by_type = {entity_type: 0 for entity_type in ENTITY_TYPES}
        for link in links:
            by_type[link.entity_type] += 1
        top_entities = sorted(links, key=lambda l: len(l.memory_ids), reverse=True)[:top]
        return {
            'total': len(links),
            'byType': by_type,
            'topEntities': [{
                'name': link.display_name,
                'type': link.entity_type,
                'memoryCount': len(link.memory_ids)
            } for link in top_entities]
        }

    async def calculate_memory_similarity(self, first_id: str, second_id: str) -> float:
        """Weighted count of shared entities, normalized by the smaller entity set."""
        first = await self.get_links_for_memory(first_id)
        second = await self.get_links_for_memory(second_id)
        if not first or not second:
            return 0.0
        second_ids = {link.entity_id for link in second}
        shared = sum(ENTITY_WEIGHTS.get(link.entity_type, 1.0) for link in first if link.entity_id in second_ids)
        return shared / min(len(first), len(second))
