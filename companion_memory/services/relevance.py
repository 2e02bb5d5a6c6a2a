"""
Relevance scoring and prompt-context assembly for retrieved memories.
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from ..models.core import Memory
from ..utils.config import MEMORY_TYPES, RetrievalConfig, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import hours_since
from .decay import DecayModel
from .keyword_index import KeywordIndex, KeywordIndexCache, get_matching_keywords, jaccard_similarity, weighted_keyword_score

logger = get_logger(__name__)

IMPORTANCE_WEIGHT = 0.25
CONFIDENCE_WEIGHT = 0.10
RECENCY_WEIGHT = 0.10
KEYWORD_WEIGHT = 0.35
ENTITY_WEIGHT = 0.10
TYPE_WEIGHT = 0.10

RECENCY_SCALE_HOURS = 48.0
DOMAIN_TERM_BONUS = 0.1
MAX_DOMAIN_TERM_BONUS = 0.3

TYPE_PRIORS = {
    'identity': 1.0,
    'preference': 0.8,
    'skill': 0.8,
    'project': 0.8,
    'person': 0.6,
    'event': 0.4,
    'opinion': 0.4,
}

# Personal facts that apply on every site
CROSS_SITE_TYPES = ('identity', 'preference')

CONTEXT_TYPE_ORDER = ('identity', 'skill', 'project', 'preference', 'person', 'event', 'opinion')
CONTEXT_TYPE_LABELS = {
    'identity': 'About them',
    'skill': 'Their skills',
    'project': 'Their projects',
    'preference': 'Their preferences',
    'person': 'People they know',
    'event': 'Recent events',
    'opinion': 'Their views',
}

CONCISE_CONTEXT_LIMIT = 10


@dataclass
class RetrievalContext:
    """What the user is doing right now."""
    current_message: str = ''
    site_origin: Optional[str] = None
    query_embedding: Optional[List[float]] = None
    now: Optional[float] = None


@dataclass
class RetrievalOptions:
    limit: Optional[int] = None
    types: Optional[Sequence[str]] = None
    min_importance: Optional[float] = None
    min_confidence: Optional[float] = None
    apply_decay: bool = True
    scope_to_site: bool = False

    def __post_init__(self):
        for memory_type in self.types or ():
            if memory_type not in MEMORY_TYPES:
                raise ValueError(f'Unknown memory type: {memory_type!r}')


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def extract_origin(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return None
    return f'{parsed.scheme}://{parsed.netloc}'


def estimate_token_count(memories: Sequence[Memory]) -> int:
    """Rough token estimate at four characters per token."""
    text = ' '.join(m.content + (m.context or '') for m in memories)
    return math.ceil(len(text) / 4)


def select_memories_for_context(memories: Sequence[Memory], token_budget: Optional[int] = None) -> List[Memory]:
    """Take ranked memories greedily until the next one would overflow the token budget."""
    token_budget = config.retrieval.token_budget if token_budget is None else token_budget
    selected = []
    used = 0
    for memory in memories:
        cost = estimate_token_count([memory])
        if used + cost > token_budget:
            break
        selected.append(memory)
        used += cost
    return selected


def build_memory_context(memories: Sequence[Memory]) -> str:
    """Render memories as labeled sections grouped by type, for a system prompt."""
    if not memories:
        return ''

    grouped: Dict[str, List[Memory]] = {}
    for memory in memories:
        grouped.setdefault(memory.type, []).append(memory)

    sections = []
    for memory_type in CONTEXT_TYPE_ORDER:
        if memory_type not in grouped:
            continue
        items = '\n'.join(f'- {m.content}' for m in grouped[memory_type])
        sections.append(f'{CONTEXT_TYPE_LABELS[memory_type]}:\n{items}')

    return 'What I remember about this person:\n\n' + '\n\n'.join(sections)


def build_concise_memory_context(memories: Sequence[Memory]) -> str:
    if not memories:
        return ''
    facts = '\n'.join(f'- {m.content}' for m in memories[:CONCISE_CONTEXT_LIMIT])
    return f'What I remember:\n{facts}'


class RelevanceScorer:
    """Scores memories against the current interaction and picks what goes into a prompt."""

    def __init__(self,
                 decay_model: Optional[DecayModel] = None,
                 strategy=None,
                 retrieval_config: Optional[RetrievalConfig] = None,
                 keyword_cache: Optional[KeywordIndexCache] = None):
        if strategy is None:
            from .strategies import HeuristicExtractionStrategy
            strategy = HeuristicExtractionStrategy()
        self.decay_model = decay_model or DecayModel()
        self.strategy = strategy
        self.retrieval_config = retrieval_config or config.retrieval
        self.keyword_cache = keyword_cache or KeywordIndexCache(strategy)

    def _text_score(self, memory: Memory, context: RetrievalContext, index: KeywordIndex) -> Tuple[float, float]:
        if not context.current_message:
            return 0.0, 0.0

        query_keywords = self.strategy.extract_keywords(context.current_message)
        memory_keywords = self.strategy.extract_keywords(memory.text)
        keyword_score = weighted_keyword_score(query_keywords, memory_keywords, index)

        entity_score = 0.0
        query_entities = self.strategy.extract_entities(context.current_message)
        memory_entities = self.strategy.extract_entities(memory.text)
        if query_entities and memory_entities:
            matched_terms = [k for k in get_matching_keywords(query_entities, memory_entities) if self.strategy.is_domain_term(k)]
            bonus = min(len(matched_terms) * DOMAIN_TERM_BONUS, MAX_DOMAIN_TERM_BONUS)
            entity_score = min(1.0, jaccard_similarity(query_entities, memory_entities) + bonus)

        return keyword_score, entity_score

    def _semantic_score(self, memory: Memory, context: RetrievalContext) -> Optional[float]:
        query = context.query_embedding
        if not query or not memory.embedding or len(query) != len(memory.embedding):
            return None
        return max(0.0, cosine_similarity(query, memory.embedding))

    def score_relevance(self, memory: Memory, context: RetrievalContext, index: Optional[KeywordIndex] = None) -> float:
        """Weighted relevance of one memory to the current context, in [0, 1].

        Args:
            memory: Memory to score
            context: Current message, page and optional query embedding
            index: Keyword index over the corpus; an empty index weighs every keyword as novel

        Returns:
            Relevance score
        """
        index = index or KeywordIndex()
        now = context.now

        score = self.decay_model.calculate_effective_importance(memory, now) * IMPORTANCE_WEIGHT
        score += memory.confidence * CONFIDENCE_WEIGHT
        score += math.exp(-max(hours_since(memory.last_accessed, now), 0.0) / RECENCY_SCALE_HOURS) * RECENCY_WEIGHT

        keyword_score, entity_score = self._text_score(memory, context, index)
        semantic = self._semantic_score(memory, context)
        if semantic is not None:
            keyword_score = (self.retrieval_config.semantic_weight * semantic +
                             self.retrieval_config.keyword_weight * keyword_score)
        score += keyword_score * KEYWORD_WEIGHT
        score += entity_score * ENTITY_WEIGHT
        score += TYPE_PRIORS.get(memory.type, 0.0) * TYPE_WEIGHT

        return max(0.0, min(score, 1.0))

    def retrieve_relevant_memories(self,
                                   memories: Sequence[Memory],
                                   context: RetrievalContext,
                                   options: Optional[RetrievalOptions] = None) -> List[Memory]:
        """Filter, score and rank memories for the current context.

        Equal scores keep their input order, so repeated calls on the same corpus
        return the same list.
        """
        options = options or RetrievalOptions()
        limit = self.retrieval_config.max_memories if options.limit is None else options.limit
        min_importance = self.retrieval_config.min_importance if options.min_importance is None else options.min_importance
        min_confidence = self.retrieval_config.min_confidence if options.min_confidence is None else options.min_confidence

        index = self.keyword_cache.get(memories)
        candidates = list(memories)

        if options.types:
            candidates = [m for m in candidates if m.type in options.types]

        if options.scope_to_site and context.site_origin:
            candidates = [
                m for m in candidates
                if m.type in CROSS_SITE_TYPES or extract_origin(m.source.url) == context.site_origin
            ]

        candidates = [m for m in candidates if m.confidence >= min_confidence]

        def importance(memory: Memory) -> float:
            if options.apply_decay:
                return self.decay_model.calculate_decayed_importance(memory, context.now)
            return memory.importance

        candidates = [m for m in candidates if importance(m) >= min_importance]

        scored = [(m, self.score_relevance(m, context, index)) for m in candidates]
        scored.sort(key=lambda pair: pair[1], reverse=True)

        results = [m for m, _ in scored[:limit]]
        logger.debug(f'Retrieved {len(results)} of {len(memories)} memories')
        return results

    def get_memories_for_prompt(self,
                                memories: Sequence[Memory],
                                context: RetrievalContext,
                                token_budget: Optional[int] = None,
                                options: Optional[RetrievalOptions] = None) -> Tuple[List[Memory], str]:
        """Retrieve, budget and render memories for injection into a system prompt.

        Returns:
            Tuple of (selected memories, rendered context text)
        """
        relevant = self.retrieve_relevant_memories(memories, context, options)
        selected = select_memories_for_context(relevant, token_budget)
        return selected, build_memory_context(selected)
