"""
Keyword and entity extraction with an IDF-weighted keyword index.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set

from ..models.core import Memory
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

STOP_WORDS = frozenset({
    'a', 'an', 'and', 'are', 'as', 'at', 'be', 'by', 'for', 'from', 'has', 'he', 'in', 'is', 'it', 'its', 'of', 'on', 'or',
    'that', 'the', 'to', 'was', 'were', 'will', 'with', 'this', 'they', 'their', 'them', 'been', 'have', 'had', 'being',
    'but', 'not', 'what', 'when', 'where', 'which', 'who', 'whom', 'why', 'how', 'all', 'each', 'every', 'both', 'few',
    'more', 'most', 'other', 'some', 'such', 'no', 'nor', 'only', 'own', 'same', 'so', 'than', 'too', 'very', 'just',
    'can', 'should', 'now', 'also', 'into', 'over', 'after', 'before', 'between', 'under', 'again', 'then', 'once',
    'here', 'there', 'about', 'if',
    # common verbs
    'do', 'does', 'did', 'doing', 'would', 'could', 'might', 'must', 'shall', 'may', 'get', 'got', 'getting', 'make',
    'made', 'making', 'go', 'goes', 'went', 'going', 'come', 'comes', 'came', 'coming', 'take', 'takes', 'took',
    'taking', 'give', 'gives', 'gave', 'giving', 'know', 'knows', 'knew', 'knowing', 'think', 'thinks', 'thought',
    'see', 'sees', 'saw', 'seeing', 'want', 'wants', 'wanted', 'wanting', 'use', 'uses', 'used', 'using', 'find',
    'finds', 'found', 'finding', 'tell', 'tells', 'told', 'telling', 'ask', 'asks', 'asked', 'asking', 'work', 'works',
    'worked', 'working', 'seem', 'seems', 'seemed', 'feel', 'feels', 'felt', 'feeling', 'try', 'tries', 'tried',
    'trying', 'leave', 'leaves', 'left', 'leaving', 'call', 'calls', 'called', 'need', 'needs', 'needed', 'needing',
    'keep', 'keeps', 'kept', 'let', 'lets', 'putting', 'put', 'mean', 'means', 'meant', 'become', 'becomes', 'became',
    'becoming', 'begin', 'begins', 'began',
    # pronouns
    'i', 'me', 'my', 'myself', 'we', 'our', 'ours', 'ourselves', 'you', 'your', 'yours', 'yourself', 'yourselves',
    'she', 'her', 'hers', 'herself', 'him', 'his', 'himself', 'itself', 'themselves',
    # phrasing common to stored memories
    'user', 'person', 'like', 'likes', 'prefer', 'prefers', 'favorite', 'mentioned', 'said', 'shared', 'discussed',
    'talked',
})

# Technology vocabulary kept even when shorter than three characters
DOMAIN_TERMS = frozenset({
    # languages
    'javascript', 'typescript', 'python', 'rust', 'go', 'java', 'kotlin', 'swift', 'ruby', 'php', 'c++', 'c#', 'scala',
    'haskell', 'elixir',
    # frameworks
    'react', 'vue', 'angular', 'svelte', 'next', 'nextjs', 'nuxt', 'remix', 'express', 'fastify', 'nest', 'nestjs',
    'django', 'flask', 'fastapi', 'rails', 'spring', 'laravel', 'phoenix',
    # tools and platforms
    'node', 'nodejs', 'deno', 'bun', 'npm', 'yarn', 'pnpm', 'vite', 'webpack', 'rollup', 'esbuild', 'docker',
    'kubernetes', 'k8s', 'aws', 'gcp', 'azure', 'vercel', 'netlify', 'cloudflare', 'github', 'gitlab', 'bitbucket', 'git',
    # databases
    'postgres', 'postgresql', 'mysql', 'sqlite', 'mongodb', 'redis', 'dynamodb', 'firebase', 'supabase', 'prisma',
    'drizzle',
    # ai/ml
    'openai', 'anthropic', 'claude', 'gpt', 'chatgpt', 'llm', 'ai', 'ml', 'tensorflow', 'pytorch', 'huggingface',
    # other
    'api', 'rest', 'graphql', 'websocket', 'http', 'https', 'json', 'xml', 'css', 'html', 'sass', 'less', 'tailwind',
    'bootstrap', 'linux', 'macos', 'windows', 'ubuntu', 'debian',
})

NOVEL_KEYWORD_WEIGHT = 2.0

_DOMAIN_TERM_PATTERNS = {
    term: re.compile(r'(?<![\w#+])' + re.escape(term) + r'(?![\w#+])', re.IGNORECASE)
    for term in DOMAIN_TERMS
}
_PROPER_NOUN = re.compile(r'\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b')
_CAMEL_CASE = re.compile(r'\b[A-Z][a-z]+[A-Z][a-zA-Z]*\b')
_ACRONYM = re.compile(r'\b[A-Z]{2,}\b')
_NON_WORD = re.compile(r'[^\w\s#]')
_NUMBER = re.compile(r'^\d+$')


def is_domain_term(keyword: str) -> bool:
    return keyword.lower() in DOMAIN_TERMS


def _tokenize(text: str) -> List[str]:
    return [token for token in _NON_WORD.sub(' ', text).split() if token]


def extract_entities(text: str) -> List[str]:
    """Named entities in `text`: domain terms, capitalized phrases, CamelCase words and acronyms.

    Domain terms are returned in their canonical lower-case form, everything else
    with its original casing. Order is first-seen, no duplicates.
    """
    entities: Dict[str, None] = {}

    for term, pattern in _DOMAIN_TERM_PATTERNS.items():
        if pattern.search(text):
            entities[term] = None

    for match in _PROPER_NOUN.findall(text):
        # Sentence starters like "The" or "When" are stop words, not names
        first_word = match.split()[0].lower()
        if match.lower() not in STOP_WORDS and first_word not in STOP_WORDS:
            entities[match] = None

    for match in _CAMEL_CASE.findall(text):
        entities[match] = None

    for match in _ACRONYM.findall(text):
        entities[match] = None

    return list(entities)


def extract_keywords(text: str) -> List[str]:
    """Deduplicated lower-case keywords of `text`, entities included."""
    keywords: Dict[str, None] = {entity.lower(): None for entity in extract_entities(text)}

    for token in _tokenize(text):
        lower = token.lower()
        if lower in STOP_WORDS:
            continue
        if len(lower) < 3 and lower not in DOMAIN_TERMS:
            continue
        if _NUMBER.match(lower):
            continue
        keywords[lower] = None

    return list(keywords)


def jaccard_similarity(first: Iterable[str], second: Iterable[str]) -> float:
    """|A ∩ B| / |A ∪ B| over lower-cased sets; two empty sets are identical."""
    a = {item.lower() for item in first}
    b = {item.lower() for item in second}
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    intersection = len(a & b)
    return intersection / (len(a) + len(b) - intersection)


def get_matching_keywords(query_keywords: Sequence[str], memory_keywords: Iterable[str]) -> List[str]:
    memory_set = {k.lower() for k in memory_keywords}
    return [k for k in query_keywords if k.lower() in memory_set]


@dataclass
class KeywordIndex:
    """Keyword -> number of memories containing it, over a corpus of `total_memories`."""
    frequencies: Dict[str, int] = field(default_factory=dict)
    total_memories: int = 0

    def weight(self, keyword: str) -> float:
        frequency = self.frequencies.get(keyword.lower(), 0)
        if frequency <= 0:
            return NOVEL_KEYWORD_WEIGHT
        return math.log(max(self.total_memories, 1) / frequency) + 1


def build_keyword_index(memories: Sequence[Memory], strategy=None) -> KeywordIndex:
    """Count, for every keyword, how many memories mention it in content or context."""
    extract = strategy.extract_keywords if strategy is not None else extract_keywords
    frequencies: Dict[str, int] = {}
    for memory in memories:
        for keyword in set(k.lower() for k in extract(memory.text)):
            frequencies[keyword] = frequencies.get(keyword, 0) + 1
    return KeywordIndex(frequencies=frequencies, total_memories=len(memories))


def weighted_keyword_score(query_keywords: Sequence[str], memory_keywords: Iterable[str], index: KeywordIndex) -> float:
    """IDF-weighted share of the query keywords found in the memory, in [0, 1]."""
    memory_set: Set[str] = {k.lower() for k in memory_keywords}
    if not query_keywords or not memory_set:
        return 0.0

    score = 0.0
    max_possible = 0.0
    for keyword in query_keywords:
        weight = index.weight(keyword)
        max_possible += weight
        if keyword.lower() in memory_set:
            score += weight

    return score / max_possible if max_possible > 0 else 0.0


class KeywordIndexCache:
    """Session-owned keyword index, rebuilt wholesale when the memory count changes."""

    def __init__(self, strategy=None):
        self.strategy = strategy
        self._index: Optional[KeywordIndex] = None
        self._memory_count = -1

    def get(self, memories: Sequence[Memory]) -> KeywordIndex:
        if self._index is None or self._memory_count != len(memories):
            self._index = build_keyword_index(memories, self.strategy)
            self._memory_count = len(memories)
            logger.debug(f'Rebuilt keyword index over {self._memory_count} memories '
                         f'({len(self._index.frequencies)} keywords)')
        return self._index

    def invalidate(self) -> None:
        self._index = None
        self._memory_count = -1
