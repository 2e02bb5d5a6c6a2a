"""
Pluggable text-analysis strategies used by keyword indexing, relevance scoring and entity clustering.
"""

from abc import ABC, abstractmethod
from typing import List

from ..models.core import Memory
from . import entity_clustering, keyword_index


class ExtractionStrategy(ABC):
    """Turns free text into keywords and entities.

    Callers depend only on this interface, so a heavier NLP backend can replace
    the regex heuristics without touching scoring or clustering code.
    """

    @abstractmethod
    def extract_keywords(self, text: str) -> List[str]:
        ...

    @abstractmethod
    def extract_entities(self, text: str) -> List[str]:
        ...

    @abstractmethod
    def extract_memory_entities(self, memory: Memory, max_entities: int) -> List[entity_clustering.ExtractedEntity]:
        """Typed entities (person, project, skill, technology) mentioned by a memory."""
        ...

    def is_domain_term(self, keyword: str) -> bool:
        return False


class HeuristicExtractionStrategy(ExtractionStrategy):
    """Stop-word filtering, domain vocabularies and capitalization patterns."""

    def extract_keywords(self, text: str) -> List[str]:
        return keyword_index.extract_keywords(text)

    def extract_entities(self, text: str) -> List[str]:
        return keyword_index.extract_entities(text)

    def extract_memory_entities(self, memory: Memory, max_entities: int) -> List[entity_clustering.ExtractedEntity]:
        return entity_clustering.extract_entities_from_memory(memory, max_entities)

    def is_domain_term(self, keyword: str) -> bool:
        return keyword_index.is_domain_term(keyword)
