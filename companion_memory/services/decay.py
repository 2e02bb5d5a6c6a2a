"""
Time decay and feedback-aware importance for memories.
"""

import math
from typing import Iterable, List, Optional

from ..models.core import Memory, clamp
from ..utils.config import FeedbackConfig, MemoryConfig, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import days_since, now_seconds

logger = get_logger(__name__)

ACCESS_BOOST_PER_ACCESS = 0.05
MAX_ACCESS_BOOST = 0.3
MAX_USAGE_BOOST = 0.2
FEEDBACK_WEIGHT = 0.3

# How strongly feedback moves effective importance, per memory type
FEEDBACK_RESISTANCE = {
    'identity': 0.5,
    'preference': 0.7,
    'skill': 0.8,
    'person': 0.8,
    'project': 1.0,
    'opinion': 1.0,
    'event': 1.0,
}

MIN_DECAY_RATE = 0.5
MAX_DECAY_RATE = 2.0
DEFAULT_DECAY_RATE = 1.0
POSITIVE_INTERACTION_WEIGHT = 0.15
NEGATIVE_INTERACTION_WEIGHT = 0.1
USAGE_THRESHOLD = 3
STALE_THRESHOLD_DAYS = 30
STALE_DECAY_MULTIPLIER = 1.5


class DecayModel:
    """Per-type half-life decay plus the adaptive, feedback-aware variant.

    All calculations are pure; `now` defaults to the current time and can be pinned
    for deterministic scoring.
    """

    def __init__(self, memory_config: Optional[MemoryConfig] = None, feedback_config: Optional[FeedbackConfig] = None):
        self.memory_config = memory_config or config.memory
        self.feedback_config = feedback_config or config.feedback

    def half_life(self, memory_type: str) -> float:
        return self.memory_config.half_life_days[memory_type]

    def decays(self, memory_type: str) -> bool:
        return math.isfinite(self.half_life(memory_type))

    def calculate_decayed_importance(self, memory: Memory, now: Optional[float] = None) -> float:
        """Importance after half-life decay since last access, plus a small access-count boost.

        Identity memories never decay and return their raw importance.
        """
        if not self.decays(memory.type):
            return memory.importance
        decay_factor = 0.5**(days_since(memory.last_accessed, now) / self.half_life(memory.type))
        access_boost = min(memory.access_count * ACCESS_BOOST_PER_ACCESS, MAX_ACCESS_BOOST)
        return min(memory.importance * decay_factor + access_boost, 1.0)

    def feedback_resistance(self, memory_type: str) -> float:
        return FEEDBACK_RESISTANCE.get(memory_type, 1.0)

    def decay_feedback_score(self, memory: Memory, now: Optional[float] = None) -> float:
        """Feedback halves every `feedback_half_life_days` since the memory was last used."""
        if not memory.last_used_at:
            return memory.feedback_score
        elapsed = max(days_since(memory.last_used_at, now), 0.0)
        return memory.feedback_score * 0.5**(elapsed / self.feedback_config.feedback_half_life_days)

    def calculate_effective_importance(self, memory: Memory, now: Optional[float] = None) -> float:
        """Decayed importance adjusted by adaptive rate, feedback, usage and verification.

        Args:
            memory: Memory to score
            now: Evaluation time in epoch seconds

        Returns:
            Effective importance in [0, 1]
        """
        if self.decays(memory.type):
            half_life = self.half_life(memory.type) / (memory.adaptive_decay_rate or DEFAULT_DECAY_RATE)
            decay_factor = 0.5**(days_since(memory.last_accessed, now) / half_life)
            access_boost = min(memory.access_count * ACCESS_BOOST_PER_ACCESS, MAX_ACCESS_BOOST)
            effective = min(memory.importance * decay_factor + access_boost, 1.0)
        else:
            effective = memory.importance

        feedback = self.decay_feedback_score(memory, now)
        effective += feedback * FEEDBACK_WEIGHT * self.feedback_resistance(memory.type)
        effective += min(memory.usage_count * self.feedback_config.usage_boost, MAX_USAGE_BOOST)

        if memory.user_verified:
            effective *= self.feedback_config.verified_multiplier

        return clamp(effective)

    def adjust_feedback_score(self, memory: Memory, engaged: bool) -> float:
        delta = self.feedback_config.engage_boost if engaged else self.feedback_config.dismiss_penalty
        return clamp(memory.feedback_score + delta, -1.0, 1.0)

    def calculate_adaptive_decay_rate(self, memory: Memory, now: Optional[float] = None) -> float:
        """Decay speed multiplier from interaction history: below 1 slows decay, above 1 speeds it up."""
        positive = memory.positive_interactions
        negative = memory.negative_interactions
        usage = memory.usage_count

        if positive == 0 and negative == 0 and usage < USAGE_THRESHOLD:
            return DEFAULT_DECAY_RATE

        rate = DEFAULT_DECAY_RATE
        rate -= positive * POSITIVE_INTERACTION_WEIGHT
        rate += negative * NEGATIVE_INTERACTION_WEIGHT
        if usage >= USAGE_THRESHOLD:
            rate -= min(usage * 0.02, 0.3)

        if days_since(memory.last_accessed, now) > STALE_THRESHOLD_DAYS and usage < USAGE_THRESHOLD:
            rate *= STALE_DECAY_MULTIPLIER

        return clamp(rate, MIN_DECAY_RATE, MAX_DECAY_RATE)

    def record_interaction(self, memory: Memory, engaged: bool, now: Optional[float] = None) -> Memory:
        """Apply an engage/dismiss outcome to a memory in place."""
        memory.feedback_score = self.adjust_feedback_score(memory, engaged)
        if engaged:
            memory.positive_interactions += 1
            memory.last_used_at = now_seconds(now)
        else:
            memory.negative_interactions += 1

        previous_rate = memory.adaptive_decay_rate
        memory.adaptive_decay_rate = self.calculate_adaptive_decay_rate(memory, now)
        if abs(memory.adaptive_decay_rate - previous_rate) >= 0.05:
            logger.debug(f'Decay rate for memory {memory.id}: {previous_rate:.2f} -> {memory.adaptive_decay_rate:.2f}')
        return memory.clamp_scores()

    def find_stale_memories(self, memories: Iterable[Memory], now: Optional[float] = None) -> List[Memory]:
        """Decaying memories unaccessed for over 30 days and rarely used."""
        return [
            m for m in memories if self.decays(m.type) and days_since(m.last_accessed, now) > STALE_THRESHOLD_DAYS and
            m.usage_count < USAGE_THRESHOLD
        ]
