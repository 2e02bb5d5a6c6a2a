"""
Configuration management for the memory subsystem and its AWS collaborators.
"""

import math
import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

load_dotenv()

MEMORY_TYPES = ('identity', 'preference', 'skill', 'project', 'person', 'event', 'opinion')


class ConfigError(ValueError):
    """Raised when configuration values are inconsistent."""
    pass


@dataclass
class BedrockLLMConfig:
    """Configuration for the Amazon Bedrock text-completion adapter."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class OpenSearchConfig:
    """Configuration for the OpenSearch persistent store.

    `service` is the SigV4 signing name: 'aoss' for a Serverless collection, 'es' for a provisioned domain.
    """
    endpoint: str
    port: int
    region: str
    index_prefix: str
    service: str = 'aoss'

    @property
    def serverless(self) -> bool:
        return self.service == 'aoss'


@dataclass
class MemoryConfig:
    """Configuration for memory storage, dedup and decay."""
    capacity: int = 500
    prune_threshold: float = 0.9
    prune_target: float = 0.7
    similarity_threshold: float = 0.6
    max_entities_per_memory: int = 5
    half_life_days: Dict[str, float] = field(default_factory=lambda: {
        'identity': math.inf,
        'preference': 90.0,
        'skill': 60.0,
        'project': 30.0,
        'person': 60.0,
        'event': 7.0,
        'opinion': 14.0,
    })


@dataclass
class RetrievalConfig:
    """Defaults for relevance retrieval."""
    max_memories: int = 15
    token_budget: int = 500
    min_importance: float = 0.3
    min_confidence: float = 0.5
    semantic_weight: float = 0.6
    keyword_weight: float = 0.4


@dataclass
class FeedbackConfig:
    """Feedback scoring constants."""
    engage_boost: float = 0.1
    dismiss_penalty: float = -0.05
    usage_boost: float = 0.02
    verified_multiplier: float = 1.5
    feedback_half_life_days: float = 60.0


@dataclass
class ExtractionConfig:
    """Configuration for transcript extraction."""
    timeout_seconds: float = 30.0
    min_confidence: float = 0.5
    max_content_length: int = 500
    min_extraction_interval_seconds: float = 300.0


@dataclass
class StorageRetryConfig:
    """Exponential backoff for persistent store operations."""
    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 1.0


@dataclass
class ProactiveSettings:
    """Read-only feature toggles for proactive surfacing."""
    enabled: bool = True
    follow_up_enabled: bool = True
    context_match_enabled: bool = True
    random_recall_enabled: bool = True
    welcome_back_enabled: bool = True
    cooldown_minutes: float = 10.0
    max_per_session: int = 10
    display_mode: str = 'bubble'


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    opensearch: OpenSearchConfig
    memory: MemoryConfig
    retrieval: RetrievalConfig
    feedback: FeedbackConfig
    extraction: ExtractionConfig
    storage_retry: StorageRetryConfig
    proactive: ProactiveSettings
    mcp: MCPConfig

    def validate(self) -> 'AppConfig':
        """Check cross-field constraints.

        Raises:
            ConfigError: If any value is out of range or inconsistent
        """
        memory = self.memory
        if memory.capacity <= 0:
            raise ConfigError(f'Memory capacity must be positive, got {memory.capacity}')
        if not 0 < memory.prune_target < memory.prune_threshold <= 1:
            raise ConfigError(f'Expected 0 < prune_target < prune_threshold <= 1, '
                              f'got {memory.prune_target} and {memory.prune_threshold}')
        if not 0 < memory.similarity_threshold <= 1:
            raise ConfigError(f'Similarity threshold must be in (0, 1], got {memory.similarity_threshold}')
        missing = [t for t in MEMORY_TYPES if t not in memory.half_life_days]
        if missing:
            raise ConfigError(f'Missing half-life for memory types: {", ".join(missing)}')
        for memory_type, half_life in memory.half_life_days.items():
            if half_life <= 0:
                raise ConfigError(f'Half-life for {memory_type} must be positive, got {half_life}')
        if not math.isinf(memory.half_life_days['identity']):
            raise ConfigError('Identity memories must not decay')
        if self.storage_retry.max_attempts < 1:
            raise ConfigError('Storage retry needs at least one attempt')
        if self.proactive.cooldown_minutes <= 0:
            raise ConfigError('Proactive cooldown must be positive')
        if self.proactive.display_mode not in ('bubble', 'chat'):
            raise ConfigError(f'Unknown display mode: {self.proactive.display_mode}')
        if self.opensearch.service not in ('aoss', 'es'):
            raise ConfigError(f'OpenSearch service must be aoss or es, got {self.opensearch.service}')
        return self


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _load_half_lives() -> Dict[str, float]:
    """Read per-type half-lives, e.g. MEMORY_HALF_LIFE_EVENT=7."""
    half_lives = MemoryConfig().half_life_days
    for memory_type in MEMORY_TYPES:
        if memory_type == 'identity':
            continue
        value = os.getenv(f'MEMORY_HALF_LIFE_{memory_type.upper()}')
        if value:
            half_lives[memory_type] = float(value)
    return half_lives


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '2048')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # OpenSearch configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', ''),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'companion_memory'),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'aoss'))

    # Memory configuration
    memory_config = MemoryConfig(capacity=int(os.getenv('MEMORY_CAPACITY', '500')),
                                 prune_threshold=float(os.getenv('MEMORY_PRUNE_THRESHOLD', '0.9')),
                                 prune_target=float(os.getenv('MEMORY_PRUNE_TARGET', '0.7')),
                                 similarity_threshold=float(os.getenv('MEMORY_SIMILARITY_THRESHOLD', '0.6')),
                                 max_entities_per_memory=int(os.getenv('MEMORY_MAX_ENTITIES', '5')),
                                 half_life_days=_load_half_lives())

    retrieval_config = RetrievalConfig(max_memories=int(os.getenv('RETRIEVAL_MAX_MEMORIES', '15')),
                                       token_budget=int(os.getenv('RETRIEVAL_TOKEN_BUDGET', '500')),
                                       min_importance=float(os.getenv('RETRIEVAL_MIN_IMPORTANCE', '0.3')),
                                       min_confidence=float(os.getenv('RETRIEVAL_MIN_CONFIDENCE', '0.5')))

    extraction_config = ExtractionConfig(timeout_seconds=float(os.getenv('EXTRACTION_TIMEOUT_SECONDS', '30')))

    storage_retry_config = StorageRetryConfig(max_attempts=int(os.getenv('STORAGE_RETRY_ATTEMPTS', '3')),
                                              base_delay=float(os.getenv('STORAGE_RETRY_BASE_DELAY', '0.1')),
                                              max_delay=float(os.getenv('STORAGE_RETRY_MAX_DELAY', '1.0')))

    # Proactive settings
    proactive_settings = ProactiveSettings(enabled=_env_bool('PROACTIVE_ENABLED', True),
                                           follow_up_enabled=_env_bool('PROACTIVE_FOLLOW_UP_ENABLED', True),
                                           context_match_enabled=_env_bool('PROACTIVE_CONTEXT_MATCH_ENABLED', True),
                                           random_recall_enabled=_env_bool('PROACTIVE_RANDOM_RECALL_ENABLED', True),
                                           welcome_back_enabled=_env_bool('PROACTIVE_WELCOME_BACK_ENABLED', True),
                                           cooldown_minutes=float(os.getenv('PROACTIVE_COOLDOWN_MINUTES', '10')),
                                           max_per_session=int(os.getenv('PROACTIVE_MAX_PER_SESSION', '10')),
                                           display_mode=os.getenv('PROACTIVE_DISPLAY_MODE', 'bubble'))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     opensearch=opensearch_config,
                     memory=memory_config,
                     retrieval=retrieval_config,
                     feedback=FeedbackConfig(),
                     extraction=extraction_config,
                     storage_retry=storage_retry_config,
                     proactive=proactive_settings,
                     mcp=mcp_config).validate()


# Global configuration instance
config = load_config()
