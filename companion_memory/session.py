"""
Session-owned context wiring the memory subsystem together.

One MemorySession holds every component a hosting session needs (storage,
memory store, indexes, scorer, extraction, summaries and the proactive
controller) so nothing is shared through module-level state.
"""

import dataclasses
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .models.core import ConversationMessage, Memory, MemorySource, StoreResult
from .models.protocol import (AddMemoriesRequest, ClearMemoriesRequest, DeleteMemoriesByTypeRequest,
                              DeleteMemoryRequest, EvaluateProactiveRequest, ExtractMemoriesRequest, FindRelatedRequest,
                              MemoryStatsRequest, ProtocolError, Request, ResolveProactiveRequest, Response,
                              RetrieveMemoriesRequest, UpdateMemoryRequest, parse_request)
from .services.decay import DecayModel
from .services.entity_clustering import EntityClusterer, RelatedMemory
from .services.extraction import ExtractionPipeline
from .services.keyword_index import KeywordIndexCache
from .services.memory_management import MemoryStore
from .services.proactive import Presenter, ProactiveController, ProactiveScheduler
from .services.proactive_triggers import PageContext
from .services.relevance import RelevanceScorer, RetrievalContext, RetrievalOptions, extract_origin
from .services.strategies import ExtractionStrategy, HeuristicExtractionStrategy
from .services.summaries import SummaryGenerator, SummaryResult, SummaryStore, should_generate_summary
from .storage.base import PersistentStore, StorageError
from .storage.in_memory import InMemoryPersistentStore
from .utils.bedrock_llm import BedrockLLM
from .utils.completion import TextCompletionClient
from .utils.config import AppConfig, config
from .utils.logging_config import get_logger
from .utils.timestamp_utils import now_seconds

logger = get_logger(__name__)


class MemorySession:
    """Everything one hosting session needs, built once and passed around explicitly.

    Args:
        store: Persistent store engine, in-memory by default
        completion_client: Backend for extraction and summaries, Bedrock by default
        app_config: Configuration, the module-level config by default
        presenter: Receives proactive presentation requests and resolutions
        strategy: Keyword and entity extraction strategy
        rng: Random source for proactive template and recall choices
        last_session_ended_at: When the previous session ended, for welcome-back greetings
        now: Session start time in epoch seconds
    """

    def __init__(self,
                 store: Optional[PersistentStore] = None,
                 completion_client: Optional[TextCompletionClient] = None,
                 app_config: Optional[AppConfig] = None,
                 presenter: Optional[Presenter] = None,
                 strategy: Optional[ExtractionStrategy] = None,
                 rng=None,
                 last_session_ended_at: Optional[float] = None,
                 now: Optional[float] = None):
        self.config = app_config or config
        self.store = store or InMemoryPersistentStore(retry_config=self.config.storage_retry)
        self.strategy = strategy or HeuristicExtractionStrategy()

        self.decay_model = DecayModel(self.config.memory, self.config.feedback)
        self.clusterer = EntityClusterer(self.store, self.strategy, self.config.memory)
        self.memory_store = MemoryStore(self.store, self.clusterer, self.decay_model, self.config.memory)
        self.keyword_cache = KeywordIndexCache(self.strategy)
        self.scorer = RelevanceScorer(self.decay_model, self.strategy, self.config.retrieval, self.keyword_cache)

        self.completion_client = completion_client or BedrockLLM(self.config.bedrock_llm)
        self.pipeline = ExtractionPipeline(self.completion_client, self.config.extraction)
        self.summary_generator = SummaryGenerator(self.completion_client, self.config.extraction)
        self.summaries = SummaryStore(self.store)

        self.controller = ProactiveController(self.memory_store,
                                              settings=dataclasses.replace(self.config.proactive),
                                              presenter=presenter,
                                              strategy=self.strategy,
                                              rng=rng,
                                              last_session_ended_at=last_session_ended_at,
                                              now=now)
        self.scheduler = ProactiveScheduler(self.controller, page_provider=lambda: self.page)

        self.page: Optional[PageContext] = None
        self.last_extraction_at: Optional[float] = None
        self.opened = False

    async def open(self, start_scheduler: bool = False, now: Optional[float] = None) -> StoreResult:
        """Migrate storage, load memories and drop expired ones.

        Raises:
            StorageError: If the storage migrations cannot be applied
        """
        version = await self.store.open()
        result = await self.memory_store.load()
        if result.success:
            await self.memory_store.cleanup_expired_memories(now)
        self.opened = True
        logger.info(f'Memory session opened (schema v{version}, {len(self.memory_store)} memories)')
        if start_scheduler and self.controller.settings.enabled:
            self.scheduler.start()
        return result

    async def close(self, now: Optional[float] = None) -> float:
        """Stop the proactive scheduler and record when the session ended."""
        await self.scheduler.stop()
        ended_at = self.controller.end_session(now)
        logger.info('Memory session closed')
        return ended_at

    async def extract_and_store(self,
                                messages: Sequence[ConversationMessage],
                                conversation_id: str = '',
                                url: Optional[str] = None,
                                now: Optional[float] = None) -> StoreResult:
        """Run extraction over a conversation and store what it finds."""
        now = now_seconds(now)
        extraction = await self.pipeline.extract(messages, self.memory_store.memories)
        self.last_extraction_at = now
        if not extraction.success:
            return StoreResult(success=False, error=extraction.error)
        if not extraction.memories:
            return StoreResult(success=True)

        last_message = messages[-1] if messages else None
        source = MemorySource(conversation_id=conversation_id,
                              message_id=(last_message.id or '') if last_message else '',
                              url=url,
                              timestamp=now)
        return await self.memory_store.add_memories(extraction.memories, source, now)

    async def retrieve(self,
                       message: str = '',
                       url: Optional[str] = None,
                       options: Optional[RetrievalOptions] = None,
                       token_budget: Optional[int] = None,
                       track_usage: bool = True,
                       now: Optional[float] = None) -> Tuple[List[Memory], str]:
        """Memories for the next prompt and their rendered context text.

        Selected memories are counted as used unless `track_usage` is False.
        """
        context = RetrievalContext(current_message=message,
                                   site_origin=extract_origin(url),
                                   now=now)
        selected, text = self.scorer.get_memories_for_prompt(self.memory_store.memories, context, token_budget, options)
        if track_usage and selected:
            result = await self.memory_store.track_usage([m.id for m in selected], now)
            if not result.success:
                logger.warning(f'Usage tracking failed: {result.error}')
        return selected, text

    async def find_related(self, memory_id: str, limit: int = 5) -> List[RelatedMemory]:
        return await self.clusterer.find_related_memories(memory_id, self.memory_store.memories_by_id, limit)

    async def summarize_conversation(self,
                                     messages: Sequence[ConversationMessage],
                                     conversation_id: str,
                                     memory_ids: Sequence[str] = (),
                                     url: Optional[str] = None,
                                     started_at: Optional[float] = None) -> SummaryResult:
        """Generate and save a summary unless the conversation already has one."""
        existing = await self.summaries.get_by_conversation(conversation_id)
        if not should_generate_summary(len(messages), existing is not None):
            return SummaryResult(success=existing is not None, summary=existing,
                                 error=None if existing else 'Conversation too short to summarize')
        result = await self.summary_generator.generate(messages, conversation_id, memory_ids, url, started_at)
        if result.success:
            await self.summaries.save(result.summary)
        return result

    def set_page(self, page: Optional[PageContext]) -> None:
        self.page = page

    async def update_proactive_settings(self, **changes) -> None:
        settings = self.controller.update_settings(**changes)
        if not settings.enabled:
            await self.scheduler.stop()

    async def handle_payload(self, payload: Any) -> Response:
        """Parse and handle a raw protocol payload; malformed payloads yield a failed response."""
        try:
            request = parse_request(payload)
        except ProtocolError as e:
            kind = payload.get('kind') if isinstance(payload, dict) else None
            logger.warning(f'Rejected request: {e}')
            return Response(kind=str(kind or 'unknown'), success=False, error=str(e))
        return await self.handle(request)

    async def handle(self, request: Request) -> Response:
        """Dispatch a typed request.

        Storage failures come back as unsuccessful responses; ValueError from
        invalid edits is reported the same way.
        """
        try:
            data = await self._dispatch(request)
        except (StorageError, ValueError) as e:
            logger.error(f'Request {request.kind} failed: {e}')
            return Response(kind=request.kind, success=False, error=str(e))
        if isinstance(data, StoreResult):
            return Response(kind=request.kind, success=data.success, data=_store_result_data(data), error=data.error)
        return Response(kind=request.kind, success=True, data=data)

    async def _dispatch(self, request: Request):
        if isinstance(request, ExtractMemoriesRequest):
            if request.store:
                return await self.extract_and_store(request.messages, request.conversation_id, request.url)
            extraction = await self.pipeline.extract(request.messages, self.memory_store.memories)
            if not extraction.success:
                return StoreResult(success=False, error=extraction.error)
            return {'memories': [m.to_dict() for m in extraction.memories]}

        if isinstance(request, AddMemoriesRequest):
            return await self.memory_store.add_memories(request.memories, request.source)
        if isinstance(request, UpdateMemoryRequest):
            return await self.memory_store.update_memory(request.memory_id, request.changes)
        if isinstance(request, DeleteMemoryRequest):
            return await self.memory_store.remove_memory(request.memory_id)
        if isinstance(request, DeleteMemoriesByTypeRequest):
            return await self.memory_store.remove_memories_by_type(request.memory_type)
        if isinstance(request, ClearMemoriesRequest):
            return await self.memory_store.clear_all()

        if isinstance(request, RetrieveMemoriesRequest):
            options = RetrievalOptions(limit=request.limit, types=request.types, scope_to_site=request.scope_to_site)
            selected, text = await self.retrieve(request.message, request.url, options, request.token_budget,
                                                 request.track_usage)
            return {'memories': [m.to_dict() for m in selected], 'context': text}

        if isinstance(request, FindRelatedRequest):
            related = await self.find_related(request.memory_id, request.limit)
            return {'related': [r.to_dict() for r in related]}

        if isinstance(request, EvaluateProactiveRequest):
            page = None
            if request.url:
                page = PageContext(url=request.url, title=request.title, main_content=request.main_content)
                self.set_page(page)
            action = await self.controller.evaluate(page)
            if action is None:
                return {'action': None, 'state': self.controller.state.value}
            return {
                'action': {
                    'type': action.type,
                    'message': action.message,
                    'memoryId': action.memory_id,
                    'metadata': action.metadata
                },
                'state': self.controller.state.value
            }

        if isinstance(request, ResolveProactiveRequest):
            resolution = await self.controller.resolve(request.engaged)
            if resolution is None:
                return StoreResult(success=False, error='No pending proactive action')
            return {'memoryId': resolution.memory_id, 'feedbackApplied': resolution.feedback_applied}

        if isinstance(request, MemoryStatsRequest):
            stats = self.memory_store.get_stats()
            stats['entities'] = await self.clusterer.get_entity_stats()
            return stats

        raise ProtocolError(f'Unhandled request kind: {request.kind}')


def _store_result_data(result: StoreResult) -> Dict[str, Any]:
    return {
        'memories': [m.to_dict() for m in result.memories],
        'created': result.created,
        'updated': result.updated,
        'removed': result.removed
    }
