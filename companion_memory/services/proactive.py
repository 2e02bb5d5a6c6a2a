"""
Proactive memory surfacing: a gated state machine that decides when to bring up
a memory unprompted, and the asyncio scheduler that drives it.
"""

import asyncio
import dataclasses
import enum
import inspect
import math
import random
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from ..models.core import Memory
from ..utils.config import ProactiveSettings, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import SECONDS_PER_HOUR, days_since, hours_since, now_seconds
from .memory_management import MemoryStore
from .proactive_triggers import (PageContext, extract_subject, find_context_matches, get_follow_up_candidates,
                                 is_on_cooldown)

logger = get_logger(__name__)

TRIGGER_TYPES = ('welcome_back', 'follow_up', 'context_match', 'random_recall')

TRIGGER_COOLDOWN_SECONDS = 24 * SECONDS_PER_HOUR
DISMISS_COOLDOWN_SECONDS = 48 * SECONDS_PER_HOUR
MAX_HISTORY = 20

# Absence since the last session, in whole days
ABSENCE_SHORT_DAYS = 1
ABSENCE_MEDIUM_DAYS = 3
ABSENCE_LONG_DAYS = 7
ABSENCE_EXTENDED_DAYS = 30
WELCOME_BACK_MIN_IMPORTANCE = 0.7

CONTEXT_MATCH_MIN_RELEVANCE = 0.5

RECALL_BASE_PROBABILITY = 0.05
RECALL_PROBABILITY_PER_HOUR = 0.02
RECALL_MAX_PROBABILITY = 0.3
RECALL_MIN_IMPORTANCE = 0.5
RECALL_MIN_CONFIDENCE = 0.6

RECALL_TEMPLATES = {
    'project': ("How's {content} coming along?", 'Any updates on {content}?', 'Still working on {content}?'),
    'skill': ("How's learning {content} going?", 'Getting better at {content}?', 'Still practicing {content}?'),
    'person': ("How's {content} doing?", 'Heard from {content} lately?'),
    'preference': ('Still into {content}?',),
    'opinion': ('Still feel that way about {content}?',),
    'event': ('Remember {content}?',),
}
DEFAULT_RECALL_TEMPLATES = ('Thinking about {content}...',)

NOTIFICATION_ANCHOR = 'avatar'
NOTIFICATION_FADE_SECONDS = 15.0


class ProactiveState(enum.Enum):
    IDLE = 'idle'
    EVALUATING = 'evaluating'
    COOLDOWN = 'cooldown'
    TRIGGERED = 'triggered'
    ENGAGED = 'engaged'
    DISMISSED = 'dismissed'


@dataclass
class ProactiveAction:
    """A proactive message the controller decided to show."""
    type: str
    message: str
    memory: Optional[Memory] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def memory_id(self) -> Optional[str]:
        return self.memory.id if self.memory else None


@dataclass
class ProactiveTrigger:
    memory_id: Optional[str]
    trigger_type: str
    timestamp: float


@dataclass
class ProactiveHistoryEntry:
    id: str
    type: str
    message: str
    memory_id: Optional[str]
    timestamp: float
    engaged: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'message': self.message,
            'memoryId': self.memory_id,
            'timestamp': self.timestamp,
            'engaged': self.engaged
        }


@dataclass
class PresentationRequest:
    """Sent to the presenter when a proactive message should be shown."""
    mode: str
    message: str
    trigger_type: str
    memory_id: Optional[str] = None
    anchor: Optional[str] = None
    fade_after_seconds: Optional[float] = None


@dataclass
class ProactiveResolution:
    """Sent to the presenter once the user engaged with or dismissed a proactive message."""
    trigger_type: str
    memory_id: Optional[str]
    engaged: bool
    timestamp: float
    feedback_applied: bool = False


Presenter = Callable[[Union[PresentationRequest, ProactiveResolution]], Any]


class ProactiveController:
    """Decides when and what to surface proactively.

    States run IDLE -> EVALUATING -> COOLDOWN or TRIGGERED, and TRIGGERED ->
    ENGAGED or DISMISSED -> IDLE. Nothing is evaluated while a triggered action
    is unresolved. Candidates are tried in priority order: welcome-back,
    follow-up, context match, random recall.
    """

    def __init__(self,
                 memory_store: MemoryStore,
                 settings: Optional[ProactiveSettings] = None,
                 presenter: Optional[Presenter] = None,
                 strategy=None,
                 rng: Optional[random.Random] = None,
                 last_session_ended_at: Optional[float] = None,
                 now: Optional[float] = None):
        self.memory_store = memory_store
        self.settings = settings or dataclasses.replace(config.proactive)
        self.presenter = presenter
        self.strategy = strategy
        self.rng = rng or random.Random()
        self.last_session_ended_at = last_session_ended_at

        self.state = ProactiveState.IDLE
        self.session_started_at = now_seconds(now)
        self.session_count = 0
        self.last_action_at: Optional[float] = None
        self.memory_cooldowns: Dict[str, float] = {}
        self.resolved_memory_ids: Set[str] = set()
        self.pending: Optional[ProactiveTrigger] = None
        self._history: List[ProactiveHistoryEntry] = []
        self._evaluations = 0
        self._welcomed = False

    @property
    def cooldown_seconds(self) -> float:
        return self.settings.cooldown_minutes * 60

    def can_be_proactive(self, now: Optional[float] = None) -> bool:
        if not self.settings.enabled:
            return False
        if self.state is ProactiveState.TRIGGERED:
            return False
        if self.session_count >= self.settings.max_per_session:
            return False
        if self.last_action_at is not None and now_seconds(now) - self.last_action_at < self.cooldown_seconds:
            return False
        return True

    def prune_expired_cooldowns(self, now: Optional[float] = None) -> None:
        now = now_seconds(now)
        self.memory_cooldowns = {k: v for k, v in self.memory_cooldowns.items() if v > now}

    def _welcome_back(self, memories: Sequence[Memory], now: float) -> Optional[ProactiveAction]:
        if self.last_session_ended_at is None:
            return None
        absence_days = math.floor(days_since(self.last_session_ended_at, now))
        if absence_days < ABSENCE_SHORT_DAYS:
            return None
        if not any(m.importance >= WELCOME_BACK_MIN_IMPORTANCE and not is_on_cooldown(m.id, self.memory_cooldowns, now)
                   for m in memories):
            return None

        follow_ups = get_follow_up_candidates(memories, self.memory_cooldowns, now, self.resolved_memory_ids, self.rng)
        top = follow_ups[0] if follow_ups else None

        if absence_days >= ABSENCE_EXTENDED_DAYS:
            greeting = f"It's been a while! {top.question}" if top else 'Hey, long time no see!'
        elif absence_days >= ABSENCE_LONG_DAYS:
            greeting = f'Welcome back! By the way, {top.question.lower()}' if top else 'Welcome back!'
        elif absence_days >= ABSENCE_MEDIUM_DAYS:
            greeting = f'Hey again! {top.question}' if top else 'Hey, good to see you!'
        else:
            greeting = 'Hey!'

        return ProactiveAction(type='welcome_back',
                               message=greeting,
                               memory=top.memory if top else None,
                               metadata={'absenceDays': absence_days})

    def _follow_up(self, memories: Sequence[Memory], now: float) -> Optional[ProactiveAction]:
        candidates = get_follow_up_candidates(memories, self.memory_cooldowns, now, self.resolved_memory_ids, self.rng)
        if not candidates:
            return None
        top = candidates[0]
        return ProactiveAction(type='follow_up', message=top.question, memory=top.memory, metadata={'reason': top.reason})

    def _context_match(self, memories: Sequence[Memory], page: PageContext, now: float) -> Optional[ProactiveAction]:
        matches = find_context_matches(page, memories, self.memory_cooldowns, now, self.strategy)
        if not matches or matches[0].relevance <= CONTEXT_MATCH_MIN_RELEVANCE:
            return None
        top = matches[0]
        return ProactiveAction(type='context_match',
                               message=f'Hey, {top.explanation}!',
                               memory=top.memory,
                               metadata={'matchType': top.match_type})

    def recall_probability(self, now: Optional[float] = None) -> float:
        if self.last_action_at is None:
            return RECALL_MAX_PROBABILITY
        hours = max(hours_since(self.last_action_at, now), 0.0)
        return min(RECALL_BASE_PROBABILITY + hours * RECALL_PROBABILITY_PER_HOUR, RECALL_MAX_PROBABILITY)

    def _random_recall(self, memories: Sequence[Memory], now: float) -> Optional[ProactiveAction]:
        if self.rng.random() > self.recall_probability(now):
            return None

        eligible = [
            m for m in memories if m.type != 'identity' and m.importance >= RECALL_MIN_IMPORTANCE and
            m.confidence >= RECALL_MIN_CONFIDENCE and not is_on_cooldown(m.id, self.memory_cooldowns, now)
        ]
        if not eligible:
            return None

        # Long-unaccessed memories are favoured
        weights = [
            m.importance * 0.5 + m.confidence * 0.2 + min(days_since(m.last_accessed, now) / 14, 1.0) * 0.2 +
            min(m.access_count * 0.1, 0.5) * 0.1 for m in eligible
        ]
        chosen = eligible[-1]
        remaining = self.rng.random() * sum(weights)
        for memory, weight in zip(eligible, weights):
            remaining -= weight
            if remaining <= 0:
                chosen = memory
                break

        template = self.rng.choice(RECALL_TEMPLATES.get(chosen.type, DEFAULT_RECALL_TEMPLATES))
        return ProactiveAction(type='random_recall',
                               message=template.format(content=extract_subject(chosen.content)),
                               memory=chosen)

    def select_action(self,
                      memories: Sequence[Memory],
                      page: Optional[PageContext] = None,
                      now: Optional[float] = None,
                      is_session_start: bool = False) -> Optional[ProactiveAction]:
        """Best proactive action for the current moment, ignoring the controller's guards."""
        now = now_seconds(now)
        if is_session_start and self.settings.welcome_back_enabled and not self._welcomed:
            action = self._welcome_back(memories, now)
            if action:
                return action

        if self.settings.follow_up_enabled:
            action = self._follow_up(memories, now)
            if action:
                return action

        if self.settings.context_match_enabled and page is not None:
            action = self._context_match(memories, page, now)
            if action:
                return action

        if self.settings.random_recall_enabled:
            return self._random_recall(memories, now)
        return None

    async def _emit(self, event: Union[PresentationRequest, ProactiveResolution]) -> None:
        if self.presenter is None:
            return
        result = self.presenter(event)
        if inspect.isawaitable(result):
            await result

    def _presentation(self, action: ProactiveAction) -> PresentationRequest:
        if self.settings.display_mode == 'chat':
            return PresentationRequest(mode='append_to_conversation',
                                       message=action.message,
                                       trigger_type=action.type,
                                       memory_id=action.memory_id)
        return PresentationRequest(mode='show_notification',
                                   message=action.message,
                                   trigger_type=action.type,
                                   memory_id=action.memory_id,
                                   anchor=NOTIFICATION_ANCHOR,
                                   fade_after_seconds=NOTIFICATION_FADE_SECONDS)

    async def evaluate(self,
                       page: Optional[PageContext] = None,
                       memories: Optional[Sequence[Memory]] = None,
                       now: Optional[float] = None) -> Optional[ProactiveAction]:
        """Check the guards and, if they pass, trigger the highest-priority candidate.

        Args:
            page: Current page, needed for context matches
            memories: Memories to consider, defaults to everything in the memory store
            now: Evaluation time in epoch seconds

        Returns:
            The triggered action, or None
        """
        now = now_seconds(now)
        if self.state is ProactiveState.TRIGGERED:
            logger.debug('Proactive action pending resolution, skipping evaluation')
            return None

        self.state = ProactiveState.EVALUATING
        if not self.can_be_proactive(now):
            self.state = ProactiveState.COOLDOWN
            return None

        memories = self.memory_store.memories if memories is None else memories
        self.prune_expired_cooldowns(now)
        is_session_start = self._evaluations == 0
        self._evaluations += 1

        action = self.select_action(memories, page, now, is_session_start)
        if action is None:
            self.state = ProactiveState.COOLDOWN
            return None

        await self._trigger(action, now)
        return action

    async def _trigger(self, action: ProactiveAction, now: float) -> None:
        self.state = ProactiveState.TRIGGERED
        self.pending = ProactiveTrigger(memory_id=action.memory_id, trigger_type=action.type, timestamp=now)
        self.last_action_at = now
        self.session_count += 1
        if action.type == 'welcome_back':
            self._welcomed = True
        if action.memory_id:
            self.memory_cooldowns[action.memory_id] = now + TRIGGER_COOLDOWN_SECONDS

        self._history.append(
            ProactiveHistoryEntry(id=str(uuid.uuid4()),
                                  type=action.type,
                                  message=action.message,
                                  memory_id=action.memory_id,
                                  timestamp=now))
        self._history = self._history[-MAX_HISTORY:]

        logger.info(f'Proactive {action.type} triggered ({self.session_count}/{self.settings.max_per_session})')
        await self._emit(self._presentation(action))

    async def resolve(self, engaged: bool, now: Optional[float] = None) -> Optional[ProactiveResolution]:
        """Record the user's response to the pending action and return to IDLE.

        Engagement and dismissal update the memory's feedback through the memory
        store. A dismissed memory rests for 48 hours, and an engaged follow-up
        counts as resolved and is not asked about again.
        """
        if self.state is not ProactiveState.TRIGGERED or self.pending is None:
            logger.debug('No pending proactive action to resolve')
            return None

        now = now_seconds(now)
        pending = self.pending
        self.state = ProactiveState.ENGAGED if engaged else ProactiveState.DISMISSED

        for entry in reversed(self._history):
            if entry.memory_id == pending.memory_id and entry.engaged is None:
                entry.engaged = engaged
                break

        feedback_applied = False
        if pending.memory_id:
            result = await self.memory_store.apply_feedback(pending.memory_id, engaged, now)
            feedback_applied = result.success and result.updated > 0
            if not result.success:
                logger.warning(f'Feedback for memory {pending.memory_id} not saved: {result.error}')
            if not engaged:
                self.memory_cooldowns[pending.memory_id] = now + DISMISS_COOLDOWN_SECONDS
            elif pending.trigger_type == 'follow_up':
                self.resolved_memory_ids.add(pending.memory_id)

        resolution = ProactiveResolution(trigger_type=pending.trigger_type,
                                         memory_id=pending.memory_id,
                                         engaged=engaged,
                                         timestamp=now,
                                         feedback_applied=feedback_applied)
        self.pending = None
        self.last_action_at = now
        self.state = ProactiveState.IDLE
        logger.info(f'Proactive {pending.trigger_type} {"engaged" if engaged else "dismissed"}')
        await self._emit(resolution)
        return resolution

    def update_settings(self, **changes) -> ProactiveSettings:
        """Replace individual settings.

        Raises:
            ValueError: If a setting name is unknown
        """
        known = {f.name for f in dataclasses.fields(ProactiveSettings)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f'Unknown proactive settings: {", ".join(sorted(unknown))}')
        self.settings = dataclasses.replace(self.settings, **changes)
        return self.settings

    def end_session(self, now: Optional[float] = None) -> float:
        """Mark the session as ended; the next session's welcome-back measures absence from here."""
        self.last_session_ended_at = now_seconds(now)
        return self.last_session_ended_at

    def get_history(self) -> List[ProactiveHistoryEntry]:
        """Proactive messages shown this session, newest first."""
        return list(reversed(self._history))

    def clear_history(self) -> None:
        self._history = []

    def reset_session_count(self) -> None:
        self.session_count = 0


class ProactiveScheduler:
    """Runs the controller at session start and then every cooldown interval.

    The loop stops by itself once proactive surfacing is disabled, and `stop()`
    cancels it when the session ends.
    """

    def __init__(self,
                 controller: ProactiveController,
                 page_provider: Optional[Callable[[], Optional[PageContext]]] = None,
                 interval_seconds: Optional[float] = None):
        self.controller = controller
        self.page_provider = page_provider
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _interval(self) -> float:
        return self.interval_seconds if self.interval_seconds is not None else self.controller.cooldown_seconds

    async def _run(self) -> None:
        while self.controller.settings.enabled:
            try:
                page = self.page_provider() if self.page_provider else None
                await self.controller.evaluate(page)
            except Exception as e:
                logger.error(f'Proactive evaluation failed: {e}')
            await asyncio.sleep(self._interval())
        logger.info('Proactive scheduler stopped: feature disabled')

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.debug('Proactive scheduler started')

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug('Proactive scheduler cancelled')
