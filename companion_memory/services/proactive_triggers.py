"""
Trigger detection for proactive surfacing: follow-up candidates, page-context
matches and page-type detection.

Everything here is pure: callers pass the memories, the per-memory cooldowns
and the evaluation time.
"""

import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Mapping, Optional, Sequence

from ..models.core import Memory
from ..utils.timestamp_utils import SECONDS_PER_DAY, SECONDS_PER_HOUR, days_since, to_datetime
from .keyword_index import get_matching_keywords, jaccard_similarity
from .relevance import extract_origin

PAGE_TYPES = ('code', 'article', 'social', 'shopping', 'video', 'other')

# Checked in order; the first matching group wins
_PAGE_TYPE_URL_HINTS = (
    ('code', ('github.com', 'gitlab.com', 'bitbucket.org', 'stackoverflow.com', 'dev.to', 'npmjs.com', 'crates.io',
              'pypi.org')),
    ('video', ('youtube.com', 'vimeo.com', 'twitch.tv', 'netflix.com')),
    ('social', ('twitter.com', 'x.com', 'facebook.com', 'instagram.com', 'linkedin.com', 'reddit.com', 'discord.com')),
    ('shopping', ('amazon.com', 'ebay.com', 'etsy.com', 'shop', 'store')),
    ('article', ('medium.com', 'substack.com', '/blog', '/article', '/news', '/post')),
)
_SHOPPING_TITLE_HINTS = ('buy', 'cart')

# Page types and the memory types they bring to mind
PAGE_TYPE_MATCHES = {
    'code': ('project', 'skill'),
    'article': ('skill', 'opinion'),
    'social': ('person',),
    'shopping': ('preference',),
    'video': ('preference', 'skill'),
}

FOLLOW_UP_TYPES = ('project', 'event')
FOLLOW_UP_MIN_IMPORTANCE = 0.3
PROJECT_STALE_DAYS = 7
EVENT_UPCOMING_HOURS = 24

FOLLOW_UP_PRIORITIES = {
    'event_upcoming': 0.95,
    'event_passed': 0.9,
    'project_stale': 0.6,
}

FOLLOW_UP_TEMPLATES = {
    'event_passed': ('How did {subject} go?', 'Hey, how was {subject}?', 'So... {subject}, how did it turn out?'),
    'event_upcoming': ('Ready for {subject}?', '{subject} is coming up soon!', 'Good luck with {subject}!'),
    'project_stale': ('Any progress on {subject}?', 'Still working on {subject}?', "How's {subject} coming along?"),
}

CONTEXT_MIN_IMPORTANCE = 0.4
CONTEXT_MIN_CONFIDENCE = 0.5
CONTEXT_MIN_SHARED_KEYWORDS = 2
CONTEXT_MATCH_LIMIT = 3

_SUBJECT_PREFIX = re.compile(r"^(user is |user has |user's |they are |their )", re.IGNORECASE)
_SUBJECT_ACTIVITY = re.compile(r'^(working on |learning |studying |practicing )', re.IGNORECASE)
_SUBJECT_BREAK = re.compile(r'[,.]')
MAX_SUBJECT_LENGTH = 50

_WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')
_MONTHS = ('jan', 'feb', 'mar', 'apr', 'may', 'jun', 'jul', 'aug', 'sep', 'oct', 'nov', 'dec')
_MONTH_DAY = re.compile(r'\b(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\s+(\d{1,2})\b')
_NUMERIC_DATE = re.compile(r'\b(\d{1,2})[/-](\d{1,2})\b')


@dataclass
class PageContext:
    """The page the user is currently on."""
    url: str = ''
    origin: Optional[str] = None
    title: str = ''
    detected_page_type: Optional[str] = None
    main_content: Optional[str] = None

    def __post_init__(self):
        if self.origin is None:
            self.origin = extract_origin(self.url)
        if self.detected_page_type is None and self.url:
            self.detected_page_type = detect_page_type(self.url, self.title)
        if self.detected_page_type is not None and self.detected_page_type not in PAGE_TYPES:
            raise ValueError(f'Unknown page type: {self.detected_page_type!r}')


@dataclass
class FollowUpCandidate:
    memory: Memory
    reason: str
    question: str
    priority: float


@dataclass
class ContextMatch:
    memory: Memory
    relevance: float
    match_type: str
    explanation: str
    matched_keywords: List[str] = field(default_factory=list)


def detect_page_type(url: str, title: str = '') -> str:
    """Classify a page as code, video, social, shopping, article or other from its URL and title."""
    url_lower = url.lower()
    title_lower = (title or '').lower()
    for page_type, hints in _PAGE_TYPE_URL_HINTS:
        if any(hint in url_lower for hint in hints):
            return page_type
        if page_type == 'shopping' and any(hint in title_lower for hint in _SHOPPING_TITLE_HINTS):
            return page_type
    return 'other'


def extract_subject(content: str) -> str:
    """Short subject phrase from memory content, e.g. 'User is learning Rust.' -> 'Rust'."""
    subject = _SUBJECT_PREFIX.sub('', content, count=1)
    subject = _SUBJECT_ACTIVITY.sub('', subject, count=1)
    return _SUBJECT_BREAK.split(subject)[0].strip()[:MAX_SUBJECT_LENGTH]


def is_on_cooldown(memory_id: str, cooldowns: Mapping[str, float], now: float) -> bool:
    expires_at = cooldowns.get(memory_id)
    return expires_at is not None and now < expires_at


def _at_noon(moment: datetime) -> datetime:
    return moment.replace(hour=12, minute=0, second=0, microsecond=0)


def _dated(reference: datetime, month: int, day: int) -> Optional[datetime]:
    try:
        date = _at_noon(reference.replace(month=month, day=day))
    except ValueError:
        return None
    if date < reference:
        try:
            date = date.replace(year=date.year + 1)
        except ValueError:
            return None
    return date


def extract_event_date(content: str, created_at: float) -> Optional[float]:
    """Event time mentioned in memory content, resolved against the memory's creation time.

    Understands 'today', 'tomorrow', 'this weekend', weekday names, 'Dec 15' style
    dates and '12/15' style dates. Relative phrases resolve to noon local time,
    'today' to the end of the creation day.

    Returns:
        Epoch seconds, or None when no date is mentioned
    """
    lower = content.lower()
    reference = to_datetime(created_at)

    if 'tomorrow' in lower:
        return _at_noon(reference + timedelta(days=1)).timestamp()
    if 'today' in lower:
        return reference.replace(hour=23, minute=59, second=59, microsecond=999000).timestamp()
    if 'this weekend' in lower:
        days_ahead = (5 - reference.weekday()) % 7 or 7
        return _at_noon(reference + timedelta(days=days_ahead)).timestamp()

    for weekday, name in enumerate(_WEEKDAYS):
        if name in lower:
            days_ahead = (weekday - reference.weekday()) % 7 or 7
            return _at_noon(reference + timedelta(days=days_ahead)).timestamp()

    match = _MONTH_DAY.search(lower)
    if match:
        month = _MONTHS.index(match.group(1)) + 1
        date = _dated(reference, month, int(match.group(2)))
        if date is not None:
            return date.timestamp()

    match = _NUMERIC_DATE.search(lower)
    if match:
        date = _dated(reference, int(match.group(1)), int(match.group(2)))
        if date is not None:
            return date.timestamp()

    return None


def follow_up_reason(memory: Memory, now: float) -> Optional[str]:
    """Why a project or event memory deserves a follow-up question right now, if it does."""
    if memory.type == 'event':
        if memory.expires_at is not None and now > memory.expires_at:
            return 'event_passed'
        event_at = memory.expires_at or extract_event_date(memory.content, memory.created_at)
        if event_at is None:
            return None
        if 0 < (event_at - now) / SECONDS_PER_HOUR <= EVENT_UPCOMING_HOURS:
            return 'event_upcoming'
        # A day of grace so the question comes after the event, not during it
        if memory.expires_at is None and now > event_at + SECONDS_PER_DAY:
            return 'event_passed'
        return None
    if memory.type == 'project' and days_since(memory.last_accessed, now) > PROJECT_STALE_DAYS:
        return 'project_stale'
    return None


def get_follow_up_candidates(memories: Sequence[Memory],
                             cooldowns: Mapping[str, float],
                             now: float,
                             resolved: Sequence[str] = (),
                             rng: Optional[random.Random] = None) -> List[FollowUpCandidate]:
    """Unresolved project and event memories due a follow-up, most urgent first.

    Args:
        memories: Memories to consider
        cooldowns: Memory id to cooldown expiry time
        now: Evaluation time in epoch seconds
        resolved: Memory ids whose follow-up the user already engaged with
        rng: Picks the question template

    Returns:
        Candidates sorted by priority, highest first
    """
    rng = rng or random.Random()
    resolved = set(resolved)
    candidates = []
    for memory in memories:
        if memory.type not in FOLLOW_UP_TYPES or memory.id in resolved:
            continue
        if memory.importance < FOLLOW_UP_MIN_IMPORTANCE or is_on_cooldown(memory.id, cooldowns, now):
            continue
        reason = follow_up_reason(memory, now)
        if reason is None:
            continue
        question = rng.choice(FOLLOW_UP_TEMPLATES[reason]).format(subject=extract_subject(memory.content))
        candidates.append(
            FollowUpCandidate(memory=memory,
                              reason=reason,
                              question=question,
                              priority=FOLLOW_UP_PRIORITIES[reason] * memory.importance))

    candidates.sort(key=lambda c: c.priority, reverse=True)
    return candidates


def find_context_matches(page: PageContext,
                         memories: Sequence[Memory],
                         cooldowns: Mapping[str, float],
                         now: float,
                         strategy=None,
                         limit: int = CONTEXT_MATCH_LIMIT) -> List[ContextMatch]:
    """Memories related to the current page, most relevant first.

    A memory matches when it was learned on the same site, when its type fits the
    page type, or when it shares at least two keywords with the page. A keyword
    match overrides the weaker kinds when it scores high enough.
    """
    if strategy is None:
        from .strategies import HeuristicExtractionStrategy
        strategy = HeuristicExtractionStrategy()

    page_keywords = strategy.extract_keywords(f'{page.title} {page.main_content or ""}'.lower())
    matches = []
    for memory in memories:
        if memory.type == 'identity':
            continue
        if memory.importance < CONTEXT_MIN_IMPORTANCE or memory.confidence < CONTEXT_MIN_CONFIDENCE:
            continue
        if is_on_cooldown(memory.id, cooldowns, now):
            continue

        best = None
        subject = extract_subject(memory.content)
        if page.origin and extract_origin(memory.source.url) == page.origin:
            best = ContextMatch(memory=memory,
                                relevance=0.6 + memory.importance * 0.2,
                                match_type='domain',
                                explanation=f'you mentioned "{subject}" here before')
        elif memory.type in PAGE_TYPE_MATCHES.get(page.detected_page_type, ()):
            best = ContextMatch(memory=memory,
                                relevance=0.5,
                                match_type='page_type',
                                explanation=f'this might relate to {subject}')

        memory_keywords = strategy.extract_keywords(memory.text)
        shared = get_matching_keywords(page_keywords, memory_keywords)
        if len(shared) >= CONTEXT_MIN_SHARED_KEYWORDS:
            relevance = min(
                jaccard_similarity(page_keywords, memory_keywords) + min(len(shared) * 0.12, 0.4) +
                min(memory.access_count * 0.03, 0.15), 1.0)
            if relevance > 0.4:
                best = ContextMatch(memory=memory,
                                    relevance=relevance,
                                    match_type='keyword',
                                    explanation=f'page mentions {", ".join(shared[:2])}',
                                    matched_keywords=shared)

        if best is not None:
            matches.append(best)

    matches.sort(key=lambda m: m.relevance, reverse=True)
    return matches[:limit]
