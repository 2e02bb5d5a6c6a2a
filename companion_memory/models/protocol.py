"""
Tagged request/response protocol for callers outside the memory subsystem.

Payloads are plain mappings with a `kind` tag. `parse_request` validates them
into one of the request dataclasses below and raises ProtocolError for anything
else, so handlers never see loosely-typed input.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from ..utils.config import MEMORY_TYPES
from .core import MESSAGE_ROLES, ConversationMessage, ExtractedMemory, MemorySource


class ProtocolError(ValueError):
    """Raised for malformed or unknown request payloads."""
    pass


# Request field names accepted by update_memory, mapped to Memory attributes
_EDITABLE_FIELDS = {
    'type': 'type',
    'content': 'content',
    'context': 'context',
    'importance': 'importance',
    'confidence': 'confidence',
    'expiresAt': 'expires_at',
}


@dataclass
class ExtractMemoriesRequest:
    messages: List[ConversationMessage]
    conversation_id: str = ''
    url: Optional[str] = None
    store: bool = True
    kind: str = field(default='extract_memories', init=False)


@dataclass
class AddMemoriesRequest:
    memories: List[ExtractedMemory]
    source: MemorySource = field(default_factory=MemorySource)
    kind: str = field(default='add_memories', init=False)


@dataclass
class UpdateMemoryRequest:
    memory_id: str
    changes: Dict[str, Any]
    kind: str = field(default='update_memory', init=False)


@dataclass
class DeleteMemoryRequest:
    memory_id: str
    kind: str = field(default='delete_memory', init=False)


@dataclass
class DeleteMemoriesByTypeRequest:
    memory_type: str
    kind: str = field(default='delete_memories_by_type', init=False)


@dataclass
class ClearMemoriesRequest:
    kind: str = field(default='clear_memories', init=False)


@dataclass
class RetrieveMemoriesRequest:
    message: str = ''
    url: Optional[str] = None
    limit: Optional[int] = None
    types: Optional[List[str]] = None
    token_budget: Optional[int] = None
    scope_to_site: bool = False
    track_usage: bool = True
    kind: str = field(default='retrieve_memories', init=False)


@dataclass
class FindRelatedRequest:
    memory_id: str
    limit: int = 5
    kind: str = field(default='find_related', init=False)


@dataclass
class EvaluateProactiveRequest:
    url: str = ''
    title: str = ''
    main_content: Optional[str] = None
    kind: str = field(default='evaluate_proactive', init=False)


@dataclass
class ResolveProactiveRequest:
    engaged: bool
    kind: str = field(default='resolve_proactive', init=False)


@dataclass
class MemoryStatsRequest:
    kind: str = field(default='memory_stats', init=False)


Request = Union[ExtractMemoriesRequest, AddMemoriesRequest, UpdateMemoryRequest, DeleteMemoryRequest,
                DeleteMemoriesByTypeRequest, ClearMemoriesRequest, RetrieveMemoriesRequest, FindRelatedRequest,
                EvaluateProactiveRequest, ResolveProactiveRequest, MemoryStatsRequest]


@dataclass
class Response:
    """Result of handling one request."""
    kind: str
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind, 'success': self.success, 'data': self.data, 'error': self.error}


def _field(payload: Mapping[str, Any], name: str, types: Union[type, Tuple[type, ...]], required: bool = False,
           default: Any = None) -> Any:
    value = payload.get(name)
    if value is None:
        if required:
            raise ProtocolError(f'Missing required field: {name}')
        return default
    # bool is an int subclass; reject it where a number is expected
    if isinstance(value, bool) and bool not in (types if isinstance(types, tuple) else (types,)):
        raise ProtocolError(f'Field {name} has invalid type bool')
    if not isinstance(value, types):
        raise ProtocolError(f'Field {name} has invalid type {type(value).__name__}')
    return value


def _non_empty(payload: Mapping[str, Any], name: str) -> str:
    value = _field(payload, name, str, required=True)
    if not value.strip():
        raise ProtocolError(f'Field {name} must not be empty')
    return value


def _memory_type(value: Any) -> str:
    if value not in MEMORY_TYPES:
        raise ProtocolError(f'Unknown memory type: {value!r}')
    return value


def _parse_message(item: Any) -> ConversationMessage:
    if not isinstance(item, dict):
        raise ProtocolError('Each message must be an object')
    role = _field(item, 'role', str, required=True)
    if role not in MESSAGE_ROLES:
        raise ProtocolError(f'Unknown message role: {role!r}')
    return ConversationMessage(role=role,
                               content=_field(item, 'content', str, required=True),
                               id=_field(item, 'id', str),
                               ts=_field(item, 'ts', (int, float)))


def _parse_draft(item: Any) -> ExtractedMemory:
    if not isinstance(item, dict):
        raise ProtocolError('Each memory must be an object')
    return ExtractedMemory(type=_memory_type(_field(item, 'type', str, required=True)),
                           content=_non_empty(item, 'content'),
                           importance=_field(item, 'importance', (int, float), default=0.5),
                           confidence=_field(item, 'confidence', (int, float), default=0.5),
                           context=_field(item, 'context', str))


def _parse_source(payload: Mapping[str, Any]) -> MemorySource:
    source = _field(payload, 'source', dict, default={})
    return MemorySource(conversation_id=_field(source, 'conversationId', str, default=''),
                        message_id=_field(source, 'messageId', str, default=''),
                        url=_field(source, 'url', str),
                        timestamp=_field(source, 'timestamp', (int, float)))


def _parse_extract(payload: Mapping[str, Any]) -> ExtractMemoriesRequest:
    messages = _field(payload, 'messages', list, required=True)
    return ExtractMemoriesRequest(messages=[_parse_message(m) for m in messages],
                                  conversation_id=_field(payload, 'conversationId', str, default=''),
                                  url=_field(payload, 'url', str),
                                  store=_field(payload, 'store', bool, default=True))


def _parse_add(payload: Mapping[str, Any]) -> AddMemoriesRequest:
    memories = _field(payload, 'memories', list, required=True)
    return AddMemoriesRequest(memories=[_parse_draft(m) for m in memories], source=_parse_source(payload))


def _parse_update(payload: Mapping[str, Any]) -> UpdateMemoryRequest:
    updates = _field(payload, 'updates', dict, required=True)
    unknown = set(updates) - set(_EDITABLE_FIELDS)
    if unknown:
        raise ProtocolError(f'Cannot edit memory fields: {", ".join(sorted(unknown))}')
    changes = {}
    for name, value in updates.items():
        if name == 'type':
            value = _memory_type(value)
        elif name in ('importance', 'confidence'):
            value = _field(updates, name, (int, float), required=True)
        elif name == 'expiresAt':
            value = _field(updates, name, (int, float))
        elif name == 'content':
            value = _non_empty(updates, name)
        else:
            value = _field(updates, name, str)
        changes[_EDITABLE_FIELDS[name]] = value
    return UpdateMemoryRequest(memory_id=_non_empty(payload, 'id'), changes=changes)


def _parse_retrieve(payload: Mapping[str, Any]) -> RetrieveMemoriesRequest:
    types = _field(payload, 'types', list)
    if types is not None:
        types = [_memory_type(t) for t in types]
    limit = _field(payload, 'limit', int)
    if limit is not None and limit < 1:
        raise ProtocolError('Field limit must be positive')
    return RetrieveMemoriesRequest(message=_field(payload, 'message', str, default=''),
                                   url=_field(payload, 'url', str),
                                   limit=limit,
                                   types=types,
                                   token_budget=_field(payload, 'tokenBudget', int),
                                   scope_to_site=_field(payload, 'scopeToSite', bool, default=False),
                                   track_usage=_field(payload, 'trackUsage', bool, default=True))


def _parse_find_related(payload: Mapping[str, Any]) -> FindRelatedRequest:
    limit = _field(payload, 'limit', int, default=5)
    if limit < 1:
        raise ProtocolError('Field limit must be positive')
    return FindRelatedRequest(memory_id=_non_empty(payload, 'memoryId'), limit=limit)


def _parse_resolve(payload: Mapping[str, Any]) -> ResolveProactiveRequest:
    outcome = _field(payload, 'outcome', str, required=True)
    if outcome not in ('engaged', 'dismissed'):
        raise ProtocolError(f'Unknown proactive outcome: {outcome!r}')
    return ResolveProactiveRequest(engaged=outcome == 'engaged')


_PARSERS = {
    'extract_memories': _parse_extract,
    'add_memories': _parse_add,
    'update_memory': _parse_update,
    'delete_memory': lambda p: DeleteMemoryRequest(memory_id=_non_empty(p, 'id')),
    'delete_memories_by_type': lambda p: DeleteMemoriesByTypeRequest(memory_type=_memory_type(p.get('type'))),
    'clear_memories': lambda p: ClearMemoriesRequest(),
    'retrieve_memories': _parse_retrieve,
    'find_related': _parse_find_related,
    'evaluate_proactive': lambda p: EvaluateProactiveRequest(url=_field(p, 'url', str, default=''),
                                                             title=_field(p, 'title', str, default=''),
                                                             main_content=_field(p, 'mainContent', str)),
    'resolve_proactive': _parse_resolve,
    'memory_stats': lambda p: MemoryStatsRequest(),
}

REQUEST_KINDS = tuple(_PARSERS)


def parse_request(payload: Any) -> Request:
    """Validate a raw payload into a typed request.

    Args:
        payload: Mapping with a `kind` tag and the fields that kind needs

    Returns:
        The matching request dataclass

    Raises:
        ProtocolError: If the payload is not a mapping, the kind is unknown or a field is malformed
    """
    if not isinstance(payload, dict):
        raise ProtocolError('Request payload must be an object')
    kind = payload.get('kind')
    parser = _PARSERS.get(kind)
    if parser is None:
        raise ProtocolError(f'Unknown request kind: {kind!r}')
    try:
        return parser(payload)
    except ValueError as e:
        if isinstance(e, ProtocolError):
            raise
        raise ProtocolError(str(e)) from e
