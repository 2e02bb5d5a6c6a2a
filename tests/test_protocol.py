"""Tests for request payload validation."""

import pytest

from companion_memory.models.protocol import (REQUEST_KINDS, AddMemoriesRequest, ClearMemoriesRequest,
                                              DeleteMemoriesByTypeRequest, DeleteMemoryRequest, EvaluateProactiveRequest,
                                              ExtractMemoriesRequest, FindRelatedRequest, ProtocolError,
                                              ResolveProactiveRequest, Response, RetrieveMemoriesRequest,
                                              UpdateMemoryRequest, parse_request)


class TestParseRequest:

    def test_extract_memories(self):
        request = parse_request({
            'kind': 'extract_memories',
            'messages': [{'role': 'user', 'content': 'I play bass', 'id': 'm1', 'ts': 1.5}],
            'conversationId': 'conv-1',
            'url': 'https://example.com',
        })

        assert isinstance(request, ExtractMemoriesRequest)
        assert request.kind == 'extract_memories'
        assert request.messages[0].role == 'user'
        assert request.messages[0].ts == 1.5
        assert request.conversation_id == 'conv-1'
        assert request.store is True

    def test_add_memories_with_source(self):
        request = parse_request({
            'kind': 'add_memories',
            'memories': [{'type': 'skill', 'content': 'Plays bass', 'importance': 1}],
            'source': {'conversationId': 'conv-1', 'url': 'https://example.com', 'timestamp': 10},
        })

        assert isinstance(request, AddMemoriesRequest)
        assert request.memories[0].importance == 1.0
        assert request.memories[0].confidence == 0.5
        assert request.source.conversation_id == 'conv-1'
        assert request.source.timestamp == 10

    def test_update_memory_maps_field_names(self):
        request = parse_request({
            'kind': 'update_memory',
            'id': 'mem-1',
            'updates': {'content': 'Plays upright bass', 'expiresAt': 99.0, 'type': 'skill'},
        })

        assert isinstance(request, UpdateMemoryRequest)
        assert request.memory_id == 'mem-1'
        assert request.changes == {'content': 'Plays upright bass', 'expires_at': 99.0, 'type': 'skill'}

    def test_retrieve_defaults_and_options(self):
        default = parse_request({'kind': 'retrieve_memories'})
        scoped = parse_request({
            'kind': 'retrieve_memories',
            'message': 'bass tips',
            'limit': 3,
            'types': ['skill'],
            'tokenBudget': 200,
            'scopeToSite': True,
            'trackUsage': False,
        })

        assert default == RetrieveMemoriesRequest()
        assert scoped.limit == 3
        assert scoped.types == ['skill']
        assert scoped.token_budget == 200
        assert scoped.scope_to_site is True
        assert scoped.track_usage is False

    @pytest.mark.parametrize('payload, expected', [
        ({'kind': 'delete_memory', 'id': 'm1'}, DeleteMemoryRequest(memory_id='m1')),
        ({'kind': 'delete_memories_by_type', 'type': 'event'}, DeleteMemoriesByTypeRequest(memory_type='event')),
        ({'kind': 'clear_memories'}, ClearMemoriesRequest()),
        ({'kind': 'find_related', 'memoryId': 'm1'}, FindRelatedRequest(memory_id='m1', limit=5)),
        ({'kind': 'evaluate_proactive', 'url': 'https://x.io', 'mainContent': 'body'},
         EvaluateProactiveRequest(url='https://x.io', main_content='body')),
        ({'kind': 'resolve_proactive', 'outcome': 'dismissed'}, ResolveProactiveRequest(engaged=False)),
    ])
    def test_simple_kinds(self, payload, expected):
        assert parse_request(payload) == expected

    def test_every_kind_is_known(self):
        assert set(REQUEST_KINDS) == {
            'extract_memories', 'add_memories', 'update_memory', 'delete_memory', 'delete_memories_by_type',
            'clear_memories', 'retrieve_memories', 'find_related', 'evaluate_proactive', 'resolve_proactive',
            'memory_stats'
        }


class TestRejectedPayloads:

    @pytest.mark.parametrize('payload, message', [
        (['not', 'a', 'mapping'], 'must be an object'),
        ({'kind': 'launch_rockets'}, 'Unknown request kind'),
        ({}, 'Unknown request kind'),
        ({'kind': 'extract_memories'}, 'Missing required field: messages'),
        ({'kind': 'extract_memories', 'messages': [{'role': 'robot', 'content': 'hi'}]}, 'Unknown message role'),
        ({'kind': 'extract_memories', 'messages': ['hi']}, 'Each message must be an object'),
        ({'kind': 'add_memories', 'memories': [{'type': 'hobby', 'content': 'x'}]}, 'Unknown memory type'),
        ({'kind': 'add_memories', 'memories': [{'type': 'skill', 'content': '  '}]}, 'must not be empty'),
        ({'kind': 'add_memories', 'memories': [{'type': 'skill', 'content': 'x', 'importance': True}]}, 'bool'),
        ({'kind': 'add_memories', 'memories': [{'type': 'skill', 'content': 'x'}], 'source': 'web'}, 'source'),
        ({'kind': 'update_memory', 'id': 'm1', 'updates': {'accessCount': 3}}, 'accessCount'),
        ({'kind': 'update_memory', 'id': 'm1', 'updates': {'importance': 'high'}}, 'importance'),
        ({'kind': 'update_memory', 'updates': {'content': 'x'}}, 'Missing required field: id'),
        ({'kind': 'delete_memory', 'id': ''}, 'must not be empty'),
        ({'kind': 'delete_memories_by_type', 'type': 'hobby'}, 'Unknown memory type'),
        ({'kind': 'retrieve_memories', 'limit': 0}, 'limit must be positive'),
        ({'kind': 'retrieve_memories', 'types': ['skill', 'nope']}, 'Unknown memory type'),
        ({'kind': 'retrieve_memories', 'scopeToSite': 'yes'}, 'scopeToSite'),
        ({'kind': 'find_related', 'memoryId': 'm1', 'limit': -1}, 'limit must be positive'),
        ({'kind': 'resolve_proactive', 'outcome': 'ignored'}, 'Unknown proactive outcome'),
    ])
    def test_rejected(self, payload, message):
        with pytest.raises(ProtocolError, match=message):
            parse_request(payload)

    def test_protocol_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            parse_request({'kind': 'delete_memory'})


def test_response_to_dict():
    response = Response(kind='memory_stats', success=True, data={'total': 3})

    assert response.to_dict() == {'kind': 'memory_stats', 'success': True, 'data': {'total': 3}, 'error': None}
