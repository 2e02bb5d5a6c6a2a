"""Tests for the deduplicating memory store."""

import pytest

from conftest import DAY, NOW
from companion_memory.models.core import ExtractedMemory, MemorySource
from companion_memory.services.decay import DecayModel
from companion_memory.services.entity_clustering import EntityClusterer
from companion_memory.services.memory_management import MemoryStore, content_tokens, is_similar_content
from companion_memory.utils.config import FeedbackConfig, MemoryConfig


def build_memory_store(store, memory_config=None):
    memory_config = memory_config or MemoryConfig()
    return MemoryStore(store,
                       EntityClusterer(store, memory_config=memory_config),
                       DecayModel(memory_config, FeedbackConfig()),
                       memory_config)


@pytest.fixture
def memory_store(store):
    return build_memory_store(store)


def fail_writes(monkeypatch, store, *methods):
    """Make the engine collection raise on the named methods, so every retry fails."""

    async def broken(*args, **kwargs):
        raise RuntimeError('disk unavailable')

    for method in methods:
        monkeypatch.setattr(store.memories.inner, method, broken)


class TestIsSimilarContent:

    @pytest.mark.parametrize('first, second', [
        ('User knows React', 'user knows react'),
        ('User knows React', 'User knows React and Redux'),
        ('Loves hiking in the mountains', 'Loves hiking in mountains'),
    ])
    def test_similar(self, first, second):
        assert is_similar_content(first, second, 0.6)

    def test_dissimilar(self):
        assert not is_similar_content('Lives in Berlin', 'Plays the cello on weekends', 0.6)

    @pytest.mark.parametrize('first, second', [
        ('User likes the beach', 'User likes the mountains'),
        ('They work at a bank', 'They work at a zoo'),
    ])
    def test_boilerplate_words_do_not_count(self, first, second):
        assert not is_similar_content(first, second, 0.6)

    def test_content_tokens_drop_short_and_stop_words(self):
        assert content_tokens('User is an expert at Go, and loves TypeScript!') == ['expert', 'loves', 'typescript']


class TestAddMemory:

    @pytest.mark.asyncio
    async def test_duplicate_merges_into_existing(self, memory_store, store):
        first = await memory_store.add_memory(ExtractedMemory(type='skill', content='User knows React', importance=0.5),
                                              now=NOW)
        second = await memory_store.add_memory(ExtractedMemory(type='skill', content='user knows react', importance=0.8),
                                               now=NOW + 60)

        assert first.created == 1
        assert second.updated == 1
        assert len(memory_store) == 1
        merged = memory_store.memories[0]
        assert merged.id == first.memory.id
        assert merged.importance == 0.8
        assert merged.access_count == 1
        assert merged.last_accessed == NOW + 60
        assert await store.memories.count() == 1

    @pytest.mark.asyncio
    async def test_same_content_different_type_is_kept_apart(self, memory_store):
        await memory_store.add_memory(ExtractedMemory(type='skill', content='Rust'), now=NOW)
        await memory_store.add_memory(ExtractedMemory(type='preference', content='Rust'), now=NOW)

        assert len(memory_store) == 2

    @pytest.mark.asyncio
    async def test_shared_boilerplate_is_not_a_duplicate(self, memory_store):
        await memory_store.add_memory(ExtractedMemory(type='preference', content='User likes the beach'), now=NOW)
        result = await memory_store.add_memory(ExtractedMemory(type='preference', content='User likes the mountains'),
                                               now=NOW)

        assert result.created == 1
        assert len(memory_store) == 2

    @pytest.mark.asyncio
    async def test_merges_into_closest_match(self, memory_store):
        await memory_store.add_memory(ExtractedMemory(type='opinion', content='alpha beta gamma delta omega'), now=NOW)
        closest = await memory_store.add_memory(
            ExtractedMemory(type='opinion', content='zeta epsilon delta gamma beta alpha'), now=NOW)
        assert closest.created == 1

        result = await memory_store.add_memory(ExtractedMemory(type='opinion', content='alpha beta gamma delta epsilon'),
                                               now=NOW + 10)

        assert result.updated == 1
        assert result.memory.id == closest.memory.id
        assert len(memory_store) == 2

    @pytest.mark.asyncio
    async def test_scores_are_clamped(self, memory_store):
        result = await memory_store.add_memory(ExtractedMemory(type='skill', content='Writes Go', importance=1.7,
                                                               confidence=-2),
                                               now=NOW)

        assert result.memory.importance == 1.0
        assert result.memory.confidence == 0.0

    @pytest.mark.asyncio
    async def test_source_is_recorded(self, memory_store):
        source = MemorySource(conversation_id='conv-1', message_id='m9', url='https://github.com/x', timestamp=NOW)

        result = await memory_store.add_memory(ExtractedMemory(type='project', content='Building a chess app'), source, NOW)

        assert result.memory.source == source
        assert result.memory.created_at == NOW

    @pytest.mark.asyncio
    async def test_entities_are_linked(self, memory_store):
        result = await memory_store.add_memory(ExtractedMemory(type='skill', content='Works with React and Docker'),
                                               now=NOW)

        links = await memory_store.clusterer.get_links_for_memory(result.memory.id)
        assert {link.entity_name for link in links} == {'react', 'docker'}

    @pytest.mark.asyncio
    async def test_storage_failure_leaves_state_unchanged(self, memory_store, store, monkeypatch):
        fail_writes(monkeypatch, store, 'put')

        result = await memory_store.add_memory(ExtractedMemory(type='skill', content='Knows Elixir'), now=NOW)

        assert result.success is False
        assert 'disk unavailable' in result.error
        assert len(memory_store) == 0


class TestAddMemories:

    @pytest.mark.asyncio
    async def test_batch_deduplicates_within_itself_and_against_store(self, memory_store):
        await memory_store.add_memory(ExtractedMemory(type='preference', content='Prefers dark mode', importance=0.4),
                                      now=NOW)

        result = await memory_store.add_memories([
            ExtractedMemory(type='skill', content='Knows Kotlin', importance=0.6),
            ExtractedMemory(type='skill', content='knows kotlin', importance=0.9),
            ExtractedMemory(type='preference', content='Prefers dark mode', importance=0.7),
        ], now=NOW + 10)

        assert result.success
        assert result.created == 1
        assert result.updated == 1
        assert len(memory_store) == 2
        by_content = {m.content: m for m in memory_store.memories}
        assert by_content['Knows Kotlin'].importance == 0.9
        assert by_content['Prefers dark mode'].importance == 0.7

    @pytest.mark.asyncio
    async def test_empty_batch(self, memory_store):
        result = await memory_store.add_memories([])

        assert result.success
        assert result.memories == []

    @pytest.mark.asyncio
    async def test_batch_failure_writes_nothing(self, memory_store, store, monkeypatch):
        fail_writes(monkeypatch, store, 'put_many')

        result = await memory_store.add_memories([ExtractedMemory(type='skill', content='Knows Scala')], now=NOW)

        assert result.success is False
        assert len(memory_store) == 0


class TestUpdateMemory:

    @pytest.mark.asyncio
    async def test_edit_marks_memory_verified(self, memory_store):
        added = await memory_store.add_memory(ExtractedMemory(type='skill', content='Knows Java', importance=0.4), now=NOW)

        result = await memory_store.update_memory(added.memory.id, {'importance': 1.5, 'context': 'Ten years'}, now=NOW + 5)

        updated = result.memory
        assert updated.importance == 1.0
        assert updated.context == 'Ten years'
        assert updated.user_verified is True
        assert updated.last_accessed == NOW + 5

    @pytest.mark.asyncio
    async def test_unknown_field_is_rejected(self, memory_store):
        added = await memory_store.add_memory(ExtractedMemory(type='skill', content='Knows Java'), now=NOW)

        with pytest.raises(ValueError, match='access_count'):
            await memory_store.update_memory(added.memory.id, {'access_count': 10})

    @pytest.mark.asyncio
    async def test_content_edit_relinks_entities(self, memory_store):
        added = await memory_store.add_memory(ExtractedMemory(type='skill', content='Uses React daily'), now=NOW)
        memory_id = added.memory.id

        await memory_store.update_memory(memory_id, {'content': 'Uses Svelte daily'}, now=NOW)

        links = await memory_store.clusterer.get_links_for_memory(memory_id)
        assert [link.entity_name for link in links] == ['svelte']

    @pytest.mark.asyncio
    async def test_missing_memory_is_a_no_op(self, memory_store):
        result = await memory_store.update_memory('nope', {'importance': 0.2})

        assert result.success
        assert result.memories == []


class TestRemoval:

    @pytest.mark.asyncio
    async def test_remove_cascades_to_entity_links(self, memory_store):
        first = await memory_store.add_memory(ExtractedMemory(type='skill', content='Deploys with Docker'), now=NOW)
        second = await memory_store.add_memory(ExtractedMemory(type='project', content='Building Docker tooling'),
                                               now=NOW)

        result = await memory_store.remove_memory(first.memory.id)

        assert result.removed == 1
        assert memory_store.get_memory(first.memory.id) is None
        assert await memory_store.clusterer.get_links_for_memory(first.memory.id) == []
        remaining = await memory_store.clusterer.get_links_for_memory(second.memory.id)
        assert 'docker' in {link.entity_name for link in remaining}
        assert all(link.memory_ids == [second.memory.id] for link in remaining)

    @pytest.mark.asyncio
    async def test_removing_last_reference_deletes_link(self, memory_store):
        added = await memory_store.add_memory(ExtractedMemory(type='skill', content='Deploys with Kubernetes'), now=NOW)

        await memory_store.remove_memory(added.memory.id)

        assert (await memory_store.clusterer.get_entity_stats())['total'] == 0

    @pytest.mark.asyncio
    async def test_remove_missing_memory_is_a_no_op(self, memory_store):
        result = await memory_store.remove_memory('missing')

        assert result.success
        assert result.removed == 0

    @pytest.mark.asyncio
    async def test_remove_by_type(self, memory_store):
        await memory_store.add_memories([
            ExtractedMemory(type='event', content='Dentist on Friday'),
            ExtractedMemory(type='event', content='Flight to Lisbon next week'),
            ExtractedMemory(type='skill', content='Knows SQL'),
        ], now=NOW)

        result = await memory_store.remove_memories_by_type('event')

        assert result.removed == 2
        assert [m.type for m in memory_store.memories] == ['skill']

    @pytest.mark.asyncio
    async def test_clear_all(self, memory_store, store):
        await memory_store.add_memory(ExtractedMemory(type='skill', content='Knows React'), now=NOW)

        result = await memory_store.clear_all()

        assert result.removed == 1
        assert len(memory_store) == 0
        assert await store.memories.count() == 0
        assert await store.entity_links.count() == 0

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, memory_store, make_memory, store):
        expired = make_memory('event', 'Conference yesterday', expires_at=NOW - 1)
        current = make_memory('event', 'Conference next month', expires_at=NOW + 30 * DAY)
        await store.memories.put_many([expired.to_dict(), current.to_dict()])
        await memory_store.load()

        result = await memory_store.cleanup_expired_memories(NOW)

        assert result.removed == 1
        assert [m.id for m in memory_store.memories] == [current.id]


class TestPruning:

    @pytest.mark.asyncio
    async def test_prunes_to_target_removing_least_important(self, store, make_memory):
        memory_store = build_memory_store(store, MemoryConfig(capacity=100))
        records = [
            make_memory('skill', f'Distinct fact number {i}', importance=(i + 1) / 100).to_dict() for i in range(95)
        ]
        await store.memories.put_many(records)
        await memory_store.load()

        removed = await memory_store.prune_if_needed(NOW)

        assert removed == 25
        assert len(memory_store) == 70
        assert await store.memories.count() == 70
        assert min(m.importance for m in memory_store.memories) == pytest.approx(0.26)

    @pytest.mark.asyncio
    async def test_below_threshold_nothing_is_pruned(self, store, make_memory):
        memory_store = build_memory_store(store, MemoryConfig(capacity=100))
        await store.memories.put_many([make_memory(content=f'Fact {i}').to_dict() for i in range(89)])
        await memory_store.load()

        assert await memory_store.prune_if_needed(NOW) == 0
        assert len(memory_store) == 89

    @pytest.mark.asyncio
    async def test_adding_past_threshold_triggers_pruning(self, store, make_memory):
        memory_store = build_memory_store(store, MemoryConfig(capacity=10))
        await store.memories.put_many([
            make_memory(content=f'Old fact {i}', importance=0.1).to_dict() for i in range(8)
        ])
        await memory_store.load()

        await memory_store.add_memory(ExtractedMemory(type='identity', content='Name is Robin', importance=0.9), now=NOW)

        assert len(memory_store) == 7
        assert any(m.content == 'Name is Robin' for m in memory_store.memories)


class TestFeedbackAndUsage:

    @pytest.mark.asyncio
    async def test_track_usage(self, memory_store):
        added = await memory_store.add_memory(ExtractedMemory(type='skill', content='Knows Haskell'), now=NOW)

        result = await memory_store.track_usage([added.memory.id, 'unknown'], now=NOW + 30)

        assert result.updated == 1
        memory = memory_store.get_memory(added.memory.id)
        assert memory.usage_count == 1
        assert memory.last_used_at == NOW + 30

    @pytest.mark.asyncio
    async def test_engagement_slows_decay(self, memory_store):
        added = await memory_store.add_memory(ExtractedMemory(type='project', content='Building a synth'), now=NOW)

        await memory_store.apply_feedback(added.memory.id, engaged=True, now=NOW)

        memory = memory_store.get_memory(added.memory.id)
        assert memory.feedback_score == pytest.approx(0.1)
        assert memory.positive_interactions == 1
        assert memory.adaptive_decay_rate == pytest.approx(0.85)
        assert memory.last_used_at == NOW

    @pytest.mark.asyncio
    async def test_dismissal_speeds_decay(self, memory_store):
        added = await memory_store.add_memory(ExtractedMemory(type='project', content='Building a synth'), now=NOW)

        await memory_store.apply_feedback(added.memory.id, engaged=False, now=NOW)

        memory = memory_store.get_memory(added.memory.id)
        assert memory.feedback_score == pytest.approx(-0.05)
        assert memory.negative_interactions == 1
        assert memory.adaptive_decay_rate == pytest.approx(1.1)

    @pytest.mark.asyncio
    async def test_mark_accessed_and_importance(self, memory_store):
        added = await memory_store.add_memory(ExtractedMemory(type='skill', content='Knows Lua', importance=0.9), now=NOW)
        memory_id = added.memory.id

        await memory_store.mark_accessed(memory_id, now=NOW + DAY)
        await memory_store.update_importance(memory_id, 0.5)

        memory = memory_store.get_memory(memory_id)
        assert memory.access_count == 1
        assert memory.last_accessed == NOW + DAY
        assert memory.importance == 1.0


class TestQueries:

    @pytest.mark.asyncio
    async def test_reload_from_storage(self, memory_store, store):
        await memory_store.add_memory(ExtractedMemory(type='skill', content='Knows Ruby'), now=NOW)

        reloaded = build_memory_store(store)
        result = await reloaded.load()

        assert result.success
        assert [m.content for m in reloaded.memories] == ['Knows Ruby']

    @pytest.mark.asyncio
    async def test_search_recent_and_stats(self, memory_store):
        await memory_store.add_memory(ExtractedMemory(type='skill', content='Knows Ruby', context='From Rails work'),
                                      now=NOW)
        await memory_store.add_memory(ExtractedMemory(type='person', content='Sister Ana lives in Porto'), now=NOW + 10)

        assert [m.content for m in memory_store.search('rails')] == ['Knows Ruby']
        assert [m.content for m in memory_store.get_recent(1)] == ['Sister Ana lives in Porto']
        assert len(memory_store.get_by_type('person')) == 1

        stats = memory_store.get_stats()
        assert stats['total'] == 2
        assert stats['byType']['skill'] == 1
        assert stats['byType']['event'] == 0
        assert stats['oldestMemory'] == NOW
        assert stats['newestMemory'] == NOW + 10

    def test_empty_stats(self, memory_store):
        stats = memory_store.get_stats()

        assert stats['total'] == 0
        assert stats['oldestMemory'] is None
