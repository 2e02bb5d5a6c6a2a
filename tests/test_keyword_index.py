"""Tests for keyword and entity extraction and the IDF keyword index."""

import math

import pytest

from companion_memory.services.keyword_index import (NOVEL_KEYWORD_WEIGHT, KeywordIndex, KeywordIndexCache,
                                                     build_keyword_index, extract_entities, extract_keywords,
                                                     jaccard_similarity, weighted_keyword_score)


class TestExtraction:

    def test_keywords_drop_stop_words_short_tokens_and_numbers(self):
        keywords = extract_keywords('The user is learning to build APIs in 2024 with me')

        assert 'learning' in keywords
        assert 'build' in keywords
        assert 'apis' in keywords
        for dropped in ('the', 'user', 'is', 'to', 'in', '2024', 'me'):
            assert dropped not in keywords

    def test_short_domain_terms_are_kept(self):
        keywords = extract_keywords('Writing Go and some AI code')

        assert 'go' in keywords
        assert 'ai' in keywords

    def test_keywords_are_deduplicated(self):
        keywords = extract_keywords('Python python PYTHON')

        assert keywords.count('python') == 1

    def test_entities(self):
        entities = extract_entities('Working with Sarah Chen on the NextGen platform using AWS and react')

        assert 'react' in entities
        assert 'aws' in entities
        assert 'Sarah Chen' in entities
        assert 'NextGen' in entities
        assert 'AWS' in entities

    def test_sentence_starters_are_not_entities(self):
        assert 'The' not in extract_entities('The weather is nice')

    def test_domain_terms_respect_word_boundaries(self):
        assert 'go' not in extract_entities('Going to the store')
        assert 'java' not in extract_entities('Loves javascript')


class TestJaccard:

    @pytest.mark.parametrize('first, second, expected', [
        ([], [], 1.0),
        (['a'], [], 0.0),
        (['a', 'b'], ['B', 'c'], 1 / 3),
        (['x'], ['X'], 1.0),
    ])
    def test_values(self, first, second, expected):
        assert jaccard_similarity(first, second) == pytest.approx(expected)


class TestKeywordIndex:

    def test_build_counts_memories_not_occurrences(self, make_memory):
        memories = [
            make_memory(content='Knows Rust, loves Rust'),
            make_memory(content='Building a Rust compiler'),
            make_memory(content='Plays chess'),
        ]

        index = build_keyword_index(memories)

        assert index.total_memories == 3
        assert index.frequencies['rust'] == 2
        assert index.frequencies['chess'] == 1

    def test_weights(self):
        index = KeywordIndex(frequencies={'rust': 2, 'chess': 1}, total_memories=4)

        assert index.weight('rust') == pytest.approx(math.log(2) + 1)
        assert index.weight('Chess') == pytest.approx(math.log(4) + 1)
        assert index.weight('unseen') == NOVEL_KEYWORD_WEIGHT

    def test_weighted_score(self):
        index = KeywordIndex(frequencies={'rust': 1, 'chess': 1}, total_memories=1)

        assert weighted_keyword_score(['rust', 'chess'], ['rust'], index) == pytest.approx(0.5)
        assert weighted_keyword_score([], ['rust'], index) == 0.0
        assert weighted_keyword_score(['rust'], [], index) == 0.0

    def test_rare_keywords_weigh_more(self):
        index = KeywordIndex(frequencies={'common': 10, 'rare': 1}, total_memories=10)

        rare_hit = weighted_keyword_score(['common', 'rare'], ['rare'], index)
        common_hit = weighted_keyword_score(['common', 'rare'], ['common'], index)

        assert rare_hit > common_hit


class TestKeywordIndexCache:

    def test_rebuilds_only_when_count_changes(self, make_memory):
        cache = KeywordIndexCache()
        memories = [make_memory(content='Knows Rust')]

        first = cache.get(memories)
        assert cache.get(memories) is first

        memories.append(make_memory(content='Knows Elm'))
        second = cache.get(memories)
        assert second is not first
        assert second.total_memories == 2

    def test_invalidate(self, make_memory):
        cache = KeywordIndexCache()
        memories = [make_memory(content='Knows Rust')]
        first = cache.get(memories)

        cache.invalidate()

        assert cache.get(memories) is not first
