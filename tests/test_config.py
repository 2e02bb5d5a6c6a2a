"""Tests for configuration loading and validation."""

import dataclasses
import logging
import math

import pytest

from companion_memory.utils.config import (MEMORY_TYPES, ConfigError, MemoryConfig, ProactiveSettings, _env_bool,
                                           load_config)
from companion_memory.utils.logging_config import get_logger, setup_logging


class TestLoadConfig:

    def test_defaults(self, monkeypatch):
        for name in ('MEMORY_CAPACITY', 'PROACTIVE_ENABLED', 'PROACTIVE_DISPLAY_MODE', 'OPENSEARCH_ENDPOINT',
                     'OPENSEARCH_SERVICE'):
            monkeypatch.delenv(name, raising=False)

        app_config = load_config()

        assert app_config.memory.capacity == 500
        assert app_config.memory.prune_threshold == 0.9
        assert app_config.memory.prune_target == 0.7
        assert app_config.retrieval.token_budget == 500
        assert app_config.proactive == ProactiveSettings()
        assert app_config.opensearch.endpoint == ''
        assert app_config.opensearch.serverless
        assert set(app_config.memory.half_life_days) == set(MEMORY_TYPES)
        assert math.isinf(app_config.memory.half_life_days['identity'])

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv('MEMORY_CAPACITY', '100')
        monkeypatch.setenv('MEMORY_HALF_LIFE_EVENT', '3')
        monkeypatch.setenv('PROACTIVE_ENABLED', 'false')
        monkeypatch.setenv('PROACTIVE_DISPLAY_MODE', 'chat')

        app_config = load_config()

        assert app_config.memory.capacity == 100
        assert app_config.memory.half_life_days['event'] == 3.0
        assert app_config.proactive.enabled is False
        assert app_config.proactive.display_mode == 'chat'

    def test_invalid_environment_is_rejected(self, monkeypatch):
        monkeypatch.setenv('PROACTIVE_DISPLAY_MODE', 'popup')

        with pytest.raises(ConfigError):
            load_config()


class TestValidate:

    @pytest.fixture
    def app_config(self, monkeypatch):
        monkeypatch.delenv('PROACTIVE_DISPLAY_MODE', raising=False)
        return load_config()

    @pytest.mark.parametrize('changes', [
        {'capacity': 0},
        {'prune_target': 0.95},
        {'prune_threshold': 1.5},
        {'similarity_threshold': 0.0},
    ])
    def test_memory_constraints(self, app_config, changes):
        app_config.memory = dataclasses.replace(app_config.memory, **changes)

        with pytest.raises(ConfigError):
            app_config.validate()

    def test_identity_must_not_decay(self, app_config):
        half_lives = dict(MemoryConfig().half_life_days, identity=365.0)
        app_config.memory = dataclasses.replace(app_config.memory, half_life_days=half_lives)

        with pytest.raises(ConfigError, match='Identity'):
            app_config.validate()

    def test_missing_half_life(self, app_config):
        half_lives = dict(MemoryConfig().half_life_days)
        del half_lives['opinion']
        app_config.memory = dataclasses.replace(app_config.memory, half_life_days=half_lives)

        with pytest.raises(ConfigError, match='opinion'):
            app_config.validate()

    def test_non_positive_cooldown(self, app_config):
        app_config.proactive = dataclasses.replace(app_config.proactive, cooldown_minutes=0)

        with pytest.raises(ConfigError):
            app_config.validate()

    def test_unknown_opensearch_service(self, app_config):
        app_config.opensearch = dataclasses.replace(app_config.opensearch, service='lambda')

        with pytest.raises(ConfigError, match='aoss or es'):
            app_config.validate()

    def test_valid_config_is_returned(self, app_config):
        assert app_config.validate() is app_config


@pytest.mark.parametrize('value, expected', [
    ('1', True),
    ('TRUE', True),
    (' yes ', True),
    ('on', True),
    ('0', False),
    ('no', False),
    ('', False),
])
def test_env_bool(monkeypatch, value, expected):
    monkeypatch.setenv('SOME_FLAG', value)
    assert _env_bool('SOME_FLAG', not expected) is expected


def test_env_bool_default(monkeypatch):
    monkeypatch.delenv('SOME_FLAG', raising=False)
    assert _env_bool('SOME_FLAG', True) is True


class TestLogging:

    def test_library_loggers_follow_debug(self, monkeypatch):
        monkeypatch.setenv('LOG_LEVEL', 'DEBUG')
        setup_logging(load_config())
        assert logging.getLogger('botocore').level == logging.DEBUG

        monkeypatch.setenv('LOG_LEVEL', 'INFO')
        setup_logging(load_config())
        assert logging.getLogger('botocore').level == logging.WARNING
        assert logging.getLogger('opensearch').level == logging.WARNING

    def test_get_logger_uses_configured_level(self, monkeypatch):
        monkeypatch.setenv('LOG_LEVEL', 'ERROR')

        logger = get_logger('companion_memory.tests', load_config())

        assert logger.level == logging.ERROR
