from collections import OrderedDict

import pytest

from datacollector.errors import ConfigError, ServiceUnavailableError
from datacollector.services import (
    DOWNLOADER,
    EMBEDDER,
    Config,
    ServiceKey,
    ServiceRegistry,
    load_providers,
)


class TestServiceRegistry:

    def test_missing_service(self):
        registry = ServiceRegistry()

        with pytest.raises(ServiceUnavailableError) as excinfo:
            registry.get(EMBEDDER)
        assert excinfo.value.name == 'embedder'
        assert registry.get_optional(EMBEDDER) is None
        assert not registry.has(EMBEDDER)

    def test_names_and_keys_are_interchangeable(self):
        registry = ServiceRegistry()
        downloader = object()

        registry.register('downloader', downloader)

        assert registry.get(DOWNLOADER) is downloader
        assert registry.get(ServiceKey('downloader')) is downloader
        assert registry.names() == ['downloader']

    def test_custom_keys(self):
        registry = ServiceRegistry()
        registry.register(ServiceKey('translator'), 'fr')

        assert registry.get('translator') == 'fr'


class TestConfig:

    def test_get_and_missing(self):
        config = Config({'APP_ENV': 'production'})

        assert config.get('APP_ENV') == 'production'
        with pytest.raises(ConfigError):
            config.get('MISSING')
        assert config.get_optional('MISSING', 7) == 7

    def test_typed_getters(self):
        config = Config({'TIMEOUT': '30', 'DEBUG': 'yes', 'QUIET': 'off', 'FLAG': True})

        assert config.get_int('TIMEOUT') == 30
        assert config.get_int('ABSENT', 5) == 5
        assert config.get_bool('DEBUG') is True
        assert config.get_bool('QUIET') is False
        assert config.get_bool('FLAG') is True
        assert config.get_bool('ABSENT') is False


class TestLoadProviders:

    def test_registers_factories(self):
        registry = ServiceRegistry()

        loaded = load_providers(registry, 'search_provider=collections:OrderedDict, embedder=collections.OrderedDict')

        assert loaded == ['search_provider', 'embedder']
        assert isinstance(registry.get('search_provider'), OrderedDict)
        assert isinstance(registry.get(EMBEDDER), OrderedDict)

    def test_empty_setting(self):
        assert load_providers(ServiceRegistry(), '') == []
        assert load_providers(ServiceRegistry(), None) == []

    def test_malformed_entry(self):
        with pytest.raises(ValueError):
            load_providers(ServiceRegistry(), 'just_a_name')
