import pytest

from trakke.config import Environment, get_config, reload_config


@pytest.fixture
def fresh_config(monkeypatch):
    yield monkeypatch
    monkeypatch.undo()
    reload_config()


def test_defaults(fresh_config):
    for key in ("TIMEOUT_VIEWPORT", "RETRY_MAX_ATTEMPTS", "CACHE_TTL_VIEWPORT", "MAX_POIS_PER_VIEWPORT",
                "CATALOG_TIER_DELAYS", "NAME_LOCALES", "INTER_CATEGORY_DELAY", "MAX_VIEWS"):
        fresh_config.delenv(key, raising=False)
    config = reload_config()
    assert config is get_config()
    assert config.environment is Environment.TESTING
    assert config.redis_url is None
    assert config.get_timeout("viewport") == 8.0
    assert config.get_timeout("background") == 12.0
    assert config.get_timeout("unknown") == 8.0
    assert config.retry_config.max_attempts == 3
    assert config.cache_config.ttl_viewport == 300
    assert config.cache_config.max_entries == 64
    assert config.pipeline_config.max_pois_per_viewport == 1000
    assert config.pipeline_config.inter_category_delay == 0.5
    assert config.pipeline_config.catalog_tier_delays == [3.0, 2.0, 1.0]
    assert config.pipeline_config.max_views == 32
    assert config.source_config.riksantikvaren_layer == 4
    assert config.is_testing()
    assert not config.is_development() and not config.is_production()
    assert config.source_config.name_locales == ["nb", "nn", "no"]


def test_environment_overrides(fresh_config):
    fresh_config.setenv("TIMEOUT_VIEWPORT", "4.5")
    fresh_config.setenv("MAX_POIS_PER_VIEWPORT", "250")
    fresh_config.setenv("CATALOG_TIER_DELAYS", "1, 0.5 ,0")
    fresh_config.setenv("NAME_LOCALES", "nn,nb")
    fresh_config.setenv("CLAMP_TO_NORWAY", "false")
    fresh_config.setenv("MAX_VIEWS", "4")
    config = reload_config()
    assert config.timeout_config.viewport == 4.5
    assert config.pipeline_config.max_pois_per_viewport == 250
    assert config.pipeline_config.catalog_tier_delays == [1.0, 0.5, 0.0]
    assert config.source_config.name_locales == ["nn", "nb"]
    assert config.source_config.clamp_to_norway is False
    assert config.pipeline_config.max_views == 4
    assert config.to_dict()["pipeline_config"]["max_views"] == 4
    assert config.to_dict()["timeout_config"]["viewport"] == 4.5


@pytest.mark.parametrize("key,value", [
    ("RETRY_MAX_ATTEMPTS", "three"),
    ("RETRY_MAX_ATTEMPTS", "0"),
    ("TIMEOUT_BACKGROUND", "-1"),
    ("CACHE_MAX_ENTRIES", "0"),
    ("MAX_VIEWS", "0"),
    ("CATALOG_TIER_DELAYS", "1,2"),
    ("REDIS_URL", "http://localhost:6379"),
    ("ENVIRONMENT", "moon"),
])
def test_invalid_values_raise(fresh_config, key, value):
    fresh_config.setenv(key, value)
    with pytest.raises(ValueError):
        reload_config()


def test_setup_logging_quiets_the_test_environment(fresh_config):
    import logging

    from trakke.config import setup_logging

    root = logging.getLogger()
    previous = root.level
    try:
        reload_config()
        setup_logging()
        assert root.level == logging.WARNING
    finally:
        root.setLevel(previous)
