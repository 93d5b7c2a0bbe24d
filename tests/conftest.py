"""
Pytest configuration for Trakke tests.

This file is automatically loaded by pytest and sets up the test environment.
"""
import os
import pytest


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables before any tests run."""
    os.environ["ENVIRONMENT"] = "testing"
    os.environ["REDIS_URL"] = ""
    from trakke.config import reload_config
    reload_config()
    yield
    os.environ.pop("ENVIRONMENT", None)


@pytest.fixture(autouse=True)
def clean_metrics():
    from trakke import metrics
    metrics.configure_redis(None)
    metrics.reset_memory_metrics()
    yield
    metrics.configure_redis(None)
    metrics.reset_memory_metrics()


@pytest.fixture
def no_sleep():
    from tests.fakes import RecordingSleep
    return RecordingSleep()
