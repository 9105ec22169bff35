"""Pytest fixtures for LLM Shield tests."""

import os

import pytest


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables before any imports.

    Keeps the semantic service off and file logging disabled regardless of
    the developer's shell or ``.env``.
    """
    os.environ.setdefault("ENVIRONMENT", "test")
    os.environ["SEMANTIC_ENABLED"] = "false"
    os.environ.pop("SEMANTIC_API_KEY", None)
    os.environ["LOG_TO_FILE"] = "false"

    from llm_shield.config import get_settings

    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Drop cached settings so per-test environment changes take effect."""
    from llm_shield.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class FakeClock:
    """Manually advanced time source for stateful components."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """A fake clock starting at a fixed epoch."""
    return FakeClock()
