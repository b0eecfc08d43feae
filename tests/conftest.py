"""Pytest configuration and fixtures."""

import pytest

from helpers import FakeProvider


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep real credentials and model overrides out of tests."""
    for var in ("GEMINI_API_KEY", "GOOGLE_API_KEY", "LLM_MODEL"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()
