"""Pytest fixtures and configuration for BoxZero tests.

Provides common fixtures for configuration, database, clocks and emails.
"""

import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Generator
from unittest.mock import AsyncMock, MagicMock

import pytest

from boxzero.config import reset_config
from boxzero.config_schema import AppConfig
from boxzero.db.store import DatabaseStore
from boxzero.predictors.types import EmailClassification, EmailMessage, LLMPrediction

FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=UTC)


class FakeClock:
    """Settable clock for code that takes a `clock` callable."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

ensemble:
  llm_fallback_threshold: 0.6
  max_concurrent_llm: 2

llm:
  model: "claude-haiku-4-5-20251001"
  request_timeout_seconds: 5

queue:
  expire_after_days: 7
"""


@pytest.fixture
def sample_config_dict(data_dir: Path) -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "ensemble": {"llm_fallback_threshold": 0.6, "max_concurrent_llm": 2},
        "llm": {"request_timeout_seconds": 5},
        "storage": {"db_path": str(data_dir / "boxzero.db")},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the BOXZERO_CONFIG_PATH environment variable."""
    old_value = os.environ.get("BOXZERO_CONFIG_PATH")
    os.environ["BOXZERO_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["BOXZERO_CONFIG_PATH"]
    else:
        os.environ["BOXZERO_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Create and initialize a DatabaseStore."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


@pytest.fixture
def make_email() -> Callable[..., EmailMessage]:
    """Factory for EmailMessage with sensible defaults."""

    def _make(
        email_id: str = "msg-001",
        sender: str = "sender@example.com",
        subject: str = "Weekly update",
        body: str = "Here is this week's update.",
        **kwargs: Any,
    ) -> EmailMessage:
        return EmailMessage(
            id=email_id,
            sender=sender,
            subject=subject,
            body=body,
            thread_id=kwargs.pop("thread_id", f"thread-{email_id}"),
            account_id=kwargs.pop("account_id", "acct-1"),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_llm_prediction() -> Callable[..., LLMPrediction]:
    """Factory for Tier-3 predictions (spam/delete by default)."""

    def _make(action: str = "delete", confidence: float = 0.9, category: str = "spam") -> LLMPrediction:
        return LLMPrediction(
            model="claude-test",
            predicted_action=action,
            confidence=confidence,
            reasoning=f"Classified as {category} email.",
            classification=EmailClassification(category=category, is_spam=category == "spam"),
        )

    return _make


@pytest.fixture
def fake_tier3(make_llm_prediction) -> MagicMock:
    """Stand-in Tier3Predictor whose predict() returns a spam prediction."""
    tier3 = MagicMock()
    tier3.predict = AsyncMock(return_value=make_llm_prediction())
    return tier3
