"""
Shared fixtures for the SlopedIn test suite.
"""

# Standard library imports
import asyncio
from pathlib import Path
from typing import AsyncGenerator

# Third-party imports
import pytest
import pytest_asyncio

# Local imports
from slopedin.config import Config, FeedConfig, InferenceConfig
from slopedin.protocols import ClassificationResult, Label
from tests.helpers.fakes import FakeEngine, ai_ranking

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """Cancel any task a test leaves behind."""
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before
    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


# ============================================================================
# Fixtures
# ============================================================================


LONG_POST = (
    "Excited to announce that I have been leveraging synergies across cross-functional teams "
    "to unlock unprecedented value. "
    * 10
)[:600]


@pytest.fixture
def long_post() -> str:
    return LONG_POST


@pytest.fixture
def feed_config() -> FeedConfig:
    return FeedConfig(debounce_seconds=0.05, min_text_length=50, eviction_scans=3)


@pytest.fixture
def inference_config() -> InferenceConfig:
    return InferenceConfig(max_text_length=1500, top_k=2, preload=False)


@pytest.fixture
def test_config(tmp_path: Path, feed_config: FeedConfig, inference_config: InferenceConfig) -> Config:
    return Config(
        feed=feed_config,
        inference=inference_config,
        preferences={"path": tmp_path / "prefs" / "preferences.json", "watch": False},
    )


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def ai_result() -> ClassificationResult:
    return ClassificationResult(label=Label.AI, score=0.87, raw_ranking=tuple(ai_ranking(0.87)))


@pytest.fixture
def human_result() -> ClassificationResult:
    return ClassificationResult(label=Label.HUMAN, score=0.1, raw_ranking=tuple(ai_ranking(0.1)))
