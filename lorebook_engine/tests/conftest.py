"""
Pytest configuration for the lorebook engine test suite.

Registers markers and provides shared fixtures: explicit settings, a seeded
random source, a store, and a loguru capture.
"""

import random

import pytest
from loguru import logger

from lorebook_engine.app.core.config import WorldInfoSettings, clear_config_cache
from lorebook_engine.app.core.Character_Chat.world_book_manager import WorldBookStore


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast, isolated unit tests")
    config.addinivalue_line("markers", "property: hypothesis property-based tests")
    config.addinivalue_line("markers", "world_book: world book store tests")


@pytest.fixture(autouse=True)
def _fresh_config():
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def wi_settings():
    return WorldInfoSettings(
        scan_depth=3,
        recursion_limit=3,
        token_budget=None,
        case_sensitive=False,
        match_whole_words=True,
        book_order="global_first",
        token_estimator_mode="whitespace",
    )


@pytest.fixture
def seeded_rng():
    return random.Random(1234)


@pytest.fixture
def store(wi_settings):
    return WorldBookStore(settings=wi_settings)


@pytest.fixture
def loguru_messages():
    """Collect formatted loguru messages emitted during the test."""
    messages = []
    handler_id = logger.add(lambda msg: messages.append(msg.record), level="DEBUG")
    yield messages
    logger.remove(handler_id)
