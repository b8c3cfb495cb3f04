"""Pytest configuration and fixtures."""

import pytest
import luna.logging_config as logging_config_module
from luna.config import get_settings
from luna.logging_config import clear_session_id, configure_logging


@pytest.fixture(scope="session", autouse=True)
def setup_logging() -> None:
    """Configure logging for tests.

    This fixture runs once per session and configures structlog for testing.
    cache_logger_on_first_use=False ensures test isolation.
    """
    configure_logging(log_level="DEBUG")


@pytest.fixture(autouse=True)
def reset_logging_config() -> None:
    """Reset logging config and bound session state before each test for isolation."""
    logging_config_module._CONFIGURED = False
    clear_session_id()


@pytest.fixture(autouse=True)
def fresh_settings():
    """Drop the cached Settings so env overrides in one test never leak."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
