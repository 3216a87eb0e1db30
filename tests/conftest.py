"""Root conftest for test suite.

Settings are cached process-wide and request middleware binds structlog
context variables; both are reset around every test so environment
overrides and bound request ids do not leak between tests.
"""

import pytest
import structlog

from app.config import get_settings


@pytest.fixture(autouse=True)
def reset_process_state():
    get_settings.cache_clear()
    structlog.contextvars.clear_contextvars()
    yield
    get_settings.cache_clear()
    structlog.contextvars.clear_contextvars()
