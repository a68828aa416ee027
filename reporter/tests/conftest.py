from __future__ import annotations

import pytest

from reporter.core.config import get_settings
from reporter.services.telemetry import reset_counters


@pytest.fixture(autouse=True)
def reset_telemetry_between_tests() -> None:
    # Counters are process-global; keep assertions per test.
    reset_counters()
    yield
    reset_counters()


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    # Tests that patch the environment must see fresh settings.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
