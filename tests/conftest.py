"""Root conftest for test suite.

Auto-skips integration and slow tests, which need Postgres, a cluster or
real build tools.
Run explicitly with: pytest -m integration
                  or: pytest -m slow
"""

import pytest

from conveyor.config import get_settings


def pytest_collection_modifyitems(config, items):
    """Skip integration and slow tests unless explicitly requested."""
    markexpr = config.getoption("-m", default="")
    explicit_integration = "integration" in markexpr
    explicit_slow = "slow" in markexpr

    skip_integration = pytest.mark.skip(
        reason="integration tests need external services. Run with: pytest -m integration"
    )
    skip_slow = pytest.mark.skip(reason="slow tests skipped by default. Run with: pytest -m slow")

    for item in items:
        if "integration" in item.keywords and not explicit_integration:
            item.add_marker(skip_integration)

        if "slow" in item.keywords and not explicit_slow:
            item.add_marker(skip_slow)


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
