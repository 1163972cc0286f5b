import pytest


def pytest_runtest_setup(item):
    # Integration tests need a live Qdrant or embedding provider
    if 'integration' in item.keywords:
        pytest.skip("skipping integration test (requires live Qdrant / embedding provider)")
