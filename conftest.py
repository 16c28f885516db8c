"""Pytest configuration: custom markers and shared fixtures."""
import pytest


def pytest_addoption(parser):
    parser.addoption(
        "--slow", action="store_true", default=False,
        help="Run long multi-frame tracking scenarios",
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "slow: mark test as slow (multi-frame tracking run)"
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--slow"):
        return
    skip_slow = pytest.mark.skip(reason="needs --slow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)
