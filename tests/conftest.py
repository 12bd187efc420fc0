"""
Pytest configuration and shared fixtures for superclosure tests.

This module contains:
- Project configuration fixtures
- Logging fixtures
- Persisted-form fixtures shared by the serialization tests
"""

import pytest
import toml

# =============================================================================
# Project Configuration Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def load_pyproject_toml():
    """Load and parse the pyproject.toml file."""
    try:
        with open("pyproject.toml", "r") as f:
            data = toml.load(f)
        return data
    except toml.TomlDecodeError as e:
        pytest.fail(f"Failed to load pyproject.toml: {e}")


# =============================================================================
# Logging Fixtures
# =============================================================================


@pytest.fixture
def debug_logging(monkeypatch, caplog):
    """Enable the package logger and capture its DEBUG records."""
    import logging

    from superclosure.logger import logger

    monkeypatch.setattr(logger, "disabled", False)
    caplog.set_level(logging.DEBUG, logger="superclosure")
    return caplog


# =============================================================================
# Persisted Form Fixtures
# =============================================================================


@pytest.fixture
def scaled_form():
    """Persisted form of a lambda capturing a nested closure and a scalar."""
    from superclosure import PersistedForm

    inner = PersistedForm("lambda y: y + offset", {"offset": 1}, frozenset())

    return PersistedForm(
        "lambda x: inner(x) * factor",
        {"inner": inner, "factor": 3},
        frozenset({"inner"}),
    )
