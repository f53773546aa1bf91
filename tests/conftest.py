"""Shared fixtures for the TrafficCheck test suite.

Provides a Flask test client with a fake Google key and a rate limit high
enough that route tests never trip it.
"""

import os

import pytest

# Environment must be set BEFORE importing app (read at import time)
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-key-for-tests")
os.environ["RATE_LIMIT_DEFAULT"] = "10000/minute"
os.environ.pop("SENTRY_DSN", None)

from app import app  # noqa: E402
from tc_trace import clear_trace  # noqa: E402


@pytest.fixture(autouse=True)
def _no_leaked_trace():
    """Tests that set a trace context must not leak it into the next test."""
    yield
    clear_trace()


@pytest.fixture()
def client():
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c
