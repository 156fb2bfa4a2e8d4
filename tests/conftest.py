"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
os.environ["HUDDLE_DB"] = ":memory:"
# Cheap password hashing keeps register/login tests fast
os.environ["HUDDLE_PASSWORD_ITERATIONS"] = "1000"
# Ensure no custom auth module or config file leaks in from the shell
os.environ.pop("HUDDLE_AUTH_MODULE", None)
os.environ.pop("HUDDLE_CONFIG", None)
os.environ.pop("HUDDLE_NO_AUTH", None)


import pytest
from huddle import db
from huddle.config import reset_settings

pytest_plugins = ["huddle.testing"]


@pytest.fixture(autouse=True, scope="function")
def reset_database():
    """Reset database before each test function.

    For in-memory shared cache databases, we need to do a full reset_db()
    to clear all tables, since close_db() doesn't destroy the shared cache.
    """
    db.configure(None)
    reset_settings()
    db.reset_db()
    yield
    db.close_db()  # Cleanup after test
