"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
os.environ["SIGCHAT_DB"] = ":memory:"
os.environ["SIGCHAT_ADMIN_TOKEN"] = "test-admin-token"
os.environ["SIGCHAT_SESSION_SECRET"] = "test-session-secret"
os.environ["SIGCHAT_SWEEP_INTERVAL"] = "0"
os.environ.pop("SIGCHAT_CONFIG", None)


import pytest

from sigchat import db
from sigchat.auth import reset_auth_service
from sigchat.events import reset_broadcast_hub
from sigchat.metrics import metrics
from sigchat.relay import reset_relay

pytest_plugins = ["sigchat.testing"]


@pytest.fixture(autouse=True, scope="function")
def reset_database():
    """Reset database and global services before each test function.

    For in-memory shared cache databases, we need to drop every table,
    since close_db() doesn't destroy the shared cache.
    """
    db.configure(None)
    conn = db.get_connection()
    db.reset_db(conn)

    reset_auth_service()
    reset_broadcast_hub()
    reset_relay()
    metrics.reset()
    yield
    db.close_db()  # Cleanup after test
