"""
Shared fixtures.
"""

import logging

import pytest
import structlog

from cloud_quota.storage.repository import initialize_schema


@pytest.fixture
def db_path(tmp_path):
    """Path of a freshly initialized quota database."""
    path = str(tmp_path / "quota.db")
    initialize_schema(path)
    return path


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo any logging configuration made by a test."""
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers.clear()
