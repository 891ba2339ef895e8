"""Pytest fixtures shared across the test suite."""

import sqlite3
import threading

import pytest

from db import utils as db_utils
from db.schema import ensure_schema


@pytest.fixture(autouse=True)
def reset_database_state():
    """Reset cached database handles between tests."""

    db_utils.set_fallback_connection(None)
    yield
    db_utils.set_fallback_connection(None)


@pytest.fixture
def conn():
    connection = sqlite3.connect(':memory:', check_same_thread=False)
    connection.row_factory = sqlite3.Row
    connection.execute('PRAGMA foreign_keys = ON')
    ensure_schema(connection)
    yield connection
    connection.close()


@pytest.fixture
def lock():
    return threading.RLock()

