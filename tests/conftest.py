"""Test configuration and fixtures."""

from datetime import datetime, timezone

import pytest
import requests

from cronctl.config import Settings
from cronctl.db import connect_db, init_db
from cronctl.utils import FrozenClock

NOON = datetime(2025, 1, 6, 12, 0, 0, tzinfo=timezone.utc)  # a Monday


class FakeResponse:
    def __init__(self, status_code=200, text="ok"):
        self.status_code = status_code
        self.text = text


class FakeSession:
    """Stands in for `requests`: records every call and replays scripted outcomes.

    Each outcome is a status code, a FakeResponse, or an exception instance to
    raise. The last outcome repeats once the script runs out.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [200]
        self.calls = []

    def request(self, method, url, data=None, headers=None, timeout=None):
        self.calls.append(dict(method=method, url=url, data=data, headers=headers, timeout=timeout))
        index = min(len(self.calls), len(self.outcomes)) - 1
        outcome = self.outcomes[index]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, FakeResponse):
            return outcome
        return FakeResponse(status_code=outcome, text=f"status {outcome}")


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "cronctl-test.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    c = connect_db(db_path)
    yield c
    c.close()


@pytest.fixture
def other_conn(db_path):
    """A second, independent connection: another scheduler instance."""
    c = connect_db(db_path)
    yield c
    c.close()


@pytest.fixture
def clock():
    return FrozenClock(NOON)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def ok_session():
    return FakeSession(200)


@pytest.fixture
def failing_session():
    return FakeSession(500)


@pytest.fixture
def timeout_error():
    return requests.Timeout("read timed out")
