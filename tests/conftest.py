import json
import threading
import time

import pytest

from app import create_app
from app.config import TestConfig
from app.extensions import db
from app.services.completion import CompletionError


class FakeCompletion:
    """Stands in for the completion service; records every call."""

    def __init__(self, payload=None, error=None, delay=0.0):
        self.payload = payload if payload is not None else {
            "summary": "A short summary.",
            "sentiment": 7,
            "tags": ["Python", "web frameworks"],
            "relatedLinks": ["https://docs.python.org"],
        }
        self.error = error
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def complete(self, system_prompt, user_content):
        with self._lock:
            self.calls.append((system_prompt, user_content))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise CompletionError(self.error)
        if isinstance(self.payload, str):
            return self.payload
        return json.dumps(self.payload)


@pytest.fixture
def completion_factory():
    return FakeCompletion


@pytest.fixture
def fake_completion():
    return FakeCompletion()


@pytest.fixture
def app(fake_completion):
    app = create_app(TestConfig, completion=fake_completion)
    with app.app_context():
        db.drop_all()
        db.create_all()
    yield app


@pytest.fixture
def client(app):
    return app.test_client()
