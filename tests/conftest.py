"""Shared test fixtures - a fake engine stands in for a loaded model."""

import os

# Must be set before localchat.config is imported.
os.environ["LOCALCHAT_PRELOAD"] = "0"
os.environ["LOCALCHAT_ESCAPE_HTML"] = "1"

import pytest
from fastapi.testclient import TestClient

from localchat.engine import install_engine, release_engine


class FakeEngine:
    """Records the histories it receives and answers with a fixed reply."""

    model_id = "fake/chat-model"
    device = "cpu"

    def __init__(self, reply="Hello **there**", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def create_chat_completion(self, messages):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return {
            "model": self.model_id,
            "choices": [
                {"index": 0, "message": {"role": "assistant", "content": self.reply}},
            ],
        }


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def failing_engine():
    return FakeEngine(error=RuntimeError("engine exploded"))


@pytest.fixture
def client(fake_engine):
    """HTTP test client with the fake engine installed and a fresh conversation."""
    import app as app_module

    install_engine(fake_engine)
    app_module.conversation.reset()
    with TestClient(app_module.app) as test_client:
        yield test_client
    app_module.conversation.reset()
    release_engine()
