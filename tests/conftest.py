"""
Pytest configuration and fixtures
"""
import base64
from typing import Any, Dict, List, Optional

import pytest

from finchat.config import Settings
from finchat.db import Database
from finchat.errors import ExternalServiceError
from finchat.identity.users import UserStore
from finchat.providers.base import ChatProvider, IdentityProfile, IdentityProvider
from finchat.stores.conversations import ConversationStore
from finchat.stores.messages import MessageStore

WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"test-webhook-secret-0123456789").decode("ascii")


class FakeChat(ChatProvider):
    """Records calls and replays queued responses (dicts or exceptions)."""

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []

    def send(self, app_id, query, session_id, user):
        self.calls.append({"app_id": app_id, "query": query, "session_id": session_id, "user": user})
        item = self.responses.pop(0) if self.responses else {"answer": "ok", "conversation_id": "dify-conv-1"}
        if isinstance(item, Exception):
            raise item
        return item


class FakeIdentity(IdentityProvider):
    def __init__(self, profiles: Optional[Dict[str, IdentityProfile]] = None, fail: bool = False):
        self.profiles = profiles or {}
        self.fail = fail
        self.calls: List[str] = []

    def get_profile(self, auth_id):
        self.calls.append(auth_id)
        if self.fail:
            raise ExternalServiceError("clerk", meta={"auth_id": auth_id})
        return self.profiles.get(auth_id, IdentityProfile(auth_id=auth_id))


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def users(database):
    return UserStore(database)


@pytest.fixture
def conversations(database):
    return ConversationStore(database)


@pytest.fixture
def messages(database):
    return MessageStore(database)


@pytest.fixture
def user(users):
    return users.upsert(IdentityProfile(auth_id="user_alice", email="alice@example.com", first_name="Alice"))


@pytest.fixture
def other_user(users):
    return users.upsert(IdentityProfile(auth_id="user_bob", email="bob@example.com", first_name="Bob"))


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        chat_api_key="test-key",
        chat_app_id="app-default",
        webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def fake_chat():
    return FakeChat()


@pytest.fixture
def app(settings, database, fake_chat):
    from finchat.server import create_app

    app = create_app(settings, database=database, chat=fake_chat, identity=FakeIdentity())
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
