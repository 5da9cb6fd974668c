from unittest import mock

import pytest
import requests

from finchat.errors import ExternalServiceError
from finchat.providers.clerk_users import ClerkUsersProvider
from finchat.providers.dify_chat import DifyChatProvider


def _response(status=200, body=None, json_error=False):
    r = mock.Mock()
    r.status_code = status
    r.text = "" if body is None else str(body)
    if json_error:
        r.json.side_effect = ValueError("no json")
    else:
        r.json.return_value = body
    return r


@pytest.fixture
def http():
    return mock.Mock(spec=requests.Session)


# ---------------------------------------------------------------------------
# chat service
# ---------------------------------------------------------------------------
def test_send_posts_blocking_chat_message(http):
    http.post.return_value = _response(body={"answer": "hi", "conversation_id": "c-1"})
    chat = DifyChatProvider("key-1", "https://chat.example/v1/", timeout=12, session=http)

    data = chat.send("app-debt", "hello", None, "user-1")

    assert data == {"answer": "hi", "conversation_id": "c-1"}
    args, kwargs = http.post.call_args
    assert args[0] == "https://chat.example/v1/chat-messages"
    assert kwargs["json"] == {
        "query": "hello",
        "inputs": {},
        "response_mode": "blocking",
        "conversation_id": None,
        "user": "user-1",
    }
    assert kwargs["headers"]["Authorization"] == "Bearer key-1"
    assert kwargs["headers"]["x-api-app-id"] == "app-debt"
    assert kwargs["timeout"] == 12


def test_send_timeout(http):
    http.post.side_effect = requests.Timeout("slow")
    chat = DifyChatProvider("key", session=http)

    with pytest.raises(ExternalServiceError) as exc:
        chat.send("app", "hello", "c-1", "u")
    assert exc.value.meta["timeout"] is True
    assert exc.value.status == 502


def test_send_network_error(http):
    http.post.side_effect = requests.ConnectionError("refused")
    with pytest.raises(ExternalServiceError) as exc:
        DifyChatProvider("key", session=http).send("app", "hello", None, "u")
    assert exc.value.meta["network_error"] is True


def test_send_http_error_keeps_status(http):
    http.post.return_value = _response(status=429, body={"message": "rate limited"})
    with pytest.raises(ExternalServiceError) as exc:
        DifyChatProvider("key", session=http).send("app", "hello", None, "u")
    assert exc.value.meta["status"] == 429
    # upstream detail stays out of the caller-facing message
    assert "rate limited" not in exc.value.message


@pytest.mark.parametrize("response", [
    _response(json_error=True),
    _response(body=["not", "an", "object"]),
])
def test_send_unreadable_body(http, response):
    http.post.return_value = response
    with pytest.raises(ExternalServiceError) as exc:
        DifyChatProvider("key", session=http).send("app", "hello", None, "u")
    assert exc.value.meta["bad_body"] is True


def test_send_without_key_never_calls_out(http):
    with pytest.raises(ExternalServiceError):
        DifyChatProvider("", session=http).send("app", "hello", None, "u")
    http.post.assert_not_called()


@pytest.mark.parametrize("key, failure", [
    ("key", requests.Timeout("slow")),
    ("", None),
])
def test_caller_message_never_names_the_service(http, key, failure):
    http.post.side_effect = failure
    with pytest.raises(ExternalServiceError) as exc:
        DifyChatProvider(key, session=http).send("app", "hello", None, "u")

    assert exc.value.message == "upstream unavailable"
    assert exc.value.to_dict()["error"]["message"] == "upstream unavailable"
    assert exc.value.meta["service"] == "dify"
    assert "dify" in exc.value.describe()


# ---------------------------------------------------------------------------
# identity provider
# ---------------------------------------------------------------------------
def test_get_profile(http):
    http.get.return_value = _response(body={
        "id": "user_x",
        "first_name": "Xena",
        "email_addresses": [{"email_address": "xena@example.com"}],
    })
    provider = ClerkUsersProvider("sk_test", "https://id.example/v1", session=http)

    profile = provider.get_profile("user_x")

    assert profile.auth_id == "user_x"
    assert profile.email == "xena@example.com"
    assert profile.first_name == "Xena"
    args, kwargs = http.get.call_args
    assert args[0] == "https://id.example/v1/users/user_x"
    assert kwargs["headers"] == {"Authorization": "Bearer sk_test"}


@pytest.mark.parametrize("setup", [
    lambda http: setattr(http.get, "side_effect", requests.Timeout("slow")),
    lambda http: setattr(http.get, "return_value", _response(status=404)),
    lambda http: setattr(http.get, "return_value", _response(json_error=True)),
])
def test_get_profile_failures(http, setup):
    setup(http)
    with pytest.raises(ExternalServiceError):
        ClerkUsersProvider("sk_test", session=http).get_profile("user_x")


def test_close_releases_sessions(http):
    DifyChatProvider("key", session=http).close()
    ClerkUsersProvider("sk", session=http).close()
    assert http.close.call_count == 2
