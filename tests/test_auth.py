"""Tests for the authorization helpers."""

from unittest.mock import MagicMock

import pytest

from duo.api.auth import bearer_token, require_self, secrets_match, verify_friend_key
from duo.errors import Forbidden


def _partner(pid: str = "bob", key: str = "bob-key") -> MagicMock:
    p = MagicMock()
    p.id = pid
    p.secret_key = key
    return p


def _request(headers: dict[str, str]) -> MagicMock:
    r = MagicMock()
    r.headers = {k.lower(): v for k, v in headers.items()}
    return r


class TestSecretsMatch:
    def test_equal(self):
        assert secrets_match("abc", "abc")

    def test_different(self):
        assert not secrets_match("abc", "abd")

    def test_empty_never_matches(self):
        assert not secrets_match("", "")
        assert not secrets_match(None, "abc")
        assert not secrets_match("abc", "")


class TestBearerToken:
    def test_extracts_token(self):
        assert bearer_token(_request({"Authorization": "Bearer k3y"})) == "k3y"

    def test_other_schemes_ignored(self):
        assert bearer_token(_request({"Authorization": "Basic abc"})) is None
        assert bearer_token(_request({})) is None
        assert bearer_token(_request({"Authorization": "Bearer   "})) is None


class TestChecks:
    def test_require_self(self):
        require_self(_partner("bob"), "bob")
        with pytest.raises(Forbidden):
            require_self(_partner("bob"), "alice")

    def test_friend_key(self):
        verify_friend_key(_partner(), "bob-key")
        with pytest.raises(Forbidden):
            verify_friend_key(_partner(), "alice-key")
        with pytest.raises(Forbidden):
            verify_friend_key(_partner(), None)
