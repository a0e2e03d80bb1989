"""Tests for bearer-token identity resolution."""

from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from studio import auth


class FakeAuth:
    def __init__(self, user=None, error=None):
        self.user = user
        self.error = error
        self.tokens = []

    def get_user(self, token):
        self.tokens.append(token)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(user=self.user)


def _use_auth(monkeypatch, fake_auth):
    monkeypatch.setattr(auth, "get_supabase", lambda: SimpleNamespace(auth=fake_auth))


def _bearer(token):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def test_valid_token_returns_user_id(monkeypatch):
    fake_auth = FakeAuth(user=SimpleNamespace(id="uid-123"))
    _use_auth(monkeypatch, fake_auth)

    assert auth.get_current_user_id(_bearer("jwt")) == "uid-123"
    assert fake_auth.tokens == ["jwt"]


def test_missing_header_is_unauthorized():
    with pytest.raises(HTTPException) as exc_info:
        auth.get_current_user_id(None)

    assert exc_info.value.status_code == 401


def test_rejected_token_is_unauthorized(monkeypatch):
    _use_auth(monkeypatch, FakeAuth(error=RuntimeError("invalid JWT")))

    with pytest.raises(HTTPException) as exc_info:
        auth.get_current_user_id(_bearer("expired"))

    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Unauthorized"


def test_token_without_user_is_unauthorized(monkeypatch):
    _use_auth(monkeypatch, FakeAuth(user=None))

    with pytest.raises(HTTPException):
        auth.get_current_user_id(_bearer("jwt"))
