#!/usr/bin/env python3
"""
Unit tests for core data models.

Tests the refresh state machine, token and profile models, and the request
and response wrappers used by the dispatcher.
"""

import pytest
import asyncio

from recon_shared.models import (
    ApiRequest, ApiResponse, AuthResponse, Credential, PendingRequest,
    RefreshPhase, RefreshState, RegisterRequest, UserProfile
)


class TestRefreshState:
    """Test the Idle/Refreshing state machine."""

    def test_starts_idle(self):
        state = RefreshState()
        assert state.phase == RefreshPhase.IDLE
        assert not state.refreshing
        assert len(state.queue) == 0

    def test_begin_twice_is_an_error(self):
        state = RefreshState()
        state.begin()

        with pytest.raises(RuntimeError):
            state.begin()

    def test_park_requires_refreshing(self):
        state = RefreshState()
        pending = PendingRequest(ApiRequest('GET', '/a'), future=None)

        with pytest.raises(RuntimeError):
            state.park(pending)

    @pytest.mark.asyncio
    async def test_finish_drains_in_fifo_order(self):
        loop = asyncio.get_running_loop()
        state = RefreshState()
        state.begin()
        for path in ('/a', '/b', '/c'):
            state.park(PendingRequest(ApiRequest('GET', path), loop.create_future()))

        drained = state.finish()

        assert [p.request.path for p in drained] == ['/a', '/b', '/c']
        assert state.phase == RefreshPhase.IDLE
        assert len(state.queue) == 0


class TestCredential:
    """Test Credential validation and parsing."""

    def test_empty_tokens_rejected(self):
        with pytest.raises(ValueError):
            Credential('', 'R1')
        with pytest.raises(ValueError):
            Credential('A1', '')

    def test_from_camel_case(self):
        credential = Credential.from_dict({'accessToken': 'A1', 'refreshToken': 'R1', 'expiresIn': 900})

        assert credential == Credential('A1', 'R1', 900)

    def test_from_snake_case(self):
        credential = Credential.from_dict({'access_token': 'A1', 'refresh_token': 'R1'})

        assert credential.expires_in_seconds is None

    def test_missing_refresh_token_rejected(self):
        with pytest.raises(ValueError):
            Credential.from_dict({'accessToken': 'A1'})


class TestUserProfile:
    """Test UserProfile conversion."""

    DATA = {
        'id': 42,
        'username': 'ada',
        'email': 'ada@example.com',
        'fullName': 'Ada Obi',
        'roles': ['ANALYST', 'ADMIN'],
        'companyName': 'Example Ltd',
        'emailVerified': True,
        'lastLogin': '2024-01-31T09:00:00',
    }

    def test_from_dict(self):
        user = UserProfile.from_dict(self.DATA)

        assert user.id == '42'
        assert user.full_name == 'Ada Obi'
        assert user.roles == ['ANALYST', 'ADMIN']
        assert user.email_verified is True

    def test_core_keeps_identity_fields_only(self):
        core = UserProfile.from_dict(self.DATA).core()

        assert core.to_dict() == {
            'id': '42',
            'username': 'ada',
            'email': 'ada@example.com',
            'fullName': 'Ada Obi',
            'roles': ['ANALYST', 'ADMIN'],
        }

    def test_to_dict_round_trip(self):
        user = UserProfile.from_dict(self.DATA)
        assert UserProfile.from_dict(user.to_dict()) == user


class TestAuthResponse:

    def test_from_dict_with_user(self):
        auth = AuthResponse.from_dict({
            'accessToken': 'A1',
            'refreshToken': 'R1',
            'expiresIn': 3600,
            'user': {'id': '1', 'username': 'ada', 'email': 'ada@example.com'}
        })

        assert auth.token_type == 'Bearer'
        assert auth.user.username == 'ada'
        assert auth.credential == Credential('A1', 'R1', 3600)

    def test_from_dict_without_user(self):
        auth = AuthResponse.from_dict({'accessToken': 'A1', 'refreshToken': 'R1'})
        assert auth.user is None


class TestRequestResponse:
    """Test the dispatcher's request and response wrappers."""

    def test_method_is_upper_cased(self):
        request = ApiRequest('post', '/reports')
        assert request.method == 'POST'
        assert request.retried is False
        assert request.sent_token is None

    def test_register_request_omits_empty_fields(self):
        body = RegisterRequest('ada', 'ada@example.com', 'pw').to_dict()
        assert body == {'username': 'ada', 'email': 'ada@example.com', 'password': 'pw'}

    @pytest.mark.parametrize('status,ok', [(200, True), (204, True), (302, False), (304, False), (401, False), (500, False)])
    def test_ok(self, status, ok):
        assert ApiResponse(status).ok is ok

    def test_header_lookup_is_case_insensitive(self):
        response = ApiResponse(429, headers={'Retry-After': '7'})

        assert response.header('retry-after') == '7'
        assert response.header('X-Missing') is None
