#!/usr/bin/env python3
"""
Tests for ReconAPIClient against an in-process fake backend.

Covers bearer token attachment, status routing, transport failures and the
end-to-end refresh scenarios.
"""

import pytest
import asyncio
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from unittest.mock import MagicMock

from recon_client.api_client import ReconAPIClient, parse_retry_after, extract_error_message
from recon_shared.exceptions import (
    ErrorCode, AuthorizationDeniedError, InvalidCredentialsError, NetworkError,
    RateLimitedError, RequestFailedError, ServerError, TerminalAuthError
)


class TestHelpers:
    """Test response parsing helpers."""

    def test_retry_after_seconds(self):
        assert parse_retry_after('120') == 120.0
        assert parse_retry_after(' 7 ') == 7.0

    def test_retry_after_http_date(self):
        when = datetime.now(timezone.utc) + timedelta(seconds=90)
        seconds = parse_retry_after(format_datetime(when, usegmt=True))
        assert 80 <= seconds <= 90

    def test_retry_after_past_date_is_zero(self):
        assert parse_retry_after('Wed, 21 Oct 2015 07:28:00 GMT') == 0.0

    def test_retry_after_missing_or_garbage(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after('') is None
        assert parse_retry_after('soon') is None

    def test_error_message_precedence(self):
        assert extract_error_message({'message': 'm', 'error': 'e'}, 'd') == 'm'
        assert extract_error_message({'error': 'e', 'detail': 'x'}, 'd') == 'e'
        assert extract_error_message({'detail': 'x'}, 'd') == 'x'
        assert extract_error_message('  plain text ', 'd') == 'plain text'
        assert extract_error_message(None, 'd') == 'd'
        assert extract_error_message({}, 'd') == 'd'


class TestRequestRouting:
    """Test status routing of ordinary requests."""

    @pytest.mark.asyncio
    async def test_attaches_bearer_token(self, api_client, fake_server, store):
        store.set('A1', 'R1')
        fake_server.valid_tokens = {'A1'}

        response = await api_client.get('/items/x')

        assert response.status == 200
        assert response.data == {'item': 'x', 'token': 'A1'}
        assert fake_server.item_requests == [('x', 'A1')]

    @pytest.mark.asyncio
    async def test_unauthenticated_request_has_no_header(self, api_client, fake_server):
        with pytest.raises(TerminalAuthError) as exc_info:
            await api_client.get('/items/x')

        assert fake_server.item_requests == [('x', None)]
        assert exc_info.value.error_code == ErrorCode.AUTH_SESSION_MISSING
        assert fake_server.refresh_calls == []

    @pytest.mark.asyncio
    async def test_plain_text_body(self, api_client):
        response = await api_client.get('/plain')
        assert response.data == 'pong'

    @pytest.mark.asyncio
    async def test_forbidden_does_not_refresh_or_logout(self, api_client, fake_server, store):
        store.set('A1', 'R1')
        handler = MagicMock()
        api_client.set_terminal_failure_handler(handler)

        with pytest.raises(AuthorizationDeniedError) as exc_info:
            await api_client.get('/forbidden')

        assert exc_info.value.status == 403
        assert exc_info.value.message == 'Access denied'
        assert fake_server.refresh_calls == []
        assert store.has_session()
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_rate_limited_carries_retry_after(self, api_client, fake_server):
        with pytest.raises(RateLimitedError) as exc_info:
            await api_client.get('/limited')

        assert exc_info.value.retry_after == 7.0
        assert exc_info.value.status == 429
        assert exc_info.value.message == 'Slow down'

    @pytest.mark.asyncio
    async def test_server_error_uses_error_field(self, api_client):
        with pytest.raises(ServerError) as exc_info:
            await api_client.get('/broken')

        assert exc_info.value.status == 500
        assert exc_info.value.message == 'boom'
        assert exc_info.value.context['server_error'] == 'boom'

    @pytest.mark.asyncio
    async def test_other_client_error(self, api_client):
        with pytest.raises(RequestFailedError) as exc_info:
            await api_client.get('/missing')

        assert exc_info.value.status == 404
        assert exc_info.value.message == 'Not found'

    @pytest.mark.asyncio
    async def test_auth_endpoint_401_is_invalid_credentials(self, api_client, fake_server):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            await api_client.post('/auth/login', json={'email': 'a@b.c', 'password': 'nope'},
                                  skip_auth_refresh=True)

        assert exc_info.value.status == 401
        assert exc_info.value.message == 'Invalid email or password'
        assert fake_server.refresh_calls == []

    @pytest.mark.asyncio
    async def test_connection_refused_is_network_error(self, store):
        client = ReconAPIClient('http://127.0.0.1:1/api', store=store, timeout=2.0)
        try:
            with pytest.raises(NetworkError) as exc_info:
                await client.get('/items/x')
        finally:
            await client.close()

        assert exc_info.value.error_code == ErrorCode.NETWORK_CONNECTION_FAILED

    @pytest.mark.asyncio
    async def test_timeout_is_network_timeout(self, fake_server, store):
        client = ReconAPIClient(fake_server.base_url, store=store, timeout=0.1)
        try:
            with pytest.raises(NetworkError) as exc_info:
                await client.get('/slow')
        finally:
            await client.close()

        assert exc_info.value.error_code == ErrorCode.NETWORK_TIMEOUT

    @pytest.mark.asyncio
    async def test_context_manager_closes_session(self, fake_server, store):
        async with ReconAPIClient(fake_server.base_url, store=store) as client:
            await client.get('/plain')
            session = client._session

        assert session.closed
        assert client._session is None


class TestTransparentRefresh:
    """Test the refresh and replay scenarios end to end."""

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_and_replayed(self, api_client, fake_server, store):
        store.set('A1', 'R1')

        response = await api_client.get('/items/x')

        assert response.status == 200
        assert response.data['token'] == 'A2'
        assert fake_server.refresh_calls == [{'refreshToken': 'R1'}]
        assert fake_server.item_requests == [('x', 'A1'), ('x', 'A2')]
        assert store.access == 'A2'
        assert store.refresh == 'R2'

    @pytest.mark.asyncio
    async def test_three_concurrent_requests_share_one_refresh(self, api_client, fake_server, store,
                                                               wait_until):
        store.set('A1', 'R1')
        fake_server.missing_items = {'c'}
        fake_server.refresh_gate = asyncio.Event()

        tasks = [asyncio.ensure_future(api_client.get(f'/items/{name}')) for name in ('a', 'b', 'c')]
        await wait_until(lambda: len(fake_server.refresh_calls) == 1
                         and api_client._coordinator.pending_count == 3)
        fake_server.refresh_gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert fake_server.refresh_calls == [{'refreshToken': 'R1'}]
        assert results[0].data == {'item': 'a', 'token': 'A2'}
        assert results[1].data == {'item': 'b', 'token': 'A2'}
        # The replay's own status wins
        assert isinstance(results[2], RequestFailedError)
        assert results[2].status == 404

        replayed = sorted(name for name, token in fake_server.item_requests if token == 'A2')
        assert replayed == ['a', 'b', 'c']
        assert store.access == 'A2'

    @pytest.mark.asyncio
    async def test_rejected_refresh_clears_session_and_fails_all(self, api_client, fake_server, store,
                                                                 wait_until):
        store.set('A1', 'R1')
        handler = MagicMock()
        api_client.set_terminal_failure_handler(handler)
        fake_server.refresh_failure = (400, {'error': 'invalid_refresh_token'})
        fake_server.refresh_gate = asyncio.Event()

        tasks = [asyncio.ensure_future(api_client.get(f'/items/{name}')) for name in ('a', 'b', 'c')]
        await wait_until(lambda: len(fake_server.refresh_calls) == 1
                         and api_client._coordinator.pending_count == 3)
        fake_server.refresh_gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, TerminalAuthError) for r in results)
        assert results[0].status == 400
        assert results[0].context['server_error'] == 'invalid_refresh_token'
        assert not store.has_session()
        assert store.access is None and store.refresh is None
        handler.assert_called_once()
        assert len(fake_server.refresh_calls) == 1
        assert all(token == 'A1' for _, token in fake_server.item_requests)

    @pytest.mark.asyncio
    async def test_second_401_after_replay_is_surfaced(self, api_client, fake_server, store):
        store.set('A1', 'R1')
        handler = MagicMock()
        api_client.set_terminal_failure_handler(handler)

        with pytest.raises(TerminalAuthError) as exc_info:
            await api_client.get('/always-401')

        assert exc_info.value.error_code == ErrorCode.AUTH_RETRY_REJECTED
        assert len(fake_server.refresh_calls) == 1
        assert not store.has_session()
        handler.assert_called_once()

    @pytest.mark.asyncio
    async def test_refresh_network_failure_is_terminal(self, store):
        store.set('A1', 'R1')
        client = ReconAPIClient('http://127.0.0.1:1/api', store=store, timeout=2.0)
        try:
            with pytest.raises(TerminalAuthError) as exc_info:
                await client._coordinator.refresh()
        finally:
            await client.close()

        assert exc_info.value.context['cause_type'] == 'NetworkError'
        assert not store.has_session()

    @pytest.mark.asyncio
    async def test_refresh_tokens_uses_stored_refresh_token(self, api_client, fake_server, store):
        store.set('A1', 'R1')

        credential = await api_client.refresh_tokens()

        assert credential.access_token == 'A2'
        assert credential.expires_in_seconds == 3600
        assert fake_server.refresh_calls == [{'refreshToken': 'R1'}]
        assert store.expires_at is not None
