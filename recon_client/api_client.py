"""
HTTP API Client for the Reconciliation API Client.

This module provides the authenticated request function the rest of the
application uses. Callers see an ordinary HTTP call; expired access tokens
are refreshed and the affected requests replayed behind their back.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Dict, Any

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from recon_client.auth.interceptor import BearerTokenInterceptor
from recon_client.auth.refresh_coordinator import RefreshCoordinator, TerminalFailureHandler
from recon_client.auth.token_storage import CredentialStore, create_storage_backend
from recon_client.config import ClientConfiguration
from recon_shared.exceptions import (
    ReconClientError, ErrorCode, NetworkError, InvalidCredentialsError,
    AuthorizationDeniedError, RateLimitedError, RequestFailedError, ServerError
)
from recon_shared.interfaces import ICredentialStore
from recon_shared.logging_config import AuditLogger
from recon_shared.models import ApiRequest, ApiResponse, Credential

logger = logging.getLogger(__name__)

REFRESH_PATH = '/auth/refresh'


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None

    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def extract_error_message(data: Any, default: str) -> str:
    """Pick the user-facing text out of an error body."""
    if isinstance(data, dict):
        for key in ('message', 'error', 'detail'):
            value = data.get(key)
            if value:
                return str(value)
    elif isinstance(data, str) and data.strip():
        return data.strip()
    return default


class ReconAPIClient:
    """
    HTTP API client for the reconciliation backend.

    Attaches the stored bearer token to every request, routes error
    statuses to typed exceptions, and hands 401s to the refresh
    coordinator.
    """

    def __init__(
        self,
        server_url: str,
        store: Optional[ICredentialStore] = None,
        timeout: float = 30.0,
        on_terminal_failure: Optional[TerminalFailureHandler] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.server_url = server_url.rstrip('/')
        self.timeout = ClientTimeout(total=timeout)
        self.store = store or CredentialStore()

        self._interceptor = BearerTokenInterceptor(self.store)
        self._coordinator = RefreshCoordinator(
            self.store,
            refresher=self._request_new_credential,
            replayer=self._dispatch,
            on_terminal_failure=on_terminal_failure,
            audit_logger=audit_logger
        )

        self._session: Optional[ClientSession] = None

        logger.info(f"API client initialized for server: {self.server_url}")

    @classmethod
    def from_config(cls, config: ClientConfiguration,
                    audit_logger: Optional[AuditLogger] = None) -> 'ReconAPIClient':
        """Build a client and its credential store from configuration."""
        backend = create_storage_backend(
            config.get_storage_backend(),
            service_name=config.get_service_name(),
            storage_path=config.get_storage_path()
        )
        store = CredentialStore(backend, refresh_threshold_seconds=config.get_refresh_threshold())
        return cls(
            config.get_server_url(),
            store=store,
            timeout=config.get_server_timeout(),
            audit_logger=audit_logger
        )

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self) -> ClientSession:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=20,
                limit_per_host=10,
                keepalive_timeout=30
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={
                    'User-Agent': 'ReconClient/1.0',
                    'Accept': 'application/json'
                }
            )
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def set_terminal_failure_handler(self, handler: Optional[TerminalFailureHandler]) -> None:
        """Register the callback that forces a logout on terminal auth failure."""
        self._coordinator.set_terminal_failure_handler(handler)

    async def refresh_tokens(self) -> Credential:
        """Refresh now, sharing any refresh already in flight."""
        return await self._coordinator.refresh()

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Any] = None,
        data: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        skip_auth_refresh: bool = False,
        expect_binary: bool = False
    ) -> ApiResponse:
        """
        Make an authenticated HTTP request.

        Args:
            method: HTTP method (GET, POST, PUT, PATCH, DELETE)
            path: API path relative to the server URL
            json: JSON request body
            data: Form or multipart body, or a callable building one per send
            params: Query parameters
            headers: Extra request headers
            skip_auth_refresh: Surface a 401 directly instead of refreshing
            expect_binary: Return the successful body as bytes

        Returns:
            The response, with JSON bodies already decoded

        Raises:
            TerminalAuthError: Refresh failed, or the replayed request was rejected again
            AuthorizationDeniedError: On 403
            RateLimitedError: On 429
            ServerError: On 5xx
            RequestFailedError: On any other 4xx
            NetworkError: On connection failure or timeout
        """
        api_request = ApiRequest(
            method=method,
            path=path,
            json=json,
            data=data,
            params=params,
            headers=dict(headers or {}),
            skip_auth_refresh=skip_auth_refresh,
            expect_binary=expect_binary
        )
        return await self._dispatch(api_request)

    async def get(self, path: str, **kwargs) -> ApiResponse:
        return await self.request('GET', path, **kwargs)

    async def post(self, path: str, **kwargs) -> ApiResponse:
        return await self.request('POST', path, **kwargs)

    async def put(self, path: str, **kwargs) -> ApiResponse:
        return await self.request('PUT', path, **kwargs)

    async def patch(self, path: str, **kwargs) -> ApiResponse:
        return await self.request('PATCH', path, **kwargs)

    async def delete(self, path: str, **kwargs) -> ApiResponse:
        return await self.request('DELETE', path, **kwargs)

    async def _dispatch(self, request: ApiRequest) -> ApiResponse:
        """Send through the interceptor and route the response."""
        response = await self._send(self._interceptor(request))

        if response.status == 401 and not request.skip_auth_refresh:
            return await self._coordinator.handle_unauthorized(request, response)

        if not response.ok:
            raise self._error_for(request, response)
        return response

    def _url(self, path: str) -> str:
        if path.startswith(('http://', 'https://')):
            return path
        return f"{self.server_url}/{path.lstrip('/')}"

    async def _send(self, request: ApiRequest) -> ApiResponse:
        """Perform one HTTP exchange and read the body fully."""
        session = await self._ensure_session()
        url = self._url(request.path)
        # Bodies that can only be consumed once are rebuilt for every send
        body = request.data() if callable(request.data) else request.data

        logger.debug(f"{request.method} {url}{' (replay)' if request.retried else ''}")

        try:
            async with session.request(
                method=request.method,
                url=url,
                json=request.json,
                data=body,
                params=request.params,
                headers=request.headers
            ) as response:
                payload = await self._read_body(response, request.expect_binary)
                return ApiResponse(
                    status=response.status,
                    headers=dict(response.headers),
                    data=payload
                )

        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"{request.method} {request.path} timed out after {self.timeout.total}s",
                error_code=ErrorCode.NETWORK_TIMEOUT,
                context={'path': request.path},
                cause=e
            )
        except (ClientError, OSError) as e:
            raise NetworkError(
                f"{request.method} {request.path} failed: {e}",
                context={'path': request.path},
                cause=e
            )

    async def _read_body(self, response: aiohttp.ClientResponse, expect_binary: bool) -> Any:
        if expect_binary and 200 <= response.status < 300:
            return await response.read()

        text = await response.text()
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text

    def _error_for(self, request: ApiRequest, response: ApiResponse) -> ReconClientError:
        """Map a non-success response to the matching exception."""
        status = response.status
        context: Dict[str, Any] = {'path': request.path, 'method': request.method}
        if isinstance(response.data, dict) and response.data.get('error'):
            context['server_error'] = response.data['error']

        if status == 401:
            message = extract_error_message(response.data, 'Unauthorized')
            logger.warning(f"Authentication rejected for {request.path}: {message}")
            return InvalidCredentialsError(message, context=context)

        if status == 403:
            message = extract_error_message(response.data, 'Access denied')
            logger.warning(f"Access denied for {request.path}: {message}")
            return AuthorizationDeniedError(message, context=context)

        if status == 429:
            retry_after = parse_retry_after(response.header('Retry-After'))
            message = extract_error_message(response.data, 'Too many requests')
            logger.warning(f"Rate limited on {request.path}, retry after {retry_after} seconds")
            return RateLimitedError(message, retry_after=retry_after, context=context)

        if status >= 500:
            message = extract_error_message(response.data, 'Internal server error')
            logger.error(f"Server error ({status}) on {request.path}: {message}")
            return ServerError(message, status=status, context=context)

        message = extract_error_message(response.data, f'Request failed ({status})')
        logger.warning(f"Request failed ({status}) on {request.path}: {message}")
        return RequestFailedError(message, status=status, context=context)

    async def _request_new_credential(self, refresh_token: str) -> Credential:
        """
        Exchange the refresh token for a new pair.

        Bypasses the interceptor and the coordinator: any failure here is a
        refresh failure, never another refresh.
        """
        request = ApiRequest(
            method='POST',
            path=REFRESH_PATH,
            json={'refreshToken': refresh_token},
            skip_auth_refresh=True
        )
        response = await self._send(request)

        if not response.ok:
            raise self._error_for(request, response)

        if not isinstance(response.data, dict):
            raise ReconClientError(
                "Refresh response was not a JSON object",
                error_code=ErrorCode.HTTP_INVALID_RESPONSE,
                status=response.status
            )

        try:
            return Credential.from_dict(response.data)
        except ValueError as e:
            raise ReconClientError(
                f"Refresh response missing tokens: {e}",
                error_code=ErrorCode.HTTP_INVALID_RESPONSE,
                status=response.status,
                cause=e
            )
