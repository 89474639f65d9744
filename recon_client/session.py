"""
Session Controller for the Reconciliation API Client.

Owns the user-facing authentication lifecycle: login, registration, logout,
restoring a stored session at startup, and the forced logout that follows a
terminal token refresh failure.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from recon_client.api_client import ReconAPIClient
from recon_shared.exceptions import (
    ReconClientError, TerminalAuthError, TokenStorageError, ErrorCode
)
from recon_shared.logging_config import AuditLogger, AuditEventType
from recon_shared.models import (
    AuthResponse, LoginRedirect, LoginRequest, RegisterRequest, Session, UserProfile
)

logger = logging.getLogger(__name__)

MIN_REFRESH_CHECK_SECONDS = 5.0
IDLE_REFRESH_CHECK_SECONDS = 3600.0


class SessionController:
    """
    Manages the authenticated session on top of a ``ReconAPIClient``.

    Registers itself as the client's terminal failure handler, so a failed
    refresh anywhere in the application ends the session here.
    """

    def __init__(
        self,
        api_client: ReconAPIClient,
        login_path: str = '/login',
        audit_logger: Optional[AuditLogger] = None
    ):
        self.api_client = api_client
        self.store = api_client.store
        self.login_path = login_path
        self._audit_logger = audit_logger or AuditLogger()

        self._user: Optional[UserProfile] = None
        self._authenticated = False
        self._verified = False
        self._current_location: Optional[str] = None

        self._auth_callbacks: List[Callable[[bool], None]] = []
        self._forced_logout_callbacks: List[Callable[[LoginRedirect], None]] = []

        self._bootstrap_task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None

        api_client.set_terminal_failure_handler(self._handle_terminal_failure)

    @property
    def user(self) -> Optional[UserProfile]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    @property
    def session(self) -> Session:
        return Session(user=self._user, is_authenticated=self._authenticated, verified=self._verified)

    def add_auth_callback(self, callback: Callable[[bool], None]) -> None:
        """
        Add callback for authentication state changes.

        Args:
            callback: Function called with authentication status (bool)
        """
        self._auth_callbacks.append(callback)

    def add_forced_logout_callback(self, callback: Callable[[LoginRedirect], None]) -> None:
        """
        Add callback for forced logouts.

        Args:
            callback: Function called with the login redirect
        """
        self._forced_logout_callbacks.append(callback)

    def set_current_location(self, location: Optional[str]) -> None:
        """Remember where the user is, for the redirect after a forced logout."""
        self._current_location = location

    def _notify_auth_change(self, is_authenticated: bool) -> None:
        """Notify callbacks of authentication state change."""
        for callback in self._auth_callbacks:
            try:
                callback(is_authenticated)
            except Exception as e:
                logger.error(f"Error in auth callback: {e}")

    def _set_state(self, user: Optional[UserProfile], authenticated: bool, verified: bool = False) -> None:
        changed = authenticated != self._authenticated
        self._user = user
        self._authenticated = authenticated
        self._verified = verified
        if changed:
            self._notify_auth_change(authenticated)

    def _store_session(self, auth: AuthResponse) -> UserProfile:
        try:
            credential = auth.credential
        except ValueError as e:
            raise ReconClientError(
                f"Authentication response missing tokens: {e}",
                error_code=ErrorCode.HTTP_INVALID_RESPONSE,
                cause=e
            )
        if auth.user is None:
            raise ReconClientError(
                "Authentication response missing user",
                error_code=ErrorCode.HTTP_INVALID_RESPONSE
            )

        user = auth.user.core()
        try:
            self.store.set(credential.access_token, credential.refresh_token, credential.expires_in_seconds)
            self.store.set_user(user)
        except TokenStorageError as e:
            logger.warning(f"Session kept in memory only: {e.message}")

        self._set_state(user, True, verified=True)
        return user

    async def _authenticate(self, path: str, body: dict, email: str,
                            event_type: AuditEventType) -> AuthResponse:
        try:
            response = await self.api_client.post(path, json=body, skip_auth_refresh=True)
            if not isinstance(response.data, dict):
                raise ReconClientError(
                    f"Unexpected response from {path}",
                    error_code=ErrorCode.HTTP_INVALID_RESPONSE,
                    status=response.status
                )
            auth = AuthResponse.from_dict(response.data)
            user = self._store_session(auth)
        except ReconClientError as e:
            self._audit_logger.log_authentication(
                email, success=False, failure_reason=e.message, event_type=event_type
            )
            raise

        self._audit_logger.log_authentication(email, user_id=user.id, event_type=event_type)
        logger.info(f"{event_type.value.capitalize()} successful for {user.username}")
        return auth

    async def login(self, credentials: LoginRequest) -> AuthResponse:
        """
        Log in with email and password.

        Raises:
            InvalidCredentialsError: If the server rejects the credentials
        """
        return await self._authenticate(
            '/auth/login', credentials.to_dict(), credentials.email, AuditEventType.AUTHENTICATION
        )

    async def register(self, data: RegisterRequest) -> AuthResponse:
        """Create an account and start a session for it."""
        return await self._authenticate(
            '/auth/register', data.to_dict(), data.email, AuditEventType.REGISTRATION
        )

    async def logout(self) -> None:
        """
        End the session.

        The server is told on a best-effort basis; local credentials are
        cleared whatever happens to that call.
        """
        user_id = self._user.id if self._user else None
        acknowledged = False

        await self._cancel_task(self._refresh_task)
        self._refresh_task = None

        try:
            if self.store.has_session():
                await self.api_client.post('/auth/logout', skip_auth_refresh=True)
                acknowledged = True
        except ReconClientError as e:
            logger.warning(f"Server logout failed, clearing local session anyway: {e.message}")
        finally:
            self.store.clear()
            self._set_state(None, False)
            self._audit_logger.log_logout(user_id, server_acknowledged=acknowledged)

        logger.info("Logged out")

    async def get_current_user(self) -> UserProfile:
        """Fetch the profile of the authenticated user."""
        response = await self.api_client.get('/auth/me')
        if not isinstance(response.data, dict):
            raise ReconClientError(
                "Unexpected response from /auth/me",
                error_code=ErrorCode.HTTP_INVALID_RESPONSE,
                status=response.status
            )
        return UserProfile.from_dict(response.data).core()

    async def refresh_user(self) -> UserProfile:
        """
        Re-fetch the profile and update the cache.

        Errors propagate to the caller and leave the session in place.
        """
        user = await self.get_current_user()
        try:
            self.store.set_user(user)
        except TokenStorageError as e:
            logger.warning(f"Cached user not persisted: {e.message}")
        self._set_state(user, True, verified=True)
        return user

    async def change_password(self, current_password: str, new_password: str) -> None:
        """
        Change the password of the authenticated user.

        Goes through token refresh like any authenticated call; a wrong
        current password comes back as a 400.

        Raises:
            RequestFailedError: If the current password is wrong
        """
        try:
            await self.api_client.post(
                '/auth/change-password',
                json={'currentPassword': current_password, 'newPassword': new_password}
            )
        except ReconClientError as e:
            self._audit_logger.log_event(
                AuditEventType.PASSWORD_CHANGE,
                f"Password change failed: {e.message}",
                user_id=self._user.id if self._user else None,
                result="failure"
            )
            raise

        self._audit_logger.log_event(
            AuditEventType.PASSWORD_CHANGE,
            "Password changed",
            user_id=self._user.id if self._user else None,
            result="success"
        )

    def bootstrap(self) -> Optional[asyncio.Task]:
        """
        Restore a stored session.

        The session is marked authenticated immediately from the cached user,
        then verified in the background. Returns the verification task, or
        None when nothing was stored.
        """
        if self._bootstrap_task and not self._bootstrap_task.done():
            return self._bootstrap_task

        cached_user = self.store.cached_user
        if not self.store.has_session() or cached_user is None:
            logger.debug("No stored session to restore")
            return None

        logger.info(f"Restoring stored session for {cached_user.username}")
        self._set_state(cached_user, True, verified=False)
        self._bootstrap_task = asyncio.create_task(self._verify_session())
        return self._bootstrap_task

    async def _verify_session(self) -> bool:
        try:
            await self.refresh_user()
        except ReconClientError as e:
            logger.warning(f"Stored session failed verification: {e.message}")
            self.store.clear()
            self._set_state(None, False)
            return False

        logger.info("Stored session verified")
        return True

    def force_logout(self, reason: str = "Session expired") -> None:
        """Clear the session and send the user to the login page."""
        if not self.store.has_session():
            return

        self.store.clear()
        self._signal_forced_logout(reason)

    def _handle_terminal_failure(self, error: TerminalAuthError) -> None:
        # Credentials are already cleared at this point
        self._signal_forced_logout(error.message)

    def _signal_forced_logout(self, reason: str) -> None:
        user_id = self._user.id if self._user else None
        redirect = LoginRedirect(
            login_path=self.login_path,
            return_to=self._current_location,
            reason=reason
        )

        logger.warning(f"Session ended: {reason}")
        self._set_state(None, False)
        self._audit_logger.log_forced_logout(reason, user_id=user_id, return_to=redirect.return_to)

        for callback in self._forced_logout_callbacks:
            try:
                callback(redirect)
            except Exception as e:
                logger.error(f"Error in forced logout callback: {e}")

    def start_auto_refresh(self) -> asyncio.Task:
        """Refresh the access token shortly before it expires."""
        if self._refresh_task and not self._refresh_task.done():
            return self._refresh_task

        self._refresh_task = asyncio.create_task(self._refresh_loop())
        return self._refresh_task

    async def _refresh_loop(self) -> None:
        """Automatic token refresh loop."""
        try:
            while self.store.has_session():
                delay = self.store.seconds_until_refresh()
                if delay is None:
                    sleep_seconds = IDLE_REFRESH_CHECK_SECONDS
                else:
                    sleep_seconds = max(MIN_REFRESH_CHECK_SECONDS, delay)

                logger.debug(f"Token refresh check in {sleep_seconds:.0f} seconds")
                await asyncio.sleep(sleep_seconds)

                if not self.store.needs_refresh():
                    continue

                logger.info("Automatic token refresh triggered")
                try:
                    await self.api_client.refresh_tokens()
                except TerminalAuthError:
                    break
                except ReconClientError as e:
                    logger.warning(f"Automatic token refresh failed: {e.message}")

        except asyncio.CancelledError:
            logger.debug("Token refresh task cancelled")
            raise

        logger.debug("Token refresh loop stopped")

    async def _cancel_task(self, task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def shutdown(self) -> None:
        """Stop background tasks."""
        logger.info("Shutting down session controller")

        await self._cancel_task(self._refresh_task)
        await self._cancel_task(self._bootstrap_task)
        self._refresh_task = None
        self._bootstrap_task = None
