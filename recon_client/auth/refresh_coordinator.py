"""
Token Refresh Coordinator for the Reconciliation API Client.

When the access token expires, every request in flight may come back with
HTTP 401 at once. The coordinator turns those failures into a single refresh
call, parks the requests that arrive while it runs, and then either replays
all of them with the new token or fails all of them together.

The state check and the ``Idle -> Refreshing`` transition happen in the same
synchronous step, before any ``await``. On a single event loop that is the
whole mutual-exclusion story; no lock is taken.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set

from recon_shared.exceptions import (
    ReconClientError, TerminalAuthError, TokenStorageError, NetworkError, ErrorCode
)
from recon_shared.interfaces import ICredentialStore
from recon_shared.logging_config import AuditLogger, mask_token
from recon_shared.models import (
    ApiRequest, ApiResponse, Credential, PendingRequest, RefreshPhase, RefreshState
)

logger = logging.getLogger(__name__)

Refresher = Callable[[str], Awaitable[Credential]]
Replayer = Callable[[ApiRequest], Awaitable[ApiResponse]]
TerminalFailureHandler = Callable[[TerminalAuthError], None]


class RefreshCoordinator:
    """
    Single-flight token refresh with a FIFO queue of parked requests.

    Args:
        store: Credential store read for the refresh token and written with the new pair
        refresher: Performs the refresh call for a refresh token
        replayer: Sends a request again, through the interceptor and dispatcher
        on_terminal_failure: Called once per terminal failure to force a logout
    """

    def __init__(
        self,
        store: ICredentialStore,
        refresher: Refresher,
        replayer: Replayer,
        on_terminal_failure: Optional[TerminalFailureHandler] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.store = store
        self._refresher = refresher
        self._replayer = replayer
        self._on_terminal_failure = on_terminal_failure
        self._audit_logger = audit_logger or AuditLogger()
        self._state = RefreshState()
        self._refresh_task: Optional['asyncio.Task[Credential]'] = None
        self._replays: Set['asyncio.Task[ApiResponse]'] = set()

    @property
    def phase(self) -> RefreshPhase:
        return self._state.phase

    @property
    def pending_count(self) -> int:
        """Requests waiting on the refresh in flight, the triggering one included."""
        return len(self._state.queue)

    def set_terminal_failure_handler(self, handler: Optional[TerminalFailureHandler]) -> None:
        self._on_terminal_failure = handler

    async def handle_unauthorized(self, request: ApiRequest, response: ApiResponse) -> ApiResponse:
        """
        Resolve a 401 for ``request``.

        Returns the response of the replayed request. Raises
        ``TerminalAuthError`` when the refresh fails or when the request had
        already been replayed once.
        """
        if request.retried:
            error = TerminalAuthError(
                f"{request.method} {request.path} rejected again after token refresh",
                error_code=ErrorCode.AUTH_RETRY_REJECTED,
                status=response.status,
                context={'path': request.path}
            )
            logger.warning(error.message)
            self._fail_session(error, only_if_active=True)
            raise error

        request.retried = True

        if not self._state.refreshing:
            current = self.store.access
            if current and request.sent_token != current:
                # A refresh finished while this request was in flight
                logger.debug(f"Replaying {request.method} {request.path} with token refreshed in flight")
                return await self._replayer(request)
            self._start_refresh()

        # The trigger parks first, so replays follow the order the 401s were seen
        future = asyncio.get_running_loop().create_future()
        self._state.park(PendingRequest(request, future))
        logger.debug(f"Parked {request.method} {request.path} behind refresh "
                     f"({self.pending_count} waiting)")
        return await future

    async def refresh(self) -> Credential:
        """
        Refresh without a triggering request, joining any refresh in flight.

        Used for proactive refresh ahead of expiry. Cancelling the caller
        does not cancel the refresh.
        """
        if not self._state.refreshing:
            self._start_refresh()
        return await asyncio.shield(self._refresh_task)

    def _start_refresh(self) -> None:
        """Enter ``Refreshing`` and start the refresh call in its own task."""
        self._state.begin()
        task = asyncio.ensure_future(self._refresh_cycle(self.store.refresh))
        self._refresh_task = task

        def _done(done: 'asyncio.Task[Credential]') -> None:
            if self._refresh_task is done:
                self._refresh_task = None
            if not done.cancelled():
                # Failures reach the waiters through their own futures
                done.exception()

        task.add_done_callback(_done)

    async def _refresh_cycle(self, refresh_token: Optional[str]) -> Credential:
        logger.info("Access token rejected, refreshing")

        try:
            credential = await self._perform_refresh(refresh_token)
        except asyncio.CancelledError:
            parked = self._state.finish()
            self._reject_all(parked, NetworkError("Token refresh was cancelled"))
            raise
        except TerminalAuthError as error:
            parked = self._state.finish()
            logger.error(f"Token refresh failed, failing {len(parked)} waiting request(s): {error.message}")
            self._audit_logger.log_token_refresh(
                success=False, waiting_requests=len(parked), failure_reason=error.message
            )
            self._reject_all(parked, error)
            self._fail_session(error, only_if_active=True)
            raise

        if self.store.refresh != refresh_token:
            # Logged out (or logged in again) while the refresh was in flight
            logger.info("Session changed during refresh, discarding refreshed tokens")
        else:
            try:
                self.store.set(credential.access_token, credential.refresh_token,
                               credential.expires_in_seconds)
            except TokenStorageError as e:
                logger.warning(f"Refreshed tokens kept in memory only: {e.message}")

        parked = self._state.finish()
        logger.info(f"Token refreshed ({mask_token(credential.access_token)}), "
                    f"replaying {len(parked)} parked request(s)")
        self._audit_logger.log_token_refresh(success=True, waiting_requests=len(parked))

        for pending in parked:
            self._schedule_replay(pending)

        return credential

    async def _perform_refresh(self, refresh_token: Optional[str]) -> Credential:
        if not refresh_token:
            raise TerminalAuthError(
                "No refresh token available",
                error_code=ErrorCode.AUTH_SESSION_MISSING,
                status=401
            )

        try:
            return await self._refresher(refresh_token)
        except TerminalAuthError:
            raise
        except ReconClientError as e:
            raise TerminalAuthError(
                f"Token refresh failed: {e.message}",
                status=e.status,
                user_message=e.user_message,
                context=dict(e.context),
                cause=e
            )
        except Exception as e:
            raise TerminalAuthError(f"Token refresh failed: {e}", cause=e)

    def _schedule_replay(self, pending: PendingRequest) -> None:
        if pending.future.done():
            logger.debug(f"Not replaying {pending.request.method} {pending.request.path}, caller went away")
            return

        task = asyncio.ensure_future(self._replayer(pending.request))
        self._replays.add(task)

        def _deliver(done: 'asyncio.Future[ApiResponse]') -> None:
            self._replays.discard(done)
            if done.cancelled():
                if not pending.future.done():
                    pending.future.cancel()
                return

            error = done.exception()
            if pending.future.done():
                # Caller went away
                return
            if error is not None:
                pending.future.set_exception(error)
            else:
                pending.future.set_result(done.result())

        task.add_done_callback(_deliver)

    def _reject_all(self, parked: List[PendingRequest], error: Exception) -> None:
        for pending in parked:
            if not pending.future.done():
                pending.future.set_exception(error)

    def _fail_session(self, error: TerminalAuthError, only_if_active: bool) -> None:
        """
        Clear credentials and signal a forced logout.

        With ``only_if_active`` the signal is skipped when the session is
        already gone, so a burst of terminal failures logs out once.
        """
        if only_if_active and not self.store.has_session():
            return

        self.store.clear()
        if self._on_terminal_failure:
            try:
                self._on_terminal_failure(error)
            except Exception as e:
                logger.error(f"Error in terminal failure handler: {e}")
