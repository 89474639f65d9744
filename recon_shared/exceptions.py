"""
Exception hierarchy for the Reconciliation API Client.

This module defines structured exceptions with error codes, context information,
and recovery suggestions so callers can tell a transient authentication failure
from a terminal one, a permission problem, throttling, or plain transport trouble.
"""

import asyncio
from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the Reconciliation API Client."""

    # Authentication and Authorization Errors (1000-1099)
    AUTH_TOKEN_EXPIRED = "AUTH_1001"
    AUTH_REFRESH_FAILED = "AUTH_1002"
    AUTH_INSUFFICIENT_PERMISSIONS = "AUTH_1003"
    AUTH_INVALID_CREDENTIALS = "AUTH_1004"
    AUTH_SESSION_MISSING = "AUTH_1005"
    AUTH_RETRY_REJECTED = "AUTH_1006"

    # Network and Communication Errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"
    NETWORK_RATE_LIMITED = "NETWORK_2003"

    # HTTP Errors (3000-3099)
    HTTP_CLIENT_ERROR = "HTTP_3001"
    HTTP_SERVER_ERROR = "HTTP_3002"
    HTTP_INVALID_RESPONSE = "HTTP_3003"

    # Storage Errors (4000-4099)
    STORAGE_READ_FAILED = "STORAGE_4001"
    STORAGE_WRITE_FAILED = "STORAGE_4002"

    # Configuration Errors (8000-8099)
    CONFIG_INVALID_FORMAT = "CONFIG_8002"
    CONFIG_INVALID_VALUE = "CONFIG_8004"

    # Internal Errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_AFTER_DELAY = "retry_after_delay"
    RECONNECT = "reconnect"
    REFRESH_TOKEN = "refresh_token"
    LOGIN_AGAIN = "login_again"
    USER_INTERVENTION = "user_intervention"
    CONTACT_ADMIN = "contact_admin"


class ReconClientError(Exception):
    """
    Base exception class for all Reconciliation API Client errors.

    Provides structured error information including error codes, context,
    the HTTP status (when one exists) and recovery suggestions.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None,
        status: Optional[int] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.status = status
        self.timestamp = datetime.now()

        # Add cause information to context if available
        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'status': self.status,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }


# Authentication taxonomy

class AuthenticationError(ReconClientError):
    """Authentication related errors."""

    def __init__(self, message: str, error_code: ErrorCode, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('recovery_actions', [RecoveryAction.LOGIN_AGAIN])
        super().__init__(message=message, error_code=error_code, **kwargs)


class TransientAuthError(AuthenticationError):
    """
    A 401 caused by an expired access token.

    Normally resolved by refresh-and-retry and never seen by callers.
    """

    def __init__(self, message: str = "Access token rejected", **kwargs):
        kwargs.setdefault('status', 401)
        kwargs.setdefault('severity', ErrorSeverity.LOW)
        kwargs.setdefault('recovery_actions', [RecoveryAction.REFRESH_TOKEN])
        super().__init__(message, ErrorCode.AUTH_TOKEN_EXPIRED, **kwargs)


class TerminalAuthError(AuthenticationError):
    """
    The session cannot be recovered locally.

    Raised when the refresh itself fails or when a request that was already
    replayed once is rejected again. Causes a forced logout.
    """

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.AUTH_REFRESH_FAILED, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(message, error_code, **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """A 401 from an authentication endpoint such as login."""

    def __init__(self, message: str = "Invalid email or password", **kwargs):
        kwargs.setdefault('status', 401)
        kwargs.setdefault('severity', ErrorSeverity.MEDIUM)
        kwargs.setdefault('recovery_actions', [RecoveryAction.USER_INTERVENTION])
        super().__init__(message, ErrorCode.AUTH_INVALID_CREDENTIALS, **kwargs)


class AuthorizationDeniedError(ReconClientError):
    """A 403: the credential is valid but insufficient for the resource."""

    def __init__(self, message: str = "Access denied", **kwargs):
        kwargs.setdefault('status', 403)
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_INSUFFICIENT_PERMISSIONS,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.CONTACT_ADMIN],
            **kwargs
        )


class RateLimitedError(ReconClientError):
    """A 429 from the server. Not retried automatically."""

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None, **kwargs):
        kwargs.setdefault('status', 429)
        context = kwargs.pop('context', {})
        context['retry_after'] = retry_after
        super().__init__(
            message=message,
            error_code=ErrorCode.NETWORK_RATE_LIMITED,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.RETRY_AFTER_DELAY],
            context=context,
            **kwargs
        )
        self.retry_after = retry_after


# Transport and HTTP errors

class NetworkError(ReconClientError):
    """Network and communication related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.RECONNECT],
            **kwargs
        )


class RequestFailedError(ReconClientError):
    """A 4xx response other than 401, 403 and 429."""

    def __init__(self, message: str, status: int, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.HTTP_CLIENT_ERROR,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            status=status,
            **kwargs
        )


class ServerError(ReconClientError):
    """A 5xx response."""

    def __init__(self, message: str, status: int, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.HTTP_SERVER_ERROR,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.CONTACT_ADMIN],
            status=status,
            **kwargs
        )


# Ambient errors

class TokenStorageError(ReconClientError):
    """Credential persistence errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class ConfigurationError(ReconClientError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.CONFIG_INVALID_VALUE,
                 config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> ReconClientError:
    """
    Convert a generic exception to a structured ReconClientError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured ReconClientError
    """
    if isinstance(exception, ReconClientError):
        return exception

    if isinstance(exception, (asyncio.TimeoutError, TimeoutError)):
        return NetworkError(
            message=str(exception) or "Request timed out",
            error_code=ErrorCode.NETWORK_TIMEOUT,
            context=context,
            cause=exception
        )

    if isinstance(exception, (ConnectionError, OSError)):
        return NetworkError(
            message=str(exception),
            error_code=ErrorCode.NETWORK_CONNECTION_FAILED,
            context=context,
            cause=exception
        )

    return ReconClientError(
        message=str(exception),
        error_code=default_error_code,
        context=context,
        cause=exception
    )
