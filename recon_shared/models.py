"""
Core data models for the Reconciliation API Client.

This module defines the data structures shared by the credential store,
the refresh coordinator, the HTTP dispatcher and the session controller.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Dict, Any, Deque, Union
from enum import Enum


class RefreshPhase(Enum):
    """Phases of the token refresh state machine."""
    IDLE = "idle"
    REFRESHING = "refreshing"


@dataclass
class Credential:
    """An access/refresh token pair as issued by the auth service."""
    access_token: str
    refresh_token: str
    expires_in_seconds: Optional[int] = None

    def __post_init__(self):
        if not self.access_token:
            raise ValueError("Access token cannot be empty")
        if not self.refresh_token:
            raise ValueError("Refresh token cannot be empty")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Credential':
        return cls(
            access_token=data.get('accessToken') or data.get('access_token') or '',
            refresh_token=data.get('refreshToken') or data.get('refresh_token') or '',
            expires_in_seconds=data.get('expiresIn', data.get('expires_in'))
        )


@dataclass
class UserProfile:
    """The authenticated user as reported by the auth service."""
    id: str
    username: str
    email: str
    full_name: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    company_name: Optional[str] = None
    email_verified: Optional[bool] = None
    last_login: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserProfile':
        """Build a profile from the server's camelCase JSON (snake_case also accepted)."""
        return cls(
            id=str(data.get('id', '')),
            username=data.get('username', ''),
            email=data.get('email', ''),
            full_name=data.get('fullName', data.get('full_name')),
            roles=list(data.get('roles') or []),
            company_name=data.get('companyName', data.get('company_name')),
            email_verified=data.get('emailVerified', data.get('email_verified')),
            last_login=data.get('lastLogin', data.get('last_login')),
            created_at=data.get('createdAt', data.get('created_at'))
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'fullName': self.full_name,
            'roles': list(self.roles),
            'companyName': self.company_name,
            'emailVerified': self.email_verified,
            'lastLogin': self.last_login,
            'createdAt': self.created_at
        }
        return {k: v for k, v in data.items() if v is not None}

    def core(self) -> 'UserProfile':
        """Return only the fields kept in the session cache."""
        return UserProfile(
            id=self.id,
            username=self.username,
            email=self.email,
            full_name=self.full_name,
            roles=list(self.roles)
        )


@dataclass
class AuthResponse:
    """Body returned by login, register and refresh."""
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    user: Optional[UserProfile] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuthResponse':
        user_data = data.get('user')
        return cls(
            access_token=data.get('accessToken', ''),
            refresh_token=data.get('refreshToken', ''),
            token_type=data.get('tokenType', 'Bearer'),
            expires_in=data.get('expiresIn'),
            user=UserProfile.from_dict(user_data) if user_data else None
        )

    @property
    def credential(self) -> Credential:
        return Credential(self.access_token, self.refresh_token, self.expires_in)


@dataclass
class LoginRequest:
    email: str
    password: str

    def to_dict(self) -> Dict[str, Any]:
        return {'email': self.email, 'password': self.password}


@dataclass
class RegisterRequest:
    username: str
    email: str
    password: str
    full_name: Optional[str] = None
    company_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'username': self.username,
            'email': self.email,
            'password': self.password,
            'fullName': self.full_name,
            'companyName': self.company_name
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class Session:
    """Derived view of the current authentication state."""
    user: Optional[UserProfile] = None
    is_authenticated: bool = False
    verified: bool = False


@dataclass
class LoginRedirect:
    """Where to send the user after a forced logout."""
    login_path: str
    return_to: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class ApiRequest:
    """
    An outbound request that can be sent more than once.

    ``retried`` is the one-shot replay guard; ``sent_token`` is the access
    token the request last went out with.
    """
    method: str
    path: str
    json: Optional[Any] = None
    data: Optional[Any] = None
    params: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    skip_auth_refresh: bool = False
    expect_binary: bool = False
    retried: bool = False
    sent_token: Optional[str] = None

    def __post_init__(self):
        self.method = self.method.upper()


@dataclass
class ApiResponse:
    """A fully read HTTP response."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    data: Union[Dict[str, Any], List[Any], str, bytes, None] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


@dataclass
class PendingRequest:
    """A request parked until the in-flight refresh settles."""
    request: ApiRequest
    future: 'asyncio.Future[ApiResponse]'
    parked_at: datetime = field(default_factory=datetime.now)


@dataclass
class RefreshState:
    """
    Refresh state machine: ``Idle`` or ``Refreshing(queue)``.

    The queue only exists while refreshing; leaving the phase hands the
    drained queue back to the caller.
    """
    phase: RefreshPhase = RefreshPhase.IDLE
    queue: Deque[PendingRequest] = field(default_factory=deque)

    @property
    def refreshing(self) -> bool:
        return self.phase is RefreshPhase.REFRESHING

    def begin(self) -> None:
        if self.refreshing:
            raise RuntimeError("Refresh already in progress")
        self.phase = RefreshPhase.REFRESHING
        self.queue = deque()

    def park(self, pending: PendingRequest) -> None:
        if not self.refreshing:
            raise RuntimeError("Cannot park a request while idle")
        self.queue.append(pending)

    def finish(self) -> List[PendingRequest]:
        drained = list(self.queue)
        self.queue = deque()
        self.phase = RefreshPhase.IDLE
        return drained
