"""
Core interfaces for the Reconciliation API Client.

This module defines the abstract interfaces that the credential store and
its storage backends must implement.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict

from .models import UserProfile


class IStorageBackend(ABC):
    """Interface for persisting the credential entries."""

    @abstractmethod
    def load(self) -> Dict[str, str]:
        """Load every stored entry."""
        pass

    @abstractmethod
    def save(self, entries: Dict[str, str]) -> None:
        """Replace the stored entries with ``entries``."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every stored entry."""
        pass


class ICredentialStore(ABC):
    """Interface for the process-wide credential store."""

    @property
    @abstractmethod
    def access(self) -> Optional[str]:
        """Current access token."""
        pass

    @property
    @abstractmethod
    def refresh(self) -> Optional[str]:
        """Current refresh token."""
        pass

    @property
    @abstractmethod
    def cached_user(self) -> Optional[UserProfile]:
        """Cached user profile."""
        pass

    @property
    @abstractmethod
    def expires_at(self) -> Optional[datetime]:
        """Access token expiry, when known."""
        pass

    @abstractmethod
    def set(self, access: str, refresh: str, expires_in_seconds: Optional[int] = None) -> None:
        """Store a new token pair."""
        pass

    @abstractmethod
    def set_user(self, profile: UserProfile) -> None:
        """Cache the user profile."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove tokens and user together."""
        pass

    @abstractmethod
    def has_session(self) -> bool:
        """True iff an access token is present."""
        pass
