"""
Credential Store for the Reconciliation API Client.

This module persists the access token, refresh token and cached user profile
using the system keyring or an encrypted file, and serves them to the rest of
the client from a consistent in-process snapshot.
"""

import os
import json
import logging
import tempfile
import threading
from datetime import datetime, timedelta
from typing import Optional, Dict
from pathlib import Path
import base64

import keyring
from keyring.errors import PasswordDeleteError
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from jose import jwt, JWTError

from recon_shared.exceptions import TokenStorageError, ErrorCode
from recon_shared.interfaces import IStorageBackend, ICredentialStore
from recon_shared.logging_config import mask_token
from recon_shared.models import UserProfile

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = 'access_token'
REFRESH_TOKEN_KEY = 'refresh_token'
USER_KEY = 'user'
EXPIRES_AT_KEY = 'expires_at'

STORED_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY, EXPIRES_AT_KEY)


def keyring_available(service_name: str) -> bool:
    """Check if the system keyring works by round-tripping a test value."""
    try:
        test_key = f"{service_name}_check"
        keyring.set_password(service_name, test_key, "check")
        result = keyring.get_password(service_name, test_key)
        keyring.delete_password(service_name, test_key)
        return result == "check"
    except Exception as e:
        logger.debug(f"Keyring not available: {e}")
        return False


class MemoryStorageBackend(IStorageBackend):
    """Process-local storage. Nothing survives a restart."""

    def __init__(self, entries: Optional[Dict[str, str]] = None):
        self._entries: Dict[str, str] = dict(entries or {})

    def load(self) -> Dict[str, str]:
        return dict(self._entries)

    def save(self, entries: Dict[str, str]) -> None:
        self._entries = dict(entries)

    def clear(self) -> None:
        self._entries = {}


class KeyringStorageBackend(IStorageBackend):
    """One keyring entry per stored key."""

    def __init__(self, service_name: str = "recon-client"):
        self.service_name = service_name

    def load(self) -> Dict[str, str]:
        entries = {}
        for key in STORED_KEYS:
            value = keyring.get_password(self.service_name, key)
            if value is not None:
                entries[key] = value
        return entries

    def save(self, entries: Dict[str, str]) -> None:
        for key in STORED_KEYS:
            value = entries.get(key)
            if value is None:
                self._delete(key)
            else:
                keyring.set_password(self.service_name, key, value)

    def clear(self) -> None:
        for key in STORED_KEYS:
            self._delete(key)

    def _delete(self, key: str) -> None:
        try:
            keyring.delete_password(self.service_name, key)
        except PasswordDeleteError:
            pass


class EncryptedFileStorageBackend(IStorageBackend):
    """
    All entries in one Fernet-encrypted JSON file.

    Writes go through a temporary file and ``os.replace`` so a reader never
    sees a partially written file. The encryption key is kept in the keyring
    when one is available, otherwise in a 0600 key file next to the tokens.
    """

    def __init__(self, storage_path: str, service_name: str = "recon-client",
                 use_keyring: Optional[bool] = None):
        self.storage_path = Path(storage_path)
        self.key_path = self.storage_path.with_suffix('.key')
        self.service_name = service_name
        self.use_keyring = keyring_available(service_name) if use_keyring is None else use_keyring
        self._encryption_key: Optional[bytes] = None

    def _get_encryption_key(self) -> bytes:
        """Get or create encryption key for file storage."""
        if self._encryption_key:
            return self._encryption_key

        if self.use_keyring:
            try:
                stored_key = keyring.get_password(self.service_name, "encryption_key")
                if stored_key:
                    self._encryption_key = base64.b64decode(stored_key.encode())
                    return self._encryption_key
            except Exception as e:
                logger.warning(f"Failed to get encryption key from keyring: {e}")

        if self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key

        # Generate new key
        password = os.urandom(32)
        salt = os.urandom(16)

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(password))

        stored = False
        if self.use_keyring:
            try:
                keyring.set_password(self.service_name, "encryption_key", base64.b64encode(key).decode())
                stored = True
            except Exception as e:
                logger.warning(f"Failed to store encryption key in keyring: {e}")

        if not stored:
            self._write_private(self.key_path, key)

        self._encryption_key = key
        return key

    def _write_private(self, path: Path, payload: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(payload)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def load(self) -> Dict[str, str]:
        if not self.storage_path.exists():
            return {}

        fernet = Fernet(self._get_encryption_key())
        try:
            decrypted = fernet.decrypt(self.storage_path.read_bytes()).decode()
        except InvalidToken:
            # Key was lost or rotated; the file can never be read again
            logger.warning(f"Discarding unreadable token file {self.storage_path}")
            self.storage_path.unlink()
            return {}
        return json.loads(decrypted)

    def save(self, entries: Dict[str, str]) -> None:
        fernet = Fernet(self._get_encryption_key())
        payload = fernet.encrypt(json.dumps(entries).encode())
        self._write_private(self.storage_path, payload)

    def clear(self) -> None:
        if self.storage_path.exists():
            self.storage_path.unlink()


def create_storage_backend(kind: str, service_name: str = "recon-client",
                           storage_path: Optional[str] = None) -> IStorageBackend:
    """
    Build the backend named by configuration.

    ``auto`` picks the keyring when it works and the encrypted file otherwise.
    """
    if kind == 'memory':
        return MemoryStorageBackend()

    has_keyring = keyring_available(service_name)
    if kind == 'keyring' or (kind == 'auto' and has_keyring):
        if not has_keyring:
            raise TokenStorageError("Keyring storage requested but no usable keyring was found",
                                    error_code=ErrorCode.STORAGE_READ_FAILED)
        return KeyringStorageBackend(service_name)

    if not storage_path:
        raise TokenStorageError("File storage requires a storage path")
    return EncryptedFileStorageBackend(storage_path, service_name, use_keyring=has_keyring)


def _parse_token_expiration(token: str) -> Optional[datetime]:
    """Read the ``exp`` claim without verifying the signature."""
    try:
        payload = jwt.get_unverified_claims(token)
    except JWTError:
        return None

    exp = payload.get('exp')
    if isinstance(exp, (int, float)):
        return datetime.fromtimestamp(exp)
    return None


class CredentialStore(ICredentialStore):
    """
    Process-wide owner of the session credentials.

    Readers always see one consistent snapshot: every mutation builds a new
    snapshot and swaps it in under a lock, so there is never a moment with
    the access token gone but the refresh token still present, or the reverse.
    """

    def __init__(self, backend: Optional[IStorageBackend] = None, refresh_threshold_seconds: int = 60):
        self.backend = backend or MemoryStorageBackend()
        self.refresh_threshold = timedelta(seconds=refresh_threshold_seconds)
        self._lock = threading.RLock()
        self._snapshot: Dict[str, str] = self._load()

        logger.info(f"Credential store initialized ({type(self.backend).__name__}, "
                    f"session: {self.has_session()})")

    def _load(self) -> Dict[str, str]:
        try:
            entries = self.backend.load()
        except Exception as e:
            logger.error(f"Failed to load stored credentials: {e}")
            return {}
        return {k: v for k, v in entries.items() if k in STORED_KEYS and v is not None}

    def _persist(self, snapshot: Dict[str, str]) -> None:
        try:
            if snapshot:
                self.backend.save(snapshot)
            else:
                self.backend.clear()
        except Exception as e:
            logger.error(f"Failed to persist credentials: {e}")
            raise TokenStorageError(f"Failed to persist credentials: {e}", cause=e)

    @property
    def access(self) -> Optional[str]:
        return self._snapshot.get(ACCESS_TOKEN_KEY)

    @property
    def refresh(self) -> Optional[str]:
        return self._snapshot.get(REFRESH_TOKEN_KEY)

    @property
    def cached_user(self) -> Optional[UserProfile]:
        raw = self._snapshot.get(USER_KEY)
        if not raw:
            return None
        try:
            return UserProfile.from_dict(json.loads(raw))
        except (json.JSONDecodeError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable cached user: {e}")
            return None

    @property
    def expires_at(self) -> Optional[datetime]:
        raw = self._snapshot.get(EXPIRES_AT_KEY)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning("Invalid expiration date in stored credentials")
            return None

    def set(self, access: str, refresh: str, expires_in_seconds: Optional[int] = None) -> None:
        """
        Store a new token pair, replacing the previous one entirely.

        The in-process snapshot is updated before persisting, so a storage
        failure still leaves the new tokens usable for this process.

        Raises:
            TokenStorageError: If the backend could not be written
        """
        if not access or not refresh:
            raise ValueError("Both access and refresh tokens are required")

        if expires_in_seconds:
            expires_at = datetime.now() + timedelta(seconds=int(expires_in_seconds))
        else:
            expires_at = _parse_token_expiration(access)

        with self._lock:
            snapshot = {k: v for k, v in self._snapshot.items() if k == USER_KEY}
            snapshot[ACCESS_TOKEN_KEY] = access
            snapshot[REFRESH_TOKEN_KEY] = refresh
            if expires_at:
                snapshot[EXPIRES_AT_KEY] = expires_at.isoformat()
            self._snapshot = snapshot
            logger.debug(f"Stored access token {mask_token(access)}")
            self._persist(snapshot)

    def set_user(self, profile: UserProfile) -> None:
        with self._lock:
            snapshot = dict(self._snapshot)
            snapshot[USER_KEY] = json.dumps(profile.to_dict())
            self._snapshot = snapshot
            self._persist(snapshot)

    def clear(self) -> None:
        """
        Remove tokens and user together.

        Never raises: the in-process snapshot is emptied first, backend
        failures are only logged.
        """
        with self._lock:
            self._snapshot = {}
            try:
                self.backend.clear()
            except Exception as e:
                logger.error(f"Failed to clear persisted credentials: {e}")
        logger.info("Credentials cleared")

    def has_session(self) -> bool:
        return bool(self._snapshot.get(ACCESS_TOKEN_KEY))

    def needs_refresh(self) -> bool:
        """True when the access token expires within the refresh threshold."""
        expires_at = self.expires_at
        if not expires_at or not self.has_session():
            return False
        return expires_at - datetime.now() <= self.refresh_threshold

    def seconds_until_refresh(self) -> Optional[float]:
        """Seconds until the token enters the refresh window, or None if unknown."""
        expires_at = self.expires_at
        if not expires_at or not self.has_session():
            return None
        return max(0.0, (expires_at - datetime.now() - self.refresh_threshold).total_seconds())
