"""
Authentication package for the Reconciliation API Client.

This package contains the credential store, the bearer-token request
interceptor and the single-flight token refresh coordinator.
"""

from recon_client.auth.token_storage import CredentialStore, create_storage_backend
from recon_client.auth.interceptor import BearerTokenInterceptor
from recon_client.auth.refresh_coordinator import RefreshCoordinator

__all__ = [
    'CredentialStore',
    'create_storage_backend',
    'BearerTokenInterceptor',
    'RefreshCoordinator',
]
