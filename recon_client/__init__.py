"""
Reconciliation API Client.

An authenticated HTTP client for the reconciliation backend with transparent,
single-flight access token refresh.
"""

from recon_client.api_client import ReconAPIClient
from recon_client.config import ClientConfiguration
from recon_client.resources import ReconResources
from recon_client.session import SessionController

__version__ = "1.0.0"

__all__ = [
    'ReconAPIClient',
    'ClientConfiguration',
    'ReconResources',
    'SessionController',
]
