"""
Request interceptor that attaches the current access token to outgoing requests.
"""

import logging

from recon_shared.interfaces import ICredentialStore
from recon_shared.models import ApiRequest

logger = logging.getLogger(__name__)

AUTHORIZATION_HEADER = 'Authorization'


class BearerTokenInterceptor:
    """
    Reads the stored access token just before each send.

    Requests go out unauthenticated when no token is stored; the server
    decides whether the endpoint needs one.
    """

    def __init__(self, store: ICredentialStore):
        self.store = store

    def __call__(self, request: ApiRequest) -> ApiRequest:
        token = self.store.access

        # Drop any header left over from a previous attempt
        for name in [h for h in request.headers if h.lower() == AUTHORIZATION_HEADER.lower()]:
            del request.headers[name]

        if token:
            request.headers[AUTHORIZATION_HEADER] = f'Bearer {token}'
        request.sent_token = token
        return request
