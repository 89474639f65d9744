"""
Shared fixtures: an in-process fake of the reconciliation backend served by
aiohttp's test server, and clients wired against it.
"""

import asyncio
from typing import Dict, List, Optional, Set, Tuple

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from recon_client.api_client import ReconAPIClient
from recon_client.auth.token_storage import CredentialStore, MemoryStorageBackend

USER = {
    'id': '42',
    'username': 'ada',
    'email': 'ada@example.com',
    'fullName': 'Ada Obi',
    'roles': ['ANALYST'],
    'companyName': 'Example Ltd',
    'emailVerified': True,
    'lastLogin': '2024-01-31T09:00:00',
}

PASSWORD = 'correct-password'


class FakeReconServer:
    """
    Just enough of the backend to exercise authentication.

    ``valid_tokens`` holds the access tokens the server currently accepts;
    ``rotation`` maps a refresh token to the pair issued for it.
    """

    def __init__(self):
        self.valid_tokens: Set[str] = set()
        self.rotation: Dict[str, Tuple[str, str]] = {'R1': ('A2', 'R2'), 'R2': ('A3', 'R3')}
        self.refresh_calls: List[dict] = []
        self.refresh_gate: Optional[asyncio.Event] = None
        self.refresh_failure: Optional[Tuple[int, dict]] = None
        self.item_requests: List[Tuple[str, Optional[str]]] = []
        self.missing_items: Set[str] = set()
        self.logout_status = 200
        self.logout_calls = 0
        self.me_status = 200
        self.registered_emails: Set[str] = set()
        self.uploads: List[dict] = []
        self.base_url = ''

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post('/api/auth/login', self.login)
        app.router.add_post('/api/auth/register', self.register)
        app.router.add_post('/api/auth/refresh', self.refresh)
        app.router.add_post('/api/auth/logout', self.logout)
        app.router.add_get('/api/auth/me', self.me)
        app.router.add_post('/api/auth/change-password', self.change_password)
        app.router.add_get('/api/items/{name}', self.item)
        app.router.add_get('/api/forbidden', self.forbidden)
        app.router.add_get('/api/limited', self.limited)
        app.router.add_get('/api/broken', self.broken)
        app.router.add_get('/api/missing', self.missing)
        app.router.add_get('/api/always-401', self.always_unauthorized)
        app.router.add_get('/api/slow', self.slow)
        app.router.add_get('/api/plain', self.plain)
        app.router.add_get('/api/ingest/banks', self.banks)
        app.router.add_post('/api/ingest/csv', self.upload)
        app.router.add_post('/api/ingest/csv/auto', self.upload)
        app.router.add_get('/api/reports/daily-summary', self.daily_summary)
        app.router.add_get('/api/reports/{kind}/export/{fmt}', self.export)
        return app

    def issue(self, access: str, refresh: str) -> dict:
        self.valid_tokens = {access}
        return {
            'accessToken': access,
            'refreshToken': refresh,
            'tokenType': 'Bearer',
            'expiresIn': 3600,
            'user': USER,
        }

    def _token(self, request: web.Request) -> Optional[str]:
        header = request.headers.get('Authorization', '')
        if header.startswith('Bearer '):
            return header[len('Bearer '):]
        return None

    def _authorized(self, request: web.Request) -> bool:
        return self._token(request) in self.valid_tokens

    def _unauthorized(self) -> web.Response:
        return web.json_response({'message': 'Token expired'}, status=401)

    async def login(self, request):
        body = await request.json()
        if body.get('password') != PASSWORD:
            return web.json_response({'message': 'Invalid email or password'}, status=401)
        return web.json_response(self.issue('A1', 'R1'))

    async def register(self, request):
        body = await request.json()
        if body['email'] in self.registered_emails:
            return web.json_response({'message': 'Email already registered'}, status=400)
        self.registered_emails.add(body['email'])
        return web.json_response(self.issue('A1', 'R1'), status=201)

    async def refresh(self, request):
        body = await request.json()
        self.refresh_calls.append(body)
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()

        if self.refresh_failure is not None:
            status, payload = self.refresh_failure
            return web.json_response(payload, status=status)

        pair = self.rotation.get(body.get('refreshToken'))
        if pair is None:
            return web.json_response({'error': 'invalid_refresh_token'}, status=400)
        return web.json_response(self.issue(*pair))

    async def logout(self, request):
        self.logout_calls += 1
        if self.logout_status != 200:
            return web.json_response({'message': 'Logout failed'}, status=self.logout_status)
        self.valid_tokens = set()
        return web.json_response({'message': 'Logged out'})

    async def me(self, request):
        if not self._authorized(request):
            return self._unauthorized()
        if self.me_status != 200:
            return web.json_response({'message': 'Profile unavailable'}, status=self.me_status)
        return web.json_response(USER)

    async def change_password(self, request):
        if not self._authorized(request):
            return web.json_response({'error': 'UNAUTHORIZED', 'message': 'Not authenticated'}, status=401)
        body = await request.json()
        if body.get('currentPassword') != PASSWORD:
            return web.json_response(
                {'error': 'INVALID_PASSWORD', 'message': 'Current password is incorrect'}, status=400
            )
        return web.json_response({'message': 'Password changed successfully. Please log in again.'})

    async def item(self, request):
        name = request.match_info['name']
        token = self._token(request)
        self.item_requests.append((name, token))
        if token not in self.valid_tokens:
            return self._unauthorized()
        if name in self.missing_items:
            return web.json_response({'message': f'No item {name}'}, status=404)
        return web.json_response({'item': name, 'token': token})

    async def forbidden(self, request):
        return web.json_response({'message': 'Access denied'}, status=403)

    async def limited(self, request):
        return web.json_response({'message': 'Slow down'}, status=429, headers={'Retry-After': '7'})

    async def broken(self, request):
        return web.json_response({'error': 'boom'}, status=500)

    async def missing(self, request):
        return web.json_response({'message': 'Not found'}, status=404)

    async def always_unauthorized(self, request):
        return self._unauthorized()

    async def slow(self, request):
        await asyncio.sleep(0.5)
        return web.json_response({})

    async def plain(self, request):
        return web.Response(text='pong')

    async def banks(self, request):
        if not self._authorized(request):
            return self._unauthorized()
        return web.json_response(['GTBank', 'Access Bank', 'Zenith Bank'])

    async def upload(self, request):
        if not self._authorized(request):
            return self._unauthorized()
        form = await request.post()
        upload = form['file']
        record = {
            'fileName': upload.filename,
            'bank': form.get('bank', 'detected'),
            'content': upload.file.read().decode(),
        }
        self.uploads.append(record)
        return web.json_response({'fileName': record['fileName'], 'bank': record['bank'], 'successCount': 2})

    async def daily_summary(self, request):
        if not self._authorized(request):
            return self._unauthorized()
        return web.json_response({'date': request.query.get('date', 'today'), 'totalTransactions': 12})

    async def export(self, request):
        if not self._authorized(request):
            return self._unauthorized()
        kind = request.match_info['kind']
        return web.Response(body=f'report,{kind}\n1,2\n'.encode(), content_type='application/octet-stream')


@pytest.fixture
async def fake_server():
    """Start the fake backend; ``base_url`` points at its /api root."""
    backend = FakeReconServer()
    server = TestServer(backend.make_app())
    await server.start_server()
    backend.base_url = str(server.make_url('/api'))
    yield backend
    await server.close()


@pytest.fixture
def store():
    """Credential store backed by process memory."""
    return CredentialStore(MemoryStorageBackend())


@pytest.fixture
async def api_client(fake_server, store):
    client = ReconAPIClient(fake_server.base_url, store=store, timeout=5.0)
    yield client
    await client.close()


@pytest.fixture
def wait_until():
    """Poll a condition on the event loop until it holds."""
    async def _wait(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not reached in time")
            await asyncio.sleep(0.005)
    return _wait
