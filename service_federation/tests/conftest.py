"""
Shared fixtures for the federation service tests.
"""

import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt

from shared.circuit_breaker import circuit_breaker_manager


IDP_HOST = "idp.example.com"
WELL_KNOWN_URL = f"https://{IDP_HOST}/.well-known/openid-configuration"
JWKS_URL = f"https://{IDP_HOST}/jwks"
TOKEN_URL = f"https://{IDP_HOST}/token"
USERINFO_URL = f"https://{IDP_HOST}/userinfo"
API_URL = "https://api.example.com/api/v1"

NOW = 1_700_000_000


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SigningKey:
    """An RSA key pair plus its public JWK."""

    def __init__(self, kid: str):
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.kid = kid
        self.private_pem = private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("ascii")
        public = jwk.construct(self.private_pem, "RS256").public_key().to_dict()
        self.public_jwk = {**public, "kid": kid, "use": "sig"}

    def sign(self, claims: Dict[str, Any], kid: Optional[str] = None, **headers) -> str:
        headers = {"kid": kid or self.kid, **headers}
        return jwt.encode(claims, self.private_pem, algorithm="RS256", headers=headers)


Route = Callable[[httpx.Request], httpx.Response]


class FakeProvider:
    """In-process identity provider behind an ``httpx.MockTransport``."""

    def __init__(self):
        self.keys: List[Dict[str, Any]] = []
        self.fail_jwks = False
        self.requests: List[httpx.Request] = []
        self.routes: Dict[Tuple[str, str], Route] = {}
        self.discovery = {
            "issuer": f"https://{IDP_HOST}",
            "token_endpoint": TOKEN_URL,
            "jwks_uri": JWKS_URL,
            "userinfo_endpoint": USERINFO_URL,
        }
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(self._handle))

    def on(self, method: str, path: str, status: int = 200, json: Any = None,
           handler: Optional[Route] = None) -> None:
        self.routes[(method, path)] = handler or (lambda request: httpx.Response(status, json=json))

    def calls(self, path: str) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.url.host == IDP_HOST:
            if path == "/.well-known/openid-configuration":
                return httpx.Response(200, json=self.discovery)
            if path == "/jwks":
                if self.fail_jwks:
                    return httpx.Response(503, text="unavailable")
                return httpx.Response(200, json={"keys": list(self.keys)})

        route = self.routes.get((request.method, path))
        if route is None:
            return httpx.Response(404, json={"message": "Not Found"})
        return route(request)


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Each test starts with closed breakers."""
    circuit_breaker_manager.reset()
    yield
    circuit_breaker_manager.reset()


@pytest.fixture(scope="session")
def signing_key():
    return SigningKey("key-1")


@pytest.fixture(scope="session")
def other_signing_key():
    return SigningKey("key-2")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider(signing_key):
    fake = FakeProvider()
    fake.keys = [signing_key.public_jwk]
    return fake


@pytest.fixture
def claims():
    now = int(time.time())
    return {
        "sub": "subject-123",
        "email": "Jane.Doe@example.com",
        "name": "Jane Doe",
        "iss": f"https://{IDP_HOST}",
        "aud": "signing-app",
        "iat": now,
        "exp": now + 3600,
    }
