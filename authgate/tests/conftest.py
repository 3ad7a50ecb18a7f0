"""
Shared fixtures: test signing keys, ID token factory and a fake identity
provider served through httpx.MockTransport.
"""

import json
import re
import time
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from authgate.config import Settings
from authgate.main import create_app
from authgate.stores import MemoryKeyValueStore


# Test RSA key pair generation for mocking JWKS
def generate_test_key():
    """Generate RSA private key for testing"""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


# Generate test keys once for reuse
TEST_PRIVATE_KEY = generate_test_key()
OTHER_PRIVATE_KEY = generate_test_key()
TEST_KID = "test-key-id-2024"

IDP_DOMAIN = "tenant.example.com"
ISSUER = f"https://{IDP_DOMAIN}/"
CLIENT_ID = "test-client-id"
APP_ORIGIN = "https://app.example.com"
COOKIE_NAME = "authgate_session"


def make_id_token(
    kid: str = TEST_KID,
    private_key=TEST_PRIVATE_KEY,
    now: Optional[float] = None,
    exp_delta_seconds: int = 3600,
    algorithm: str = "RS256",
    **claims: Any,
) -> str:
    """
    Create an ID token signed with a test private key.

    Args:
        kid: Key ID for JWKS matching
        private_key: Signing key
        now: Issue time (defaults to the current time)
        exp_delta_seconds: Token expiry relative to `now`
        claims: Claims overriding or extending the defaults

    Returns:
        Encoded JWT string
    """
    now = time.time() if now is None else now
    payload: Dict[str, Any] = {
        "iss": ISSUER,
        "sub": "auth0|test-user-123",
        "aud": CLIENT_ID,
        "iat": int(now),
        "exp": int(now) + exp_delta_seconds,
        "email": "user@example.com",
        "name": "Test User",
    }
    payload.update(claims)
    return jwt.encode(payload, private_key, algorithm=algorithm, headers={"kid": kid})


def make_jwk(kid: str = TEST_KID, private_key=TEST_PRIVATE_KEY) -> Dict[str, Any]:
    jwk = RSAAlgorithm.to_jwk(private_key.public_key(), as_dict=True)
    jwk["kid"] = kid
    jwk["use"] = "sig"
    jwk["alg"] = "RS256"
    return jwk


def make_jwks(*kids: str) -> Dict[str, Any]:
    """Create JWKS response with the test public key under each kid"""
    return {"keys": [make_jwk(kid) for kid in (kids or (TEST_KID,))]}


def session_cookie_from(response: httpx.Response) -> Optional[str]:
    """Session id from the response's Set-Cookie header, if any."""
    for header in response.headers.get_list("set-cookie"):
        match = re.match(rf"{COOKIE_NAME}=([^;]*)", header)
        if match and match.group(1) and "max-age=0" not in header.lower():
            return match.group(1)
    return None


def cleared_cookie(response: httpx.Response) -> bool:
    return any(
        header.startswith(f"{COOKIE_NAME}=") and "max-age=0" in header.lower()
        for header in response.headers.get_list("set-cookie")
    )


def state_from_location(location: str) -> str:
    return parse_qs(urlparse(location).query)["state"][0]


# =============================================================================
# Fake Identity Provider
# =============================================================================

class FakeIdentityProvider:
    """Token and JWKS endpoints answering through httpx.MockTransport."""

    def __init__(self):
        self.id_token = make_id_token()
        self.token_status = 200
        self.token_body: Optional[Dict[str, Any]] = None
        self.jwks = make_jwks()
        self.jwks_status = 200
        self.token_calls = 0
        self.jwks_calls = 0
        self.token_requests = []

    def token_response_body(self) -> Dict[str, Any]:
        if self.token_body is not None:
            return self.token_body
        return {
            "access_token": "mock-access-token",
            "id_token": self.id_token,
            "token_type": "Bearer",
            "expires_in": 86400,
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host != IDP_DOMAIN:
            return httpx.Response(404)

        if request.method == "POST" and request.url.path == "/oauth/token":
            self.token_calls += 1
            self.token_requests.append(json.loads(request.content))
            return httpx.Response(self.token_status, json=self.token_response_body())

        if request.method == "GET" and request.url.path == "/.well-known/jwks.json":
            self.jwks_calls += 1
            return httpx.Response(self.jwks_status, json=self.jwks)

        return httpx.Response(404)


# =============================================================================
# Fixtures
# =============================================================================

def build_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "IDP_DOMAIN": IDP_DOMAIN,
        "CLIENT_ID": CLIENT_ID,
        "CLIENT_SECRET": "test-client-secret",
        "REDIRECT_URI": f"{APP_ORIGIN}/callback",
        "COOKIE_DOMAIN": "app.example.com",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    """Application settings for tests"""
    return build_settings()


@pytest.fixture
def idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def kv_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def http_client(idp) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(idp.handler))


@pytest.fixture
def app(settings, kv_store, http_client):
    """Gate application with a protected route behind it"""
    application = create_app(settings=settings, kv_store=kv_store, http_client=http_client)

    async def protected(request: Request) -> JSONResponse:
        return JSONResponse(
            {"subject": request.state.identity.subject},
            status_code=200,
            headers={"X-Protected-Handler": "yes"},
        )

    application.add_api_route("/protected", protected, methods=["GET"])
    return application


@pytest.fixture
def client(app):
    with TestClient(app, base_url=APP_ORIGIN, follow_redirects=False) as test_client:
        yield test_client


def login(client: TestClient, path: str = "/protected") -> str:
    """Run the full redirect/callback flow and return the new session id."""
    response = client.get(path)
    assert response.status_code == 302
    state = state_from_location(response.headers["location"])

    response = client.get("/callback", params={"code": "auth-code-123", "state": state})
    assert response.status_code == 302, response.text
    session_id = session_cookie_from(response)
    assert session_id is not None
    client.cookies.clear()
    return session_id
