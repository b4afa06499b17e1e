"""
Shared fixtures for token_broker tests: an upstream provider key + JWKS, a resolved
discovery document, and a Broker wired with in-memory components.
"""
import json
import time
from unittest.mock import patch

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key
from fastapi.testclient import TestClient

from token_broker import config
from token_broker.cookies import CookieJar
from token_broker.discovery import DiscoveryResolver
from token_broker.keys import KeyProvider, generate_key
from token_broker.main import Broker, create_app
from token_broker.session_store import InMemoryRevocationIndex
from token_broker.tokens import TokenService
from token_broker.upstream import BACKCHANNEL_LOGOUT_EVENT, UpstreamClient

UPSTREAM_ISSUER = "https://idp.example/realms/agency-realm"
DISCOVERY_URL = f"{UPSTREAM_ISSUER}/.well-known/openid-configuration"
CLIENT_ID = "cpds-spa"
UPSTREAM_KID = "upstream-key"

DISCOVERY_DOC = {
    "issuer": UPSTREAM_ISSUER,
    "authorization_endpoint": f"{UPSTREAM_ISSUER}/protocol/openid-connect/auth",
    "token_endpoint": f"{UPSTREAM_ISSUER}/protocol/openid-connect/token",
    "end_session_endpoint": f"{UPSTREAM_ISSUER}/protocol/openid-connect/logout",
    "jwks_uri": f"{UPSTREAM_ISSUER}/protocol/openid-connect/certs",
}


class MockResponse:
    """Stand-in for httpx.Response: status_code, headers, json()."""

    def __init__(self, status_code: int = 200, payload=None, content_type: str = "application/json"):
        self.status_code = status_code
        self.headers = {"content-type": content_type}
        self._payload = payload
        self.text = json.dumps(payload) if payload is not None else ""

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


def _int_to_b64url(value: int) -> str:
    length = (value.bit_length() + 7) // 8
    s = jwt.utils.base64url_encode(value.to_bytes(length, "big"))
    return s.decode("utf-8") if isinstance(s, bytes) else s


@pytest.fixture(scope="session")
def upstream_key():
    return generate_private_key(65537, 2048)


@pytest.fixture(scope="session")
def upstream_jwks(upstream_key):
    pub = upstream_key.public_key().public_numbers()
    return {
        "keys": [
            {"kty": "RSA", "kid": UPSTREAM_KID, "alg": "RS256", "use": "sig", "n": _int_to_b64url(pub.n), "e": _int_to_b64url(pub.e)}
        ]
    }


@pytest.fixture
def mock_upstream_jwks(upstream_jwks):
    """Serve the upstream JWKS to every PyJWKClient without any HTTP."""
    with patch("jwt.PyJWKClient.fetch_data", return_value=upstream_jwks):
        yield


@pytest.fixture
def upstream_token(upstream_key):
    """Factory: sign a token as the upstream provider. Claims override the defaults."""

    def _make(drop: tuple = (), key=None, **claims) -> str:
        now = int(time.time())
        payload = {"iss": UPSTREAM_ISSUER, "aud": CLIENT_ID, "iat": now, "exp": now + 300}
        payload.update(claims)
        for name in drop:
            payload.pop(name, None)
        return jwt.encode(payload, key or upstream_key, algorithm="RS256", headers={"kid": UPSTREAM_KID})

    return _make


@pytest.fixture
def id_token(upstream_token):
    """Factory for an upstream ID token for user alice in session abc123."""

    def _make(nonce: str | None = None, **claims) -> str:
        base = {
            "sub": "user-alice",
            "sid": "abc123",
            "email": "alice@example.com",
            "preferred_username": "alice",
            "realm_access": {"roles": ["cpds-user"]},
        }
        if nonce is not None:
            base["nonce"] = nonce
        base.update(claims)
        return upstream_token(**base)

    return _make


@pytest.fixture
def logout_token(upstream_token):
    """Factory for a back-channel logout token; pass events=None to omit the event claim."""

    def _make(sid: str | None = "abc123", events="default", **claims) -> str:
        base = {"sub": "user-alice", "jti": "lt-1"}
        if sid is not None:
            base["sid"] = sid
        if events == "default":
            base["events"] = {BACKCHANNEL_LOGOUT_EVENT: {}}
        elif events is not None:
            base["events"] = events
        base.update(claims)
        return upstream_token(**base)

    return _make


@pytest.fixture
def resolver():
    """DiscoveryResolver that has already resolved DISCOVERY_DOC."""
    r = DiscoveryResolver(DISCOVERY_URL, CLIENT_ID, "cpds-secret", retry_initial=0, retry_max=0)
    with patch("token_broker.discovery.httpx.get", return_value=MockResponse(200, DISCOVERY_DOC)):
        r.resolve()
    return r


@pytest.fixture
def broker(resolver):
    keys = KeyProvider(generate_key(), "test-kid")
    index = InMemoryRevocationIndex()
    return Broker(
        discovery=resolver,
        upstream=UpstreamClient(resolver, scope="openid profile email"),
        keys=keys,
        index=index,
        tokens=TokenService(keys, index, issuer=config.ISSUER, audience=config.AUDIENCE, ttl_minutes=30),
        cookies=CookieJar(["test-key-1", "test-key-2"], secure=False),
    )


@pytest.fixture
def client(broker):
    # No context manager: lifespan (background discovery, sweeper) does not run in tests
    return TestClient(create_app(broker))


@pytest.fixture
def mock_response():
    return MockResponse
