"""Tests for upstream token grants, ID token validation and logout token checks."""
from unittest.mock import patch

import httpx
import pytest
from jwt.exceptions import PyJWKClientConnectionError

from token_broker.errors import BackchannelLogoutRejected, RefreshFailed, TokenExchangeFailed
from token_broker.tests.conftest import CLIENT_ID, DISCOVERY_DOC, UPSTREAM_ISSUER
from token_broker.upstream import UpstreamClient

REDIRECT_URI = "http://localhost:8080/ids/auth/callback"


@pytest.fixture
def upstream(resolver):
    return UpstreamClient(resolver, scope="openid profile email")


def test_exchange_code_success(upstream, id_token, mock_upstream_jwks, mock_response):
    body = {"access_token": "kc-at", "id_token": id_token(nonce="n-1"), "refresh_token": "kc-rt"}
    with patch("token_broker.upstream.httpx.post", return_value=mock_response(200, body)) as post:
        tokens = upstream.exchange_code("the-code", "the-verifier", REDIRECT_URI, "n-1")
    assert tokens.refresh_token == "kc-rt"
    assert tokens.claims["sub"] == "user-alice"
    assert tokens.claims["sid"] == "abc123"
    args, kwargs = post.call_args
    assert args[0] == DISCOVERY_DOC["token_endpoint"]
    assert kwargs["data"] == {
        "grant_type": "authorization_code",
        "code": "the-code",
        "redirect_uri": REDIRECT_URI,
        "code_verifier": "the-verifier",
        "client_id": CLIENT_ID,
        "client_secret": "cpds-secret",
    }


def test_exchange_code_rejected_is_400(upstream, mock_response):
    err = mock_response(400, {"error": "invalid_grant", "error_description": "Code not valid"})
    with patch("token_broker.upstream.httpx.post", return_value=err):
        with pytest.raises(TokenExchangeFailed) as exc:
            upstream.exchange_code("bad", "v", REDIRECT_URI, "n")
    assert exc.value.status_code == 400


@pytest.mark.parametrize(
    "outcome",
    [httpx.ConnectError("refused"), "server_error", "no_id_token"],
)
def test_exchange_code_upstream_fault_is_502(upstream, mock_response, outcome):
    if outcome == "server_error":
        side_effect = [mock_response(500, {"error": "boom"})]
    elif outcome == "no_id_token":
        side_effect = [mock_response(200, {"access_token": "kc-at"})]
    else:
        side_effect = outcome
    with patch("token_broker.upstream.httpx.post", side_effect=side_effect):
        with pytest.raises(TokenExchangeFailed) as exc:
            upstream.exchange_code("c", "v", REDIRECT_URI, "n")
    assert exc.value.status_code == 502


def test_exchange_code_nonce_mismatch(upstream, id_token, mock_upstream_jwks, mock_response):
    body = {"access_token": "kc-at", "id_token": id_token(nonce="someone-else")}
    with patch("token_broker.upstream.httpx.post", return_value=mock_response(200, body)):
        with pytest.raises(TokenExchangeFailed) as exc:
            upstream.exchange_code("c", "v", REDIRECT_URI, "n-1")
    assert exc.value.status_code == 400


def test_exchange_code_jwks_unreachable_is_502(upstream, id_token, mock_response):
    body = {"access_token": "kc-at", "id_token": id_token(nonce="n")}
    with patch("token_broker.upstream.httpx.post", return_value=mock_response(200, body)), patch(
        "jwt.PyJWKClient.fetch_data", side_effect=PyJWKClientConnectionError("certs unreachable")
    ):
        with pytest.raises(TokenExchangeFailed) as exc:
            upstream.exchange_code("c", "v", REDIRECT_URI, "n")
    assert exc.value.status_code == 502


def test_exchange_code_wrong_audience(upstream, id_token, mock_upstream_jwks, mock_response):
    body = {"access_token": "kc-at", "id_token": id_token(nonce="n", aud="other-client")}
    with patch("token_broker.upstream.httpx.post", return_value=mock_response(200, body)):
        with pytest.raises(TokenExchangeFailed):
            upstream.exchange_code("c", "v", REDIRECT_URI, "n")


def test_refresh_success(upstream, id_token, mock_upstream_jwks, mock_response):
    body = {"access_token": "kc-at-2", "id_token": id_token(), "refresh_token": "kc-rt-2"}
    with patch("token_broker.upstream.httpx.post", return_value=mock_response(200, body)) as post:
        tokens = upstream.refresh("kc-rt-1")
    assert tokens.refresh_token == "kc-rt-2"
    assert post.call_args.kwargs["data"]["grant_type"] == "refresh_token"
    assert post.call_args.kwargs["data"]["refresh_token"] == "kc-rt-1"


def test_refresh_failure(upstream, mock_response):
    with patch("token_broker.upstream.httpx.post", return_value=mock_response(400, {"error": "invalid_grant"})):
        with pytest.raises(RefreshFailed):
            upstream.refresh("expired-rt")


def test_end_session_url(upstream):
    url = upstream.end_session_url("the-id-token", "http://localhost:8080/ids/auth/post-logout")
    assert url.startswith(DISCOVERY_DOC["end_session_endpoint"] + "?")
    assert "id_token_hint=the-id-token" in url
    assert "post_logout_redirect_uri=http%3A%2F%2Flocalhost%3A8080%2Fids%2Fauth%2Fpost-logout" in url
    assert f"client_id={CLIENT_ID}" in url


def test_authorization_url_uses_discovered_endpoint(upstream):
    from token_broker.transaction import new_transaction

    tx = new_transaction()
    url = upstream.authorization_url(tx, REDIRECT_URI)
    assert url.startswith(DISCOVERY_DOC["authorization_endpoint"] + "?")
    assert f"state={tx.state}" in url
    assert f"nonce={tx.nonce}" in url


def test_logout_token_valid(upstream, logout_token, mock_upstream_jwks):
    claims = upstream.verify_logout_token(logout_token())
    assert claims["sid"] == "abc123"
    assert claims["iss"] == UPSTREAM_ISSUER


@pytest.mark.parametrize(
    "kwargs, description",
    [
        ({"events": None}, "Not a backchannel logout token"),
        ({"events": {"http://example.com/other-event": {}}}, "Not a backchannel logout token"),
        ({"events": ["http://schemas.openid.net/event/backchannel-logout"]}, "Not a backchannel logout token"),
        ({"nonce": "n-1"}, "Logout token must not contain a nonce"),
        ({"sid": None}, "Logout token has no sid"),
        ({"aud": "other-client"}, "Invalid logout token"),
        ({"iss": "https://evil.example"}, "Invalid logout token"),
    ],
)
def test_logout_token_rejected(upstream, logout_token, mock_upstream_jwks, kwargs, description):
    with pytest.raises(BackchannelLogoutRejected) as exc:
        upstream.verify_logout_token(logout_token(**kwargs))
    assert exc.value.description == description
    assert exc.value.status_code == 400


def test_logout_token_without_iat_rejected(upstream, upstream_token, mock_upstream_jwks):
    token = upstream_token(drop=("iat",), sid="abc123", events={"http://schemas.openid.net/event/backchannel-logout": {}})
    with pytest.raises(BackchannelLogoutRejected):
        upstream.verify_logout_token(token)


def test_logout_token_wrong_key_rejected(upstream, upstream_token, mock_upstream_jwks):
    from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key

    forged = upstream_token(
        key=generate_private_key(65537, 2048),
        sid="abc123",
        events={"http://schemas.openid.net/event/backchannel-logout": {}},
    )
    with pytest.raises(BackchannelLogoutRejected) as exc:
        upstream.verify_logout_token(forged)
    assert exc.value.description == "Invalid logout token"


def test_logout_token_garbage_rejected(upstream, mock_upstream_jwks):
    with pytest.raises(BackchannelLogoutRejected):
        upstream.verify_logout_token("not-a-jwt")
