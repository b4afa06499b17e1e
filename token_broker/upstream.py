"""
Calls to the upstream OpenID Connect Provider: authorization code and refresh token
grants (client_secret_post), ID token validation, end-session URL, and back-channel
logout token verification. Upstream keys come from its jwks_uri via PyJWKClient.
"""
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx
import jwt
from jwt import PyJWKClient
from jwt.exceptions import PyJWKClientConnectionError

from token_broker.discovery import DiscoveryResolver
from token_broker.errors import BackchannelLogoutRejected, RefreshFailed, TokenExchangeFailed
from token_broker.transaction import Transaction, build_authorization_url

logger = logging.getLogger(__name__)

BACKCHANNEL_LOGOUT_EVENT = "http://schemas.openid.net/event/backchannel-logout"

_TOKEN_TIMEOUT = 10.0
_LEEWAY_SECONDS = 10


class UpstreamTokenError(Exception):
    """Token endpoint call failed; `upstream_unavailable` separates outages from rejections."""

    def __init__(self, message: str, *, upstream_unavailable: bool):
        super().__init__(message)
        self.upstream_unavailable = upstream_unavailable


@dataclass
class UpstreamTokens:
    access_token: str
    id_token: str
    refresh_token: str | None
    claims: dict[str, Any]


class UpstreamClient:
    def __init__(
        self,
        resolver: DiscoveryResolver,
        *,
        scope: str = "openid profile email",
        algorithms: list[str] | None = None,
    ):
        self.resolver = resolver
        self.scope = scope
        self.algorithms = algorithms or ["RS256"]
        self._jwks_client: PyJWKClient | None = None

    @property
    def client_id(self) -> str:
        return self.resolver.client_id

    def get_jwks_client(self) -> PyJWKClient:
        if self._jwks_client is None:
            self._jwks_client = PyJWKClient(uri=self.resolver.metadata.jwks_uri, cache_jwk_set=True, lifespan=300)
        return self._jwks_client

    def authorization_url(self, transaction: Transaction, redirect_uri: str) -> str:
        return build_authorization_url(
            authorization_endpoint=self.resolver.metadata.authorization_endpoint,
            client_id=self.client_id,
            redirect_uri=redirect_uri,
            scope=self.scope,
            transaction=transaction,
        )

    def end_session_url(self, id_token_hint: str, post_logout_redirect_uri: str) -> str | None:
        """RP-initiated logout URL, or None when the provider is unknown or has no end-session endpoint."""
        if not self.resolver.ready:
            return None
        endpoint = self.resolver.metadata.end_session_endpoint
        if not endpoint:
            return None
        params = {
            "id_token_hint": id_token_hint,
            "post_logout_redirect_uri": post_logout_redirect_uri,
            "client_id": self.client_id,
        }
        sep = "&" if "?" in endpoint else "?"
        return f"{endpoint}{sep}{urlencode(params)}"

    def _token_request(self, data: dict[str, str]) -> dict[str, Any]:
        data = {**data, "client_id": self.client_id}
        if self.resolver.client_secret:
            data["client_secret"] = self.resolver.client_secret
        try:
            r = httpx.post(
                self.resolver.metadata.token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
                timeout=_TOKEN_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise UpstreamTokenError(f"token endpoint unreachable: {e}", upstream_unavailable=True) from e
        if r.status_code != 200:
            try:
                err = r.json() if r.headers.get("content-type", "").startswith("application/json") else {}
            except ValueError:
                err = {}
            reason = err.get("error_description") or err.get("error") or f"HTTP {r.status_code}"
            raise UpstreamTokenError(f"token endpoint rejected {data['grant_type']}: {reason}", upstream_unavailable=r.status_code >= 500)
        try:
            body = r.json()
        except ValueError as e:
            raise UpstreamTokenError("token endpoint returned non-JSON body", upstream_unavailable=True) from e
        if not body.get("id_token"):
            raise UpstreamTokenError("token endpoint response has no id_token", upstream_unavailable=True)
        return body

    def validate_id_token(self, id_token: str, nonce: str | None = None) -> dict[str, Any]:
        """Verify signature (upstream JWKS), iss, aud == client_id, exp; and nonce when given."""
        signing_key = self.get_jwks_client().get_signing_key_from_jwt(id_token)
        claims = jwt.decode(
            id_token,
            signing_key.key,
            algorithms=self.algorithms,
            issuer=self.resolver.metadata.issuer,
            audience=self.client_id,
            leeway=_LEEWAY_SECONDS,
            options={"require": ["exp", "iat", "iss", "aud", "sub"]},
        )
        if nonce is not None and claims.get("nonce") != nonce:
            raise jwt.InvalidTokenError("nonce mismatch")
        return claims

    def exchange_code(self, code: str, code_verifier: str, redirect_uri: str, nonce: str) -> UpstreamTokens:
        """Authorization code grant. Raises TokenExchangeFailed (400 rejected, 502 upstream fault)."""
        try:
            body = self._token_request(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "code_verifier": code_verifier,
                }
            )
        except UpstreamTokenError as e:
            logger.warning("Code exchange failed: %s", e)
            if e.upstream_unavailable:
                raise TokenExchangeFailed("Upstream provider unavailable", status_code=502) from e
            raise TokenExchangeFailed("Authorization code was rejected by the provider") from e

        try:
            claims = self.validate_id_token(body["id_token"], nonce=nonce)
        except PyJWKClientConnectionError as e:
            logger.warning("Upstream JWKS unreachable: %s", e)
            raise TokenExchangeFailed("Upstream provider unavailable", status_code=502) from e
        except jwt.PyJWTError as e:
            logger.warning("Upstream ID token rejected: %s", e)
            raise TokenExchangeFailed("Upstream ID token failed validation") from e
        return UpstreamTokens(
            access_token=body.get("access_token", ""),
            id_token=body["id_token"],
            refresh_token=body.get("refresh_token"),
            claims=claims,
        )

    def refresh(self, refresh_token: str) -> UpstreamTokens:
        """Refresh token grant. Any failure is RefreshFailed; the caller must re-authenticate."""
        try:
            body = self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})
            claims = self.validate_id_token(body["id_token"])
        except (UpstreamTokenError, jwt.PyJWTError) as e:
            logger.info("Refresh failed: %s", e)
            raise RefreshFailed("Refresh failed") from e
        return UpstreamTokens(
            access_token=body.get("access_token", ""),
            id_token=body["id_token"],
            refresh_token=body.get("refresh_token"),
            claims=claims,
        )

    def verify_logout_token(self, logout_token: str) -> dict[str, Any]:
        """
        OIDC Back-Channel Logout 1.0 checks: signature (upstream JWKS), iss, aud == client_id,
        iat, the back-channel logout event, no nonce, and a sid (we revoke by session only).
        """
        try:
            signing_key = self.get_jwks_client().get_signing_key_from_jwt(logout_token)
            claims = jwt.decode(
                logout_token,
                signing_key.key,
                algorithms=self.algorithms,
                issuer=self.resolver.metadata.issuer,
                audience=self.client_id,
                leeway=_LEEWAY_SECONDS,
                options={"require": ["iat", "iss", "aud"]},
            )
        except jwt.PyJWTError as e:
            logger.info("Logout token verification failed: %s", e)
            raise BackchannelLogoutRejected("Invalid logout token") from e

        events = claims.get("events")
        if not isinstance(events, dict) or BACKCHANNEL_LOGOUT_EVENT not in events:
            raise BackchannelLogoutRejected("Not a backchannel logout token")
        if "nonce" in claims:
            raise BackchannelLogoutRejected("Logout token must not contain a nonce")
        if not claims.get("sid"):
            raise BackchannelLogoutRejected("Logout token has no sid")
        return claims
