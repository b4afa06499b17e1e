"""
Application tokens: RS256 JWTs minted by the broker from upstream identity claims.

Verification is two-stage. The token must be cryptographically valid (kid, signature,
iss, aud, exp) AND its jti must not be in the revocation index. A revoked token raises
RevokedToken, never InvalidToken, so the two cases stay apart in logs.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from token_broker.errors import InvalidToken, RevokedToken
from token_broker.keys import ALGORITHM, KeyProvider
from token_broker.session_store import RevocationIndex

logger = logging.getLogger(__name__)

# Upstream protocol claims that describe the upstream token, not the user
_UPSTREAM_PROTOCOL_CLAIMS = frozenset(
    {"iss", "aud", "exp", "iat", "nbf", "jti", "nonce", "at_hash", "c_hash", "azp", "auth_time", "typ", "sid", "session_state"}
)
_REQUIRED_CLAIMS = ["exp", "iat", "iss", "aud", "sub", "jti"]


@dataclass(frozen=True)
class MintedToken:
    token: str
    jti: str
    expires_at: datetime


def build_claims(upstream: dict[str, Any]) -> dict[str, Any]:
    """Map upstream ID token claims to the application token claim set."""
    claims = {k: v for k, v in upstream.items() if v and k not in _UPSTREAM_PROTOCOL_CLAIMS}
    realm_access = upstream.get("realm_access") or {}
    claims.update(
        {
            "sub": upstream.get("sub"),
            "email": upstream.get("email"),
            "name": upstream.get("name") or upstream.get("preferred_username"),
            "roles": list(realm_access.get("roles") or []),
            "kc_iss": upstream.get("iss"),
            "kc_sid": upstream.get("sid"),
        }
    )
    return claims


class TokenService:
    def __init__(
        self,
        keys: KeyProvider,
        index: RevocationIndex,
        *,
        issuer: str,
        audience: str,
        ttl_minutes: int = 30,
    ):
        self.keys = keys
        self.index = index
        self.issuer = issuer
        self.audience = audience
        self.ttl = timedelta(minutes=ttl_minutes)

    def mint(self, claims: dict[str, Any], now: datetime | None = None) -> MintedToken:
        """Sign a new application token and link its jti to the upstream session, if any."""
        if not claims.get("sub"):
            raise ValueError("claims must carry a subject")
        private_key, kid = self.keys.signing_key()
        now = now or datetime.now(timezone.utc)
        expires_at = now + self.ttl
        jti = str(uuid.uuid4())
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "sub": claims["sub"],
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(payload, private_key, algorithm=ALGORITHM, headers={"kid": kid, "typ": "JWT"})

        sid = claims.get("kc_sid")
        if sid:
            self.index.link(sid, jti, expires_at)
        return MintedToken(token=token, jti=jti, expires_at=expires_at)

    def verify(self, token: str) -> dict[str, Any]:
        """Return the claims of a valid, unrevoked token. Raises InvalidToken or RevokedToken."""
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            raise InvalidToken("Malformed token") from e
        kid = header.get("kid")
        public_key = self.keys.public_key_for_kid(kid) if kid else None
        if public_key is None:
            raise InvalidToken("Unknown signing key")
        try:
            payload = jwt.decode(
                token,
                public_key,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                audience=self.audience,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as e:
            raise InvalidToken("Token expired") from e
        except jwt.InvalidAudienceError as e:
            raise InvalidToken("Invalid audience") from e
        except jwt.InvalidIssuerError as e:
            raise InvalidToken("Invalid issuer") from e
        except jwt.InvalidTokenError as e:
            logger.debug("Application token verification failed: %s", e)
            raise InvalidToken("Token verification failed") from e

        if self.index.is_revoked(payload["jti"]):
            raise RevokedToken("Token revoked: upstream session ended")
        return payload

    @staticmethod
    def decode_unverified(token: str) -> dict[str, Any]:
        """Claims without any signature or expiry check. Inspection only, never authorization."""
        try:
            return jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError as e:
            raise InvalidToken("Malformed token") from e
