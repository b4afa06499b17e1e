"""
Application token validation via the broker's JWKS.
Checks signature, iss, aud and exp. Revocation is only known to the broker, so
short token TTLs bound how long a revoked token is still accepted here.
"""
import logging
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from resource_server.config import ADMIN_ROLE, AUDIENCE, ISSUER, JWKS_CACHE_SECONDS, JWKS_URL

logger = logging.getLogger(__name__)

# Single shared client; PyJWKClient caches the JWK set and keys
_jwks_client: PyJWKClient | None = None


def get_jwks_client() -> PyJWKClient:
    global _jwks_client
    if _jwks_client is None:
        _jwks_client = PyJWKClient(
            uri=JWKS_URL,
            cache_jwk_set=True,
            lifespan=JWKS_CACHE_SECONDS,
        )
    return _jwks_client


security = HTTPBearer(auto_error=False)


def _unauthorized(description: str, error: str = "invalid_token") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": error, "error_description": description},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_app_token(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str:
    """Bearer token from the Authorization header, else the broker's app_token cookie."""
    if credentials is not None and credentials.scheme.lower() == "bearer":
        return credentials.credentials
    # Broker cookies are "<jwt>.<hmac>"; the JWT is everything before the last dot
    cookie = request.cookies.get("app_token")
    if cookie and cookie.count(".") >= 3:
        return cookie.rsplit(".", 1)[0]
    raise _unauthorized("No token", error="invalid_request")


def verify_app_token(token: str) -> dict:
    """
    Verify JWT signature via JWKS and validate iss, aud, exp.
    Returns decoded claims. Raises HTTPException on invalid token.
    """
    try:
        signing_key = get_jwks_client().get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=AUDIENCE,
            issuer=ISSUER,
            options={"require": ["exp", "iss", "aud", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except jwt.InvalidAudienceError:
        raise _unauthorized("Invalid audience")
    except jwt.InvalidIssuerError:
        raise _unauthorized("Invalid issuer")
    except jwt.PyJWTError as e:
        logger.warning("JWT verification failed: %s", e)
        raise _unauthorized("Token verification failed")


def get_claims(token: Annotated[str, Depends(get_app_token)]) -> dict:
    """Dependency: valid application token -> decoded claims."""
    return verify_app_token(token)


def has_role(claims: dict, role: str) -> bool:
    roles = claims.get("roles")
    if isinstance(roles, str):
        return roles == role
    return isinstance(roles, list) and role in roles


def require_role(role: str):
    """Dependency factory: require the given role in the token's roles claim."""

    def _check(claims: Annotated[dict, Depends(get_claims)]) -> dict:
        if not has_role(claims, role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"error": "insufficient_role", "error_description": f"requires {role}"},
            )
        return claims

    return Depends(_check)


RequireToken = Depends(get_claims)
RequireAdmin = require_role(ADMIN_ROLE)
