"""
Login transaction: PKCE (RFC 7636, S256 only) verifier/challenge plus state and nonce.
One transaction per login attempt; carried in cookies between /auth/login and /auth/callback.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from urllib.parse import urlencode


@dataclass(frozen=True)
class Transaction:
    verifier: str
    challenge: str
    state: str
    nonce: str
    redirect: str | None = None


def generate_state() -> str:
    """Opaque value for CSRF protection; echoed back by the provider on callback."""
    return secrets.token_urlsafe(32)


def generate_nonce() -> str:
    """Random value bound into the upstream ID token."""
    return secrets.token_urlsafe(32)


def code_challenge_for(code_verifier: str) -> str:
    """S256: base64url(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce() -> tuple[str, str]:
    """Return (verifier, challenge). The verifier is 43 URL-safe chars from 32 random bytes."""
    code_verifier = secrets.token_urlsafe(32)
    return code_verifier, code_challenge_for(code_verifier)


def new_transaction(redirect: str | None = None) -> Transaction:
    verifier, challenge = generate_pkce()
    return Transaction(
        verifier=verifier,
        challenge=challenge,
        state=generate_state(),
        nonce=generate_nonce(),
        redirect=redirect or None,
    )


def build_authorization_url(
    *,
    authorization_endpoint: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    transaction: Transaction,
) -> str:
    """Build the upstream authorize URL for a transaction."""
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": transaction.state,
        "nonce": transaction.nonce,
        "code_challenge": transaction.challenge,
        "code_challenge_method": "S256",
    }
    sep = "&" if "?" in authorization_endpoint else "?"
    return f"{authorization_endpoint}{sep}{urlencode(params)}"
