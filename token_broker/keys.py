"""
RSA signing key for application tokens.
Two providers, chosen at startup: an ephemeral key generated in-process (development)
or a PEM key loaded from disk (production). An optional previous key stays in the
JWKS so tokens signed before a rotation still verify.
"""
import base64
import logging
import threading
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, generate_private_key

logger = logging.getLogger(__name__)

_KEY_BITS = 2048
ALGORITHM = "RS256"
DEFAULT_KID = "app-rs256-1"


def generate_key() -> RSAPrivateKey:
    return generate_private_key(65537, _KEY_BITS)


def serialize_private(key: RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_private_key(path: str) -> RSAPrivateKey:
    """Load an RSA private key from a PEM file. Raises on missing file or non-RSA key."""
    pem = Path(path).read_bytes()
    key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(key, RSAPrivateKey):
        raise ValueError(f"{path} does not contain an RSA private key")
    return key


def _b64url_uint(value: int) -> str:
    return base64.urlsafe_b64encode(value.to_bytes((value.bit_length() + 7) // 8, "big")).rstrip(b"=").decode("ascii")


def public_key_to_jwk(public_key, kid: str) -> dict:
    """Export an RSA public key as a JWK with the given kid. Public parameters only."""
    numbers = public_key.public_numbers()
    return {
        "kty": "RSA",
        "kid": kid,
        "alg": ALGORITHM,
        "use": "sig",
        "n": _b64url_uint(numbers.n),
        "e": _b64url_uint(numbers.e),
    }


class KeyProvider:
    """Holds the current signing key (and optionally the previous one) behind a lock."""

    def __init__(self, key: RSAPrivateKey, kid: str = DEFAULT_KID):
        self._lock = threading.Lock()
        self._current: tuple[RSAPrivateKey, str] = (key, kid)
        self._previous: tuple[RSAPrivateKey, str] | None = None

    def signing_key(self) -> tuple[RSAPrivateKey, str]:
        """Return (private_key, kid) for signing new tokens."""
        with self._lock:
            return self._current

    def public_key_for_kid(self, kid: str):
        """Public key for a token's kid header, or None if the kid is unknown."""
        with self._lock:
            for entry in (self._current, self._previous):
                if entry is not None and entry[1] == kid:
                    return entry[0].public_key()
        return None

    def public_key_set(self) -> dict:
        with self._lock:
            entries = [self._current] + ([self._previous] if self._previous else [])
        return {"keys": [public_key_to_jwk(key.public_key(), kid) for key, kid in entries]}

    def set_previous(self, key: RSAPrivateKey, kid: str) -> None:
        if kid == self._current[1]:
            raise ValueError("previous key must use a different kid than the current key")
        with self._lock:
            self._previous = (key, kid)

    def rotate(self, new_key: RSAPrivateKey, kid: str) -> None:
        """Make new_key current; the old current key is kept for verification only."""
        with self._lock:
            if kid == self._current[1]:
                raise ValueError("rotated key must use a new kid")
            self._previous = self._current
            self._current = (new_key, kid)
        logger.info("Rotated signing key; current kid=%s previous kid=%s", kid, self._previous[1])


class EphemeralKeyProvider(KeyProvider):
    """Fresh key per process. Every restart invalidates all issued tokens and JWKS caches."""

    def __init__(self, kid: str = DEFAULT_KID):
        super().__init__(generate_key(), kid)
        logger.warning(
            "Using ephemeral RSA signing key (kid=%s). Set APP_SIGNING_KEY_PATH for production; "
            "tokens issued by this process will not verify after a restart.",
            kid,
        )


class PemKeyProvider(KeyProvider):
    """Key loaded from a PEM file; same key and kid across restarts."""

    def __init__(self, path: str, kid: str = DEFAULT_KID):
        super().__init__(load_private_key(path), kid)
        self.path = path
        logger.info("Loaded signing key (kid=%s) from %s", kid, path)


def build_key_provider(
    path: str | None,
    kid: str = DEFAULT_KID,
    previous_path: str | None = None,
) -> KeyProvider:
    """Pick the provider from configuration. A configured key that fails to load is fatal."""
    provider: KeyProvider = PemKeyProvider(path, kid) if path else EphemeralKeyProvider(kid)
    if previous_path:
        provider.set_previous(load_private_key(previous_path), f"{kid}-prev")
        logger.info("Loaded previous signing key (kid=%s-prev) for rotation", kid)
    return provider
