"""
Token broker configuration. All values come from the environment.
Secrets (client secret, session keys) live here but are never logged.
"""
import os


def _bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Public base URL of this broker (scheme + host, no path)
HOST = os.environ.get("HOST", "http://localhost:8080").rstrip("/")

# Path prefix all broker routes are mounted under
PREFIX = os.environ.get("PREFIX", "/ids").rstrip("/")

# Issuer and audience of the application tokens we mint
ISSUER = os.environ.get("ISSUER_BASE", f"{HOST}{PREFIX}").rstrip("/")
AUDIENCE = os.environ.get("AUDIENCE", "cpds-api")

# Scopes requested from the upstream provider
SCOPES = os.environ.get("SCOPES", "openid profile email").split()

# HMAC keys for cookie signing; first key signs, every key verifies (rotation)
SESSION_KEYS = [k.strip() for k in os.environ.get("SESSION_KEYS", "k1,k2").split(",") if k.strip()]

# PKCE method is fixed
CODE_CHALLENGE_METHOD = "S256"

# Application token lifetime (minutes)
APP_TOKEN_TTL_MIN = int(os.environ.get("APP_TOKEN_TTL_MIN", "30"))

# Lifetime of the login transaction cookies (minutes), independent of the token TTL
TRANSACTION_TTL_MIN = int(os.environ.get("TRANSACTION_TTL_MIN", "10"))

# Browser application the broker hands the user back to
APP_PATH = os.environ.get("APP_PATH", "/cpds/")

# Secure cookies by default whenever we are served over https
COOKIE_SECURE = _bool("COOKIE_SECURE", HOST.startswith("https://"))

# Routes, relative to PREFIX
LOGIN_PATH = "/auth/login"
REDIRECT_PATH = "/auth/callback"
REFRESH_PATH = "/auth/refresh"
LOGOUT_PATH = "/auth/logout"
POST_LOGOUT_PATH = "/auth/post-logout"
BACKCHANNEL_LOGOUT_PATH = "/auth/backchannel-logout"
ME_PATH = "/me"
JWKS_PATH = "/.well-known/jwks.json"

# Upstream OpenID Connect Provider (Keycloak realm)
KEYCLOAK_ISSUER = os.environ.get("KEYCLOAK_ISSUER", "http://localhost:8081/auth/realms/agency-realm").rstrip("/")
KEYCLOAK_DISCOVERY_URL = os.environ.get(
    "KEYCLOAK_DISCOVERY_URL", f"{KEYCLOAK_ISSUER}/.well-known/openid-configuration"
)
KEYCLOAK_CLIENT_ID = os.environ.get("KEYCLOAK_CLIENT_ID", "cpds-spa")
KEYCLOAK_CLIENT_SECRET = os.environ.get("KEYCLOAK_CLIENT_SECRET", "")

# Signature algorithms accepted on upstream ID and logout tokens
UPSTREAM_ALGORITHMS = os.environ.get("UPSTREAM_ALGORITHMS", "RS256").split(",")

# Discovery retry backoff (seconds): starts at INITIAL, doubles up to MAX, never gives up
DISCOVERY_RETRY_INITIAL_SECONDS = float(os.environ.get("DISCOVERY_RETRY_INITIAL_SECONDS", "1"))
DISCOVERY_RETRY_MAX_SECONDS = float(os.environ.get("DISCOVERY_RETRY_MAX_SECONDS", "30"))

# Signing key. Unset path = ephemeral dev key generated at startup (warns).
SIGNING_KEY_PATH = os.environ.get("APP_SIGNING_KEY_PATH", "").strip() or None
SIGNING_KEY_PREVIOUS_PATH = os.environ.get("APP_SIGNING_KEY_PREVIOUS_PATH", "").strip() or None
SIGNING_KEY_ID = os.environ.get("APP_SIGNING_KEY_ID", "app-rs256-1")

# Revocation index backend: "memory" (single process) or "sql" (shared across instances)
REVOCATION_BACKEND = os.environ.get("REVOCATION_BACKEND", "memory").strip().lower()
REVOCATION_DATABASE_URL = os.environ.get("REVOCATION_DATABASE_URL", "sqlite:///./token_broker.db")
REVOCATION_SWEEP_SECONDS = int(os.environ.get("REVOCATION_SWEEP_SECONDS", "300"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
PORT = int(os.environ.get("PORT", "7000"))
