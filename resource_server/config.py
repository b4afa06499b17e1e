"""
Downstream API configuration. It trusts application tokens minted by the token broker.
Issuer, audience and JWKS URL are public identifiers, not secrets.
"""
import os

# Token broker issuer (ISSUER_BASE on the broker side)
ISSUER = os.environ.get("ISSUER", "http://localhost:8080/ids").rstrip("/")

# This API's audience; broker tokens must carry it in aud
AUDIENCE = os.environ.get("AUDIENCE", "cpds-api")

# Broker JWKS; cached by PyJWKClient
JWKS_URL = os.environ.get("JWKS_URL", f"{ISSUER}/.well-known/jwks.json")
JWKS_CACHE_SECONDS = int(os.environ.get("JWKS_CACHE_SECONDS", "300"))

# Role (from the broker's "roles" claim) required by /admin
ADMIN_ROLE = os.environ.get("ADMIN_ROLE", "cpds-admin")
