"""
Broker error taxonomy. Each error carries the HTTP status and OAuth-style error code
it is rendered with; main.py turns them into {"detail": {"error", "error_description"}}.
"""


class BrokerError(Exception):
    status_code = 500
    error = "server_error"

    def __init__(self, description: str = "", *, status_code: int | None = None):
        super().__init__(description or self.error)
        self.description = description
        if status_code is not None:
            self.status_code = status_code

    def to_detail(self) -> dict:
        detail = {"error": self.error}
        if self.description:
            detail["error_description"] = self.description
        return detail


class DiscoveryUnavailable(BrokerError):
    """Upstream metadata could not be fetched or was malformed. Retried internally only."""
    status_code = 503
    error = "discovery_unavailable"


class ProviderNotReady(BrokerError):
    """Request arrived before discovery completed."""
    status_code = 503
    error = "provider_not_ready"


class StateMismatch(BrokerError):
    status_code = 400
    error = "state_mismatch"


class TokenExchangeFailed(BrokerError):
    """Upstream rejected the code/verifier (400) or could not be reached (502)."""
    status_code = 400
    error = "token_exchange_failed"


class InvalidToken(BrokerError):
    status_code = 401
    error = "invalid_token"


class RevokedToken(BrokerError):
    """Signature and expiry are fine but the upstream session has ended."""
    status_code = 401
    error = "revoked_token"


class RefreshFailed(BrokerError):
    status_code = 401
    error = "refresh_failed"


class BackchannelLogoutRejected(BrokerError):
    status_code = 400
    error = "invalid_logout_token"
