"""
Audit logging. Security-relevant events only; no tokens, verifiers, or secrets.
One line per event on the "token_broker.audit" logger so it can be routed separately.
"""
import logging

from fastapi import Request

audit_logger = logging.getLogger("token_broker.audit")

EVENT_LOGIN_STARTED = "login_started"
EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_TOKEN_REJECTED = "token_rejected"
EVENT_TOKEN_REVOKED = "token_revoked"
EVENT_LOGOUT = "logout"
EVENT_BACKCHANNEL_LOGOUT = "backchannel_logout"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    event_type: str,
    *,
    outcome: str = OUTCOME_SUCCESS,
    sub: str | None = None,
    sid: str | None = None,
    jti: str | None = None,
    ip: str | None = None,
    reason: str | None = None,
) -> None:
    """Emit one audit record. Never pass tokens or secrets here."""
    fields = {"event": event_type, "outcome": outcome, "sub": sub, "sid": sid, "jti": jti, "ip": ip, "reason": reason}
    line = " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
    level = logging.INFO if outcome == OUTCOME_SUCCESS else logging.WARNING
    audit_logger.log(level, line)
