"""
Token Broker. Runs the Authorization Code + PKCE flow against the upstream provider,
re-mints a local application token, and revokes those tokens when the upstream
session ends (back-channel logout).

Routes (under PREFIX): /auth/login, /auth/callback, /auth/refresh, /auth/logout,
/auth/post-logout, /auth/backchannel-logout, /me, /.well-known/jwks.json.
Run with: python -m token_broker.main
"""
import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated

from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from token_broker import config
from token_broker.audit import (
    EVENT_BACKCHANNEL_LOGOUT,
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    EVENT_LOGIN_STARTED,
    EVENT_LOGOUT,
    EVENT_TOKEN_REFRESHED,
    EVENT_TOKEN_REJECTED,
    EVENT_TOKEN_REVOKED,
    OUTCOME_FAIL,
    get_client_ip,
    log_audit,
)
from token_broker.cookies import AUTH_COOKIES, SESSION_COOKIES, TRANSACTION_COOKIES, CookieJar, base64_encode
from token_broker.discovery import DiscoveryResolver
from token_broker.errors import (
    BackchannelLogoutRejected,
    BrokerError,
    InvalidToken,
    ProviderNotReady,
    RefreshFailed,
    RevokedToken,
    StateMismatch,
)
from token_broker.keys import KeyProvider, build_key_provider
from token_broker.session_store import RevocationIndex, build_revocation_index
from token_broker.tokens import TokenService, build_claims
from token_broker.transaction import new_transaction
from token_broker.upstream import UpstreamClient

logger = logging.getLogger(__name__)


@dataclass
class Broker:
    """Everything the routes share. Built once at startup."""
    discovery: DiscoveryResolver
    upstream: UpstreamClient
    keys: KeyProvider
    index: RevocationIndex
    tokens: TokenService
    cookies: CookieJar


def build_broker() -> Broker:
    """Wire components from config. The key provider and index backend are chosen here."""
    discovery = DiscoveryResolver(
        config.KEYCLOAK_DISCOVERY_URL,
        config.KEYCLOAK_CLIENT_ID,
        config.KEYCLOAK_CLIENT_SECRET,
        retry_initial=config.DISCOVERY_RETRY_INITIAL_SECONDS,
        retry_max=config.DISCOVERY_RETRY_MAX_SECONDS,
    )
    keys = build_key_provider(config.SIGNING_KEY_PATH, config.SIGNING_KEY_ID, config.SIGNING_KEY_PREVIOUS_PATH)
    index = build_revocation_index(config.REVOCATION_BACKEND, config.REVOCATION_DATABASE_URL)
    return Broker(
        discovery=discovery,
        upstream=UpstreamClient(discovery, scope=" ".join(config.SCOPES), algorithms=config.UPSTREAM_ALGORITHMS),
        keys=keys,
        index=index,
        tokens=TokenService(
            keys, index, issuer=config.ISSUER, audience=config.AUDIENCE, ttl_minutes=config.APP_TOKEN_TTL_MIN
        ),
        cookies=CookieJar(config.SESSION_KEYS, secure=config.COOKIE_SECURE),
    )


def get_broker(request: Request) -> Broker:
    return request.app.state.broker


def require_provider(broker: Annotated[Broker, Depends(get_broker)]) -> Broker:
    """Reject traffic that needs upstream metadata until discovery has succeeded."""
    if not broker.discovery.ready:
        raise ProviderNotReady("Upstream provider metadata not yet available")
    return broker


BrokerDep = Annotated[Broker, Depends(get_broker)]
ReadyBrokerDep = Annotated[Broker, Depends(require_provider)]

security = HTTPBearer(auto_error=False)


def _redirect_uri() -> str:
    return f"{config.HOST}{config.PREFIX}{config.REDIRECT_PATH}"


def _post_logout_uri() -> str:
    return f"{config.HOST}{config.PREFIX}{config.POST_LOGOUT_PATH}"


router = APIRouter()


@router.get(config.ME_PATH)
def me(
    request: Request,
    broker: BrokerDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
):
    """Decoded claims of the caller's application token (Bearer header, else app_token cookie)."""
    token = credentials.credentials if credentials and credentials.scheme.lower() == "bearer" else None
    token = token or broker.cookies.get(request, "app_token")
    if not token:
        raise InvalidToken("No token")
    try:
        return broker.tokens.verify(token)
    except RevokedToken:
        unverified = broker.tokens.decode_unverified(token)
        log_audit(
            EVENT_TOKEN_REJECTED,
            outcome=OUTCOME_FAIL,
            sub=unverified.get("sub"),
            jti=unverified.get("jti"),
            ip=get_client_ip(request),
            reason="revoked",
        )
        raise
    except InvalidToken as e:
        log_audit(EVENT_TOKEN_REJECTED, outcome=OUTCOME_FAIL, ip=get_client_ip(request), reason=e.description)
        raise


@router.get(config.JWKS_PATH)
def jwks_json(broker: BrokerDep):
    """JSON Web Key Set for verifying application tokens."""
    return broker.keys.public_key_set()


@router.get(config.LOGIN_PATH)
def login(request: Request, broker: ReadyBrokerDep, redirect: str | None = None):
    """Start a login: new PKCE transaction in cookies, redirect to the upstream authorize endpoint."""
    tx = new_transaction(redirect)
    url = broker.upstream.authorization_url(tx, _redirect_uri())
    logger.debug("Start OIDC login redirect_uri=%s", _redirect_uri())

    response = RedirectResponse(url=url, status_code=302)
    ttl = config.TRANSACTION_TTL_MIN
    broker.cookies.set(response, "oidc_state", tx.state, ttl)
    broker.cookies.set(response, "oidc_nonce", tx.nonce, ttl)
    broker.cookies.set(response, "oidc_verifier", tx.verifier, ttl)
    broker.cookies.set(response, "oidc_challenge", tx.challenge, ttl)
    if tx.redirect:
        broker.cookies.set(response, "oidc_redirect", base64_encode(tx.redirect), ttl)
    log_audit(EVENT_LOGIN_STARTED, ip=get_client_ip(request))
    return response


@router.get(config.REDIRECT_PATH)
def callback(
    request: Request,
    broker: ReadyBrokerDep,
    code: str | None = None,
    state: str | None = None,
    session_state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
):
    """
    Upstream redirects here. Validate state against the transaction cookie, exchange the
    code with the stored verifier, mint the application token, hand the user back to the app.
    """
    ip = get_client_ip(request)
    if error:
        log_audit(EVENT_LOGIN_FAIL, outcome=OUTCOME_FAIL, ip=ip, reason=error)
        raise HTTPException(
            status_code=400,
            detail={"error": error, "error_description": error_description or "Login failed at provider"},
        )
    if not code or not state:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_request", "error_description": "code and state are required"},
        )

    cookies = broker.cookies
    expected_state = cookies.get(request, "oidc_state")
    if not expected_state or not hmac.compare_digest(expected_state, state):
        log_audit(EVENT_LOGIN_FAIL, outcome=OUTCOME_FAIL, ip=ip, reason="state_mismatch")
        raise StateMismatch("State mismatch")
    verifier = cookies.get(request, "oidc_verifier")
    nonce = cookies.get(request, "oidc_nonce")
    if not verifier or not nonce:
        log_audit(EVENT_LOGIN_FAIL, outcome=OUTCOME_FAIL, ip=ip, reason="transaction_incomplete")
        raise StateMismatch("Login transaction incomplete or expired")
    logger.debug("Callback for session_state=%s", session_state)

    try:
        upstream_tokens = broker.upstream.exchange_code(code, verifier, _redirect_uri(), nonce)
        minted = broker.tokens.mint(build_claims(upstream_tokens.claims))
    except BrokerError as e:
        log_audit(EVENT_LOGIN_FAIL, outcome=OUTCOME_FAIL, ip=ip, reason=e.error)
        raise
    except Exception:
        logger.exception("Unexpected error during callback")
        return JSONResponse(status_code=500, content={"detail": {"error": "server_error"}})

    sid = upstream_tokens.claims.get("sid")
    log_audit(EVENT_LOGIN_OK, sub=upstream_tokens.claims.get("sub"), sid=sid, jti=minted.jti, ip=ip)

    target = f"{config.HOST}{config.APP_PATH}#authenticated"
    stored_redirect = cookies.get(request, "oidc_redirect")
    if stored_redirect:
        target = f"{target}?redirect={stored_redirect}"
    response = RedirectResponse(url=target, status_code=302)
    cookies.clear(response, TRANSACTION_COOKIES)
    cookies.set(response, "app_token", minted.token, config.APP_TOKEN_TTL_MIN)
    if upstream_tokens.refresh_token:
        cookies.set(response, "kc_rt", upstream_tokens.refresh_token)
    cookies.set(response, "kc_id", upstream_tokens.id_token)
    if sid:
        cookies.set(response, "kc_sid", sid)
    return response


@router.post(config.REFRESH_PATH)
def refresh(request: Request, broker: ReadyBrokerDep):
    """Re-mint the application token from the stored upstream refresh token."""
    cookies = broker.cookies
    refresh_token = cookies.get(request, "kc_rt")
    if not refresh_token:
        raise RefreshFailed("No upstream refresh token")
    try:
        refreshed = broker.upstream.refresh(refresh_token)
    except RefreshFailed as e:
        log_audit(EVENT_TOKEN_REFRESHED, outcome=OUTCOME_FAIL, ip=get_client_ip(request))
        response = JSONResponse(status_code=e.status_code, content={"detail": e.to_detail()})
        cookies.clear(response, SESSION_COOKIES)
        return response

    minted = broker.tokens.mint(build_claims(refreshed.claims))
    rotated = refreshed.refresh_token or refresh_token
    response = JSONResponse({"access_token": minted.token, "refresh_token": rotated})
    cookies.set(response, "app_token", minted.token, config.APP_TOKEN_TTL_MIN)
    if rotated != refresh_token:
        cookies.set(response, "kc_rt", rotated)
    cookies.set(response, "kc_id", refreshed.id_token)
    log_audit(
        EVENT_TOKEN_REFRESHED,
        sub=refreshed.claims.get("sub"),
        sid=refreshed.claims.get("sid"),
        jti=minted.jti,
        ip=get_client_ip(request),
    )
    return response


@router.get(config.LOGOUT_PATH)
def logout(request: Request, broker: BrokerDep):
    """Front-channel logout: through the upstream end-session endpoint when we hold an ID token."""
    post_logout = _post_logout_uri()
    id_token_hint = broker.cookies.get(request, "kc_id")
    end_session = broker.upstream.end_session_url(id_token_hint, post_logout) if id_token_hint else None
    log_audit(EVENT_LOGOUT, sid=broker.cookies.get(request, "kc_sid"), ip=get_client_ip(request))
    return RedirectResponse(url=end_session or post_logout, status_code=302)


@router.get(config.POST_LOGOUT_PATH)
def post_logout(broker: BrokerDep):
    """Back from the provider: drop every auth cookie and return to the app's logged-out view."""
    response = RedirectResponse(url=f"{config.APP_PATH}?logged_out=1", status_code=302)
    broker.cookies.clear(response, AUTH_COOKIES)
    return response


@router.post(config.BACKCHANNEL_LOGOUT_PATH)
def backchannel_logout(
    request: Request,
    broker: ReadyBrokerDep,
    logout_token: str | None = Form(None),
):
    """
    Provider → broker notification that a session ended. Revokes every application token
    minted under the token's sid. Rejections (400) revoke nothing.
    """
    ip = get_client_ip(request)
    try:
        if not logout_token:
            raise BackchannelLogoutRejected("No logout_token")
        claims = broker.upstream.verify_logout_token(logout_token)
    except BackchannelLogoutRejected as e:
        log_audit(EVENT_BACKCHANNEL_LOGOUT, outcome=OUTCOME_FAIL, ip=ip, reason=e.description)
        raise

    sid = claims["sid"]
    revoked = broker.index.revoke_by_sid(sid)
    log_audit(EVENT_BACKCHANNEL_LOGOUT, sub=claims.get("sub"), sid=sid, ip=ip)
    if revoked:
        log_audit(EVENT_TOKEN_REVOKED, sid=sid, reason=f"{revoked} token(s)")
    return Response(status_code=200, headers={"Cache-Control": "no-store"})


async def _sweep_periodically(index: RevocationIndex, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(index.sweep)
        except Exception:
            logger.exception("Revocation index sweep failed")
            continue
        if removed:
            logger.info("Swept %d expired revocation entries", removed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start discovery in the background and the revocation sweeper; stop both on shutdown."""
    broker: Broker = app.state.broker
    broker.discovery.start()
    sweeper = asyncio.create_task(_sweep_periodically(broker.index, config.REVOCATION_SWEEP_SECONDS))
    try:
        yield
    finally:
        sweeper.cancel()
        broker.discovery.stop()


async def broker_error_handler(request: Request, exc: BrokerError) -> JSONResponse:
    headers = {"Retry-After": "1"} if isinstance(exc, ProviderNotReady) else None
    if isinstance(exc, InvalidToken | RevokedToken):
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()}, headers=headers)


def create_app(broker: Broker | None = None) -> FastAPI:
    app = FastAPI(title="Token Broker", version="1.0.0", lifespan=lifespan)
    app.state.broker = broker or build_broker()
    app.add_exception_handler(BrokerError, broker_error_handler)
    app.include_router(router, prefix=config.PREFIX, tags=["broker"])

    @app.get("/health")
    def health():
        """Liveness plus whether upstream discovery has completed."""
        return {"status": "ok", "service": "token_broker", "ready": app.state.broker.discovery.ready}

    @app.get("/ready")
    def ready():
        """Readiness: 200 once upstream metadata is known, 503 before."""
        if not app.state.broker.discovery.ready:
            return JSONResponse(status_code=503, content={"status": "starting"}, headers={"Retry-After": "1"})
        return {"status": "ready"}

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        "token_broker.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=config.PORT,
    )
