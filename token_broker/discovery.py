"""
Upstream provider discovery (/.well-known/openid-configuration).

The broker is useless without upstream metadata, so resolve() retries forever with
exponential backoff instead of failing and letting a supervisor restart-loop us.
Until it succeeds, `ready` is False and `metadata` raises ProviderNotReady.
"""
import logging
import threading
from dataclasses import dataclass

import httpx

from token_broker.errors import DiscoveryUnavailable, ProviderNotReady

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")


@dataclass(frozen=True)
class ProviderMetadata:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    end_session_endpoint: str | None = None
    userinfo_endpoint: str | None = None

    @classmethod
    def from_document(cls, doc: dict) -> "ProviderMetadata":
        missing = [f for f in _REQUIRED_FIELDS if not isinstance(doc.get(f), str) or not doc[f].strip()]
        if missing:
            raise DiscoveryUnavailable(f"Discovery document missing {', '.join(missing)}")
        return cls(
            issuer=doc["issuer"].rstrip("/"),
            authorization_endpoint=doc["authorization_endpoint"],
            token_endpoint=doc["token_endpoint"],
            jwks_uri=doc["jwks_uri"],
            end_session_endpoint=doc.get("end_session_endpoint") or None,
            userinfo_endpoint=doc.get("userinfo_endpoint") or None,
        )


class DiscoveryResolver:
    def __init__(
        self,
        discovery_url: str,
        client_id: str,
        client_secret: str = "",
        *,
        retry_initial: float = 1.0,
        retry_max: float = 30.0,
        timeout: float = 10.0,
    ):
        self.discovery_url = discovery_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.retry_initial = retry_initial
        self.retry_max = retry_max
        self.timeout = timeout
        self.attempts = 0
        self._metadata: ProviderMetadata | None = None
        self._ready = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    @property
    def metadata(self) -> ProviderMetadata:
        if self._metadata is None:
            raise ProviderNotReady("Upstream provider metadata not yet available")
        return self._metadata

    def fetch(self) -> ProviderMetadata:
        """One attempt. Raises DiscoveryUnavailable on any network or document problem."""
        self.attempts += 1
        logger.info(
            "Discovery attempt %d: discoveryUrl=%s clientId=%s", self.attempts, self.discovery_url, self.client_id
        )
        try:
            r = httpx.get(self.discovery_url, headers={"Accept": "application/json"}, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise DiscoveryUnavailable(f"Discovery request failed: {e}") from e
        if r.status_code != 200:
            raise DiscoveryUnavailable(f"Discovery returned HTTP {r.status_code}")
        try:
            doc = r.json()
        except ValueError as e:
            raise DiscoveryUnavailable("Discovery document is not JSON") from e
        if not isinstance(doc, dict):
            raise DiscoveryUnavailable("Discovery document is not a JSON object")
        return ProviderMetadata.from_document(doc)

    def resolve(self) -> ProviderMetadata | None:
        """
        Block until metadata is fetched; cached for the process lifetime.
        Returns None only if stop() was called before discovery succeeded.
        """
        if self._metadata is not None:
            return self._metadata
        delay = self.retry_initial
        while not self._stop.is_set():
            try:
                metadata = self.fetch()
            except DiscoveryUnavailable as e:
                logger.warning("%s; retrying in %.1fs", e.description, delay)
                self._stop.wait(delay)
                delay = min(max(delay * 2, self.retry_initial), self.retry_max)
                continue
            self._metadata = metadata
            self._ready.set()
            logger.info("Discovered upstream issuer %s after %d attempt(s)", metadata.issuer, self.attempts)
            return metadata
        return None

    def start(self) -> None:
        """Resolve on a daemon thread so the app can answer health/readiness meanwhile."""
        if self._thread is not None or self.ready:
            return
        self._thread = threading.Thread(target=self.resolve, name="oidc-discovery", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def wait_ready(self, timeout: float | None = None) -> bool:
        return self._ready.wait(timeout)
