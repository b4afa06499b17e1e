"""
Session revocation index: upstream session id (sid) -> application token ids (jti),
plus the set of revoked jtis.

Every mint links its jti to the upstream sid; a back-channel logout moves all jtis of
that sid into the revoked set. Entries remember their token's expiry so a periodic
sweep can drop them once the token could no longer verify anyway.
"""
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from token_broker.database import init_db, make_engine, make_session_factory
from token_broker.models import RevokedTokenRecord, SessionLink

logger = logging.getLogger(__name__)

_REVOKE_ATTEMPTS = 3


def _utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _naive_utc(dt: datetime | None) -> datetime | None:
    dt = _utc(dt)
    return dt.replace(tzinfo=None) if dt is not None else None


class RevocationIndex(ABC):
    """The three operations every backend must provide, plus expiry-based cleanup."""

    @abstractmethod
    def link(self, sid: str | None, jti: str, expires_at: datetime | None = None) -> None:
        """Record that jti was minted under sid. No-op when sid is empty."""

    @abstractmethod
    def revoke_by_sid(self, sid: str) -> int:
        """Revoke every jti linked to sid and forget the sid. Idempotent. Returns jtis revoked."""

    @abstractmethod
    def is_revoked(self, jti: str) -> bool:
        ...

    @abstractmethod
    def sweep(self, now: datetime | None = None) -> int:
        """Drop entries whose token expiry is at or before now. Returns entries removed."""


class InMemoryRevocationIndex(RevocationIndex):
    """Single-process index. One lock guards both maps."""

    def __init__(self):
        self._lock = threading.Lock()
        self._links: dict[str, dict[str, datetime | None]] = {}
        self._revoked: dict[str, datetime | None] = {}

    def link(self, sid: str | None, jti: str, expires_at: datetime | None = None) -> None:
        if not sid:
            return
        with self._lock:
            self._links.setdefault(sid, {})[jti] = _utc(expires_at)

    def revoke_by_sid(self, sid: str) -> int:
        if not sid:
            return 0
        with self._lock:
            linked = self._links.pop(sid, None)
            if not linked:
                return 0
            self._revoked.update(linked)
        return len(linked)

    def is_revoked(self, jti: str) -> bool:
        with self._lock:
            return jti in self._revoked

    def sweep(self, now: datetime | None = None) -> int:
        now = _utc(now) or datetime.now(timezone.utc)
        removed = 0
        with self._lock:
            for jti in [j for j, exp in self._revoked.items() if exp is not None and exp <= now]:
                del self._revoked[jti]
                removed += 1
            for sid in list(self._links):
                jtis = self._links[sid]
                for jti in [j for j, exp in jtis.items() if exp is not None and exp <= now]:
                    del jtis[jti]
                    removed += 1
                if not jtis:
                    del self._links[sid]
        return removed


class SqlRevocationIndex(RevocationIndex):
    """Index shared by several broker instances through a database."""

    def __init__(self, database_url: str):
        self.engine = make_engine(database_url)
        init_db(self.engine)
        self._session_factory = make_session_factory(self.engine)

    def link(self, sid: str | None, jti: str, expires_at: datetime | None = None) -> None:
        if not sid:
            return
        with self._session_factory() as db:
            exists = db.execute(
                select(SessionLink.id).where(SessionLink.sid == sid, SessionLink.jti == jti)
            ).first()
            if exists is None:
                db.add(SessionLink(sid=sid, jti=jti, expires_at=_naive_utc(expires_at)))
                db.commit()

    def revoke_by_sid(self, sid: str) -> int:
        if not sid:
            return 0
        for _ in range(_REVOKE_ATTEMPTS - 1):
            try:
                return self._revoke_once(sid)
            except IntegrityError:
                # Another instance revoked some of these jtis first; re-read and skip them
                logger.info("Concurrent revocation of sid=%s, retrying", sid)
        return self._revoke_once(sid)

    def _revoke_once(self, sid: str) -> int:
        with self._session_factory() as db:
            links = db.scalars(select(SessionLink).where(SessionLink.sid == sid)).all()
            if not links:
                return 0
            for link in links:
                if db.get(RevokedTokenRecord, link.jti) is None:
                    db.add(RevokedTokenRecord(jti=link.jti, sid=sid, expires_at=link.expires_at))
            # Only the rows read above; links committed meanwhile stay for the next revocation
            db.execute(delete(SessionLink).where(SessionLink.id.in_([link.id for link in links])))
            db.commit()
            return len(links)

    def is_revoked(self, jti: str) -> bool:
        with self._session_factory() as db:
            return db.get(RevokedTokenRecord, jti) is not None

    def sweep(self, now: datetime | None = None) -> int:
        cutoff = _naive_utc(now) or _naive_utc(datetime.now(timezone.utc))
        with self._session_factory() as db:
            revoked = db.execute(
                delete(RevokedTokenRecord).where(RevokedTokenRecord.expires_at.is_not(None), RevokedTokenRecord.expires_at <= cutoff)
            ).rowcount
            links = db.execute(
                delete(SessionLink).where(SessionLink.expires_at.is_not(None), SessionLink.expires_at <= cutoff)
            ).rowcount
            db.commit()
        return (revoked or 0) + (links or 0)


def build_revocation_index(backend: str, database_url: str | None = None) -> RevocationIndex:
    if backend == "memory":
        return InMemoryRevocationIndex()
    if backend == "sql":
        if not database_url:
            raise ValueError("REVOCATION_DATABASE_URL is required for the sql revocation backend")
        logger.info("Using SQL revocation index")
        return SqlRevocationIndex(database_url)
    raise ValueError(f"Unknown revocation backend: {backend!r}")
