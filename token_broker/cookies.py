"""
Broker cookies. All HttpOnly, SameSite=Lax, path=/, Secure when configured.
Values are HMAC-SHA256 signed ("<value>.<sig>"): the first session key signs, any
listed key verifies, so keys can be rotated. A tampered or unsigned cookie reads as absent.
"""
import base64
import hashlib
import hmac

from fastapi import Request, Response

TRANSACTION_COOKIES = ("oidc_state", "oidc_nonce", "oidc_verifier", "oidc_challenge", "oidc_redirect")
SESSION_COOKIES = ("app_token", "kc_rt", "kc_id", "kc_sid")
AUTH_COOKIES = SESSION_COOKIES + TRANSACTION_COOKIES


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64_encode(value: str) -> str:
    """URL-safe base64 without padding, safe to put in a cookie or URL fragment."""
    return _b64(value.encode("utf-8"))


def base64_decode(value: str) -> str:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")


class CookieJar:
    def __init__(self, keys: list[str], *, secure: bool = False):
        if not keys:
            raise ValueError("at least one session key is required")
        self.keys = [k.encode("utf-8") for k in keys]
        self.secure = secure

    def _sign(self, name: str, value: str, key: bytes) -> str:
        # Cookie name is part of the MAC so a value cannot be replayed under another name
        return _b64(hmac.new(key, f"{name}={value}".encode("utf-8"), hashlib.sha256).digest())

    def sign(self, name: str, value: str) -> str:
        return f"{value}.{self._sign(name, value, self.keys[0])}"

    def unsign(self, name: str, signed: str) -> str | None:
        value, sep, sig = signed.rpartition(".")
        if not sep:
            return None
        for key in self.keys:
            if hmac.compare_digest(sig, self._sign(name, value, key)):
                return value
        return None

    def set(self, response: Response, name: str, value: str, minutes: int | None = None) -> None:
        response.set_cookie(
            name,
            self.sign(name, value),
            max_age=minutes * 60 if minutes else None,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )

    def get(self, request: Request, name: str) -> str | None:
        raw = request.cookies.get(name)
        if not raw:
            return None
        return self.unsign(name, raw)

    def clear(self, response: Response, names=AUTH_COOKIES) -> None:
        for name in names:
            response.delete_cookie(name, path="/", secure=self.secure, httponly=True, samesite="lax")
