"""HMAC-signed download tokens.

Token layout: ``base64url(json payload) + "." + base64url(hmac_sha256(encoded payload))``.

Payload fields:
  f    project folder
  t    requested kind (jpg | raw | zip)
  n    filename exactly as the client will request it
  exp  absolute expiry, epoch milliseconds
  jti  random nonce

There is no revocation list; a token stays valid until ``exp``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import quote

TOKEN_KINDS = ("jpg", "raw", "zip")


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)


def _digest(data: str, secret: str) -> str:
    mac = hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha256)
    return _b64url(mac.digest())


@dataclass(frozen=True, slots=True)
class TokenCheck:
    ok: bool
    payload: dict[str, Any] | None = None
    reason: str | None = None


def sign_payload(payload: dict[str, Any], secret: str) -> str:
    body = json.dumps(payload, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    data = _b64url(body.encode("utf-8"))
    return f"{data}.{_digest(data, secret)}"


def verify_token(token: str, secret: str, now: int | None = None) -> TokenCheck:
    """Check signature, then decode and check expiry. Never raises."""
    try:
        parts = token.split(".")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return TokenCheck(ok=False, reason="invalid")
        data, sig = parts
        expected = _digest(data, secret)
        if not hmac.compare_digest(sig.encode("utf-8"), expected.encode("ascii")):
            return TokenCheck(ok=False, reason="bad_signature")
        payload = json.loads(_b64url_decode(data).decode("utf-8"))
        if not isinstance(payload, dict):
            return TokenCheck(ok=False, reason="invalid")
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return TokenCheck(ok=False, reason="expired")
        if exp < (now_ms() if now is None else now):
            return TokenCheck(ok=False, reason="expired")
        return TokenCheck(ok=True, payload=payload)
    except (AttributeError, TypeError, ValueError):
        return TokenCheck(ok=False, reason="invalid")


class DownloadSigner:
    """Mints short-lived download tokens bound to (folder, kind, filename)."""

    def __init__(
        self,
        secret: str,
        default_ttl_ms: int = 2 * 60 * 1000,
        clock: Callable[[], int] = now_ms,
    ):
        if not secret:
            raise ValueError("DownloadSigner requires a secret")
        self._secret = secret
        self.default_ttl_ms = default_ttl_ms
        self._clock = clock

    def _ttl(self, ttl_ms: Any) -> int:
        if isinstance(ttl_ms, bool) or not isinstance(ttl_ms, int) or ttl_ms <= 0:
            return self.default_ttl_ms
        return ttl_ms

    def mint(self, folder: str, kind: str, filename: str, ttl_ms: int | None = None) -> tuple[str, dict]:
        if kind not in TOKEN_KINDS:
            raise ValueError(f"unsupported token kind: {kind}")
        payload = {
            "f": folder,
            "t": kind,
            "n": filename,
            "exp": self._clock() + self._ttl(ttl_ms),
            "jti": secrets.token_hex(8),
        }
        return sign_payload(payload, self._secret), payload

    def build_url(self, folder: str, kind: str, filename: str, ttl_ms: int | None = None) -> str:
        token, _ = self.mint(folder, kind, filename, ttl_ms)
        f = quote(folder, safe="")
        n = quote(filename, safe="")
        t = quote(token, safe="")
        if kind == "zip":
            return f"/assets/{f}/files-zip/{n}?token={t}"
        return f"/assets/{f}/file/{quote(kind, safe='')}/{n}?token={t}"

    def verify(self, token: str) -> TokenCheck:
        return verify_token(token, self._secret, now=self._clock())
