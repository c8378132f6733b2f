from __future__ import annotations

import ipaddress
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterable, Mapping

from starlette.requests import Request

from assetgate.errors import RateLimited

ENDPOINT_CLASSES = ("thumbnail", "preview", "image", "zip")


@dataclass(slots=True)
class SlidingWindowRateLimiter:
    """Simple in-memory sliding window rate limiter.

    Stores timestamps per key and allows up to `limit` events within `window_s`.
    """

    limit: int
    window_s: float
    max_keys: int = 10_000
    cleanup_every: int = 256
    _events: "OrderedDict[str, deque[float]]" = field(default_factory=OrderedDict)
    _ops: int = 0
    _lock: Lock = field(default_factory=Lock)

    def allow(self, key: str, now: float | None = None) -> bool:
        key = key or "unknown"
        if now is None:
            now = time.time()

        cutoff = now - self.window_s
        with self._lock:
            self._ops += 1

            q = self._events.get(key)
            if q is None:
                while self.max_keys > 0 and len(self._events) >= self.max_keys:
                    self._events.popitem(last=False)
                q = deque()
                self._events[key] = q
            else:
                self._events.move_to_end(key)

            while q and q[0] <= cutoff:
                q.popleft()

            if len(q) >= self.limit:
                return False

            q.append(now)
            if self.cleanup_every > 0 and (self._ops % self.cleanup_every) == 0:
                self._cleanup(cutoff)
            return True

    def _cleanup(self, cutoff: float) -> None:
        for k in list(self._events.keys()):
            q = self._events.get(k)
            if q is None:
                continue
            while q and q[0] <= cutoff:
                q.popleft()
            if not q:
                del self._events[k]


class RateLimitPolicy:
    """One limiter per endpoint class; unknown classes are not limited."""

    def __init__(self, limits: Mapping[str, int], window_s: float = 60.0):
        self._limiters = {
            name: SlidingWindowRateLimiter(limit=int(limit), window_s=window_s)
            for name, limit in limits.items()
        }

    def check(self, endpoint_class: str, key: str, now: float | None = None) -> bool:
        limiter = self._limiters.get(endpoint_class)
        if limiter is None:
            return True
        return limiter.allow(key, now=now)


class ClientIpResolver:
    """Client address, honouring X-Forwarded-For only from trusted proxies."""

    def __init__(self, trusted_nets: Iterable[str] = ("127.0.0.1/32", "::1/128")):
        self.trusted: list[ipaddress.IPv4Network | ipaddress.IPv6Network] = []
        for net in trusted_nets:
            net = net.strip()
            if not net:
                continue
            try:
                self.trusted.append(ipaddress.ip_network(net, strict=False))
            except ValueError:
                continue

    def _is_trusted_proxy(self, host: str) -> bool:
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            return False
        return any(ip in net for net in self.trusted)

    @staticmethod
    def _parse_ip(value: str) -> str | None:
        value = (value or "").strip()
        if not value:
            return None
        try:
            return str(ipaddress.ip_address(value))
        except ValueError:
            return None

    def __call__(self, request: Request) -> str:
        peer = request.client.host if request.client else ""
        if not self.trusted:
            return peer or "unknown"
        peer_ip = self._parse_ip(peer)
        if peer_ip and self._is_trusted_proxy(peer_ip):
            xff = request.headers.get("x-forwarded-for") or ""
            if xff:
                chain: list[str] = []
                for part in xff.split(","):
                    ip = self._parse_ip(part)
                    if ip:
                        chain.append(ip)
                while chain and self._is_trusted_proxy(chain[-1]):
                    chain.pop()
                if chain:
                    return chain[-1]
            x_real_ip = self._parse_ip(request.headers.get("x-real-ip") or "")
            if x_real_ip:
                return x_real_ip
        return peer or "unknown"


def enforce_rate_limit(request: Request, endpoint_class: str) -> None:
    state = request.app.state
    key = state.client_ip(request)
    if not state.rate_limits.check(endpoint_class, key):
        raise RateLimited("Too Many Requests", endpoint=endpoint_class)
