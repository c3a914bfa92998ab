import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass

from starlette.requests import Request


@dataclass(frozen=True)
class TrustConfig:
    """Static exemption policy, fixed for the lifetime of the process."""

    whitelist_ip: str = ""  # empty = no exemption, rate limit everyone
    trusted_proxy_ip: str = ""  # empty = never honor proxy headers


@dataclass(frozen=True)
class RequestIdentity:
    direct_address: str
    claimed_proxy_ip: str

    @classmethod
    def from_request(cls, request: Request) -> "RequestIdentity":
        return cls(
            direct_address=request.client.host if request.client else "",
            claimed_proxy_ip=get_proxy_ip(request.headers),
        )


def _split_host(value: str) -> str | None:
    """Return the host part of ``host:port``, or None if it doesn't split."""
    host, _, _ = value.rpartition(":")
    if ":" in host or "[" in host or "]" in host:
        return None
    return host


def get_proxy_ip(headers: Mapping[str, str]) -> str:
    """Best-effort client IP claimed by proxy headers.

    X-Forwarded-For wins when present (left-most entry is the original
    client), otherwise the ``for=`` parameter of an RFC 7239 Forwarded
    header is used. Returns an empty string when neither yields a value.
    The result comes straight from the request and is never authenticated.
    """
    xff = headers.get("X-Forwarded-For")
    if xff:
        return xff.split(",", 1)[0].strip()

    forwarded = headers.get("Forwarded")
    if not forwarded:
        return ""

    # Only the first comma-separated element (closest to the original client)
    # is read, so "for=a, for=b" resolves to "a" rather than "a, for=b".
    first_element = forwarded.split(",", 1)[0]
    for part in first_element.split(";"):
        part = part.strip()
        if part[:4].lower() != "for=":
            continue
        value = part[4:]
        if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
            value = value[1:-1]
        if value.startswith("[") and "]" in value:
            return value[1 : value.index("]")]
        if ":" in value:
            host = _split_host(value)
            return value if host is None else host
        return value
    return ""


def should_throttle(
    direct_address: str, claimed_proxy_ip: str, trust: TrustConfig
) -> bool:
    """Decide whether a request has to pass the time-window check.

    Rules are evaluated in order:

    1. No whitelist configured: everyone is throttled.
    2. A direct connection from the whitelisted address is exempt.
    3. A connection from the trusted proxy is exempt only when its
       forwarded header names the whitelisted address.
    4. Anything else is throttled. Header claims from peers other than the
       trusted proxy are ignored.
    """
    if not trust.whitelist_ip:
        return True
    if direct_address == trust.whitelist_ip:
        return False
    if trust.trusted_proxy_ip and direct_address == trust.trusted_proxy_ip:
        return claimed_proxy_ip != trust.whitelist_ip
    return True


class RateLimiter:
    """Single global admission slot with a fixed recovery window.

    One request is admitted per ``window`` seconds across the whole service.
    The compare and the update of the last admission time happen under one
    lock so two concurrent requests can never both see an open window.
    """

    def __init__(self, window: float):
        self.window = window
        self._last_admitted_at: float | None = None
        self._lock = threading.Lock()

    @property
    def last_admitted_at(self) -> float | None:
        return self._last_admitted_at

    def try_admit(self, now: float | None = None) -> bool:
        with self._lock:
            if now is None:
                now = time.monotonic()
            last = self._last_admitted_at
            if last is not None and now - last < self.window:
                return False
            self._last_admitted_at = now
            return True

    def retry_after(self, now: float | None = None) -> float:
        """Seconds until the next request can be admitted (0 if open)."""
        with self._lock:
            if self._last_admitted_at is None:
                return 0.0
            if now is None:
                now = time.monotonic()
            return max(0.0, self.window - (now - self._last_admitted_at))

    def reset(self) -> None:
        with self._lock:
            self._last_admitted_at = None
