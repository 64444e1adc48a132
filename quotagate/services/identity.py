from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import ipaddress
from typing import Callable

from quotagate.domain.state import UNKNOWN_PRINCIPAL_ID


_USER_PREFIX = "user:"
_ANON_PREFIX = "anon:"
_ANON_DIGEST_CHARS = 32


@dataclass(frozen=True)
class PrincipalContext:
    # Request-scoped identity hints supplied by the calling layer.
    user_id: str | None = None
    ip_address: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_ip(value: str | None) -> str | None:
    # Canonicalize addresses so textual variants share one bucket.
    if not value:
        return None
    candidate = value.strip()
    if candidate.startswith("[") and "]" in candidate:
        candidate = candidate[1 : candidate.index("]")]
    # Drop IPv6 zone ids; they are link-local decorations, not distinct callers.
    candidate = candidate.split("%", 1)[0]
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return address.compressed


def anonymous_principal_id(ip: str, day_key: str) -> str:
    digest = hashlib.sha256(f"{ip}_{day_key}".encode("utf-8")).hexdigest()
    return f"{_ANON_PREFIX}{digest[:_ANON_DIGEST_CHARS]}"


class IdentityResolver:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Inject the clock so day-bucketed anonymous ids are testable.
        self._time_provider = time_provider or _utc_now

    def resolve(self, context: PrincipalContext) -> str:
        # Never raises: the unknown sentinel is returned when nothing identifies the caller.
        user_id = (context.user_id or "").strip()
        if user_id:
            return f"{_USER_PREFIX}{user_id}"
        ip = normalize_ip(context.ip_address)
        if ip is None:
            return UNKNOWN_PRINCIPAL_ID
        now = self._time_provider().astimezone(timezone.utc)
        return anonymous_principal_id(ip, now.strftime("%Y%m%d"))


def client_ip_from_headers(
    *,
    peer_host: str | None,
    forwarded_for: str | None,
    trust_forwarded_for: bool,
) -> str | None:
    # Use the left-most X-Forwarded-For hop only behind a trusted proxy.
    if trust_forwarded_for and forwarded_for:
        first = forwarded_for.split(",", 1)[0].strip()
        if first:
            return first
    return peer_host
