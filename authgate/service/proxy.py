from __future__ import annotations

from dataclasses import dataclass
from ipaddress import IPv4Network, IPv6Network, ip_address, ip_network
from typing import Iterable, Optional, Tuple, Union

from authgate.logging import get_logger

logger = get_logger(__name__)

UNKNOWN_ADDRESS = "unknown"

_Network = Union[IPv4Network, IPv6Network]


@dataclass(frozen=True)
class TrustedProxySet:
    """Peers allowed to speak for the client through forwarding headers.

    Empty unless configured, in which case no header is ever trusted.
    """

    networks: Tuple[_Network, ...] = ()

    @classmethod
    def parse(cls, raw: Union[str, Iterable[str], None]) -> "TrustedProxySet":
        """Build a set from ``"10.0.0.1, 10.1.0.0/16, ::1"``.

        Bare addresses become single-host networks. Raises ``ValueError`` on
        any entry that is neither an address nor a CIDR block.
        """
        if raw is None:
            return cls()
        entries = raw.split(",") if isinstance(raw, str) else list(raw)
        networks = []
        for entry in entries:
            entry = entry.strip()
            if not entry:
                continue
            try:
                networks.append(ip_network(entry, strict=False))
            except ValueError as exc:
                raise ValueError(f"invalid trusted proxy entry '{entry}'") from exc
        return cls(tuple(networks))

    def __bool__(self) -> bool:
        return bool(self.networks)

    def __len__(self) -> int:
        return len(self.networks)

    def contains(self, address: Optional[str]) -> bool:
        if not address or not self.networks:
            return False
        try:
            parsed = ip_address(address.strip())
        except ValueError:
            return False
        return any(
            parsed.version == network.version and parsed in network
            for network in self.networks
        )


def _header_value(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    value = raw.strip()
    if not value or value.lower() == UNKNOWN_ADDRESS:
        return None
    return value


class TrustedProxyResolver:
    """Works out which address a request really came from."""

    def __init__(self, trusted: TrustedProxySet) -> None:
        self.trusted = trusted

    def resolve_client_address(
        self,
        direct: Optional[str],
        forwarded_for: Optional[str] = None,
        real_ip: Optional[str] = None,
    ) -> str:
        """Return the client address for rate limiting and audit.

        Headers count only when ``direct`` is a trusted proxy; then the
        left-most ``X-Forwarded-For`` entry wins, then ``X-Real-IP``, then the
        peer itself. Never raises.
        """
        direct = (direct or "").strip()
        if not direct:
            return UNKNOWN_ADDRESS
        if not self.trusted.contains(direct):
            if forwarded_for or real_ip:
                logger.debug(
                    "forwarding_headers_ignored_untrusted_peer",
                    peer=direct,
                )
            return direct

        if forwarded_for:
            candidate = _header_value(forwarded_for.split(",")[0])
            if candidate:
                return candidate
        candidate = _header_value(real_ip)
        if candidate:
            return candidate
        return direct
