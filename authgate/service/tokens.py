from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from authgate.config import MIN_JWT_SECRET_BYTES, Settings
from authgate.logging import get_logger
from authgate.service.clock import Clock, new_token_id, wall_clock
from authgate.service.errors import ErrorKind, TokenError
from authgate.storage.models import Role

logger = get_logger(__name__)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    role: Role
    token_id: str
    kind: TokenKind
    issued_at: int
    expires_at: int

    def remaining_seconds(self, now: float, leeway_seconds: int = 0) -> int:
        """Whole seconds until the token stops verifying, rounded up, never negative."""
        return max(0, int(math.ceil(self.expires_at + leeway_seconds - now)))


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: TokenClaims


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken
    token_type: str = "bearer"

    @property
    def expires_in(self) -> int:
        claims = self.access.claims
        return claims.expires_at - claims.issued_at


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class TokenCodec:
    """Compact HS256 JWTs for access and refresh tokens.

    ``verify`` reports the first failed check as a :class:`TokenError`:
    structure, algorithm, issuer and audience problems are ``MALFORMED``;
    an HMAC mismatch is ``BAD_SIGNATURE``; a token of the other kind is
    ``WRONG_KIND``; a token past ``exp`` (plus leeway) is ``EXPIRED``. The
    kind check runs before the expiry check so a cross-kind replay is always
    reported as such.
    """

    ALGORITHM = "HS256"

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Clock = wall_clock,
        id_factory: Callable[[], str] = new_token_id,
    ) -> None:
        if not secret or len(secret.encode("utf-8")) < MIN_JWT_SECRET_BYTES:
            raise ValueError(
                f"signing key must be at least {MIN_JWT_SECRET_BYTES} bytes for {self.ALGORITHM}"
            )
        self._key = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock
        self._id_factory = id_factory

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Clock = wall_clock) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.clock_skew_leeway_seconds,
            clock=clock,
        )

    def now(self) -> float:
        return self._clock()

    def revocation_ttl(self, claims: TokenClaims) -> int:
        """TTL for a revocation entry covering every instant ``verify`` accepts.

        ``verify`` still accepts the token at ``exp + leeway`` exactly, while a
        store entry is gone at ``now + ttl``; the extra second covers that tick.
        """
        return claims.remaining_seconds(self.now(), self.leeway_seconds) + 1

    def issue(
        self, subject_id: str, role: Role, kind: TokenKind, ttl_seconds: int
    ) -> IssuedToken:
        if ttl_seconds <= 0:
            raise ValueError("token ttl must be positive")
        issued_at = int(self._clock())
        claims = TokenClaims(
            subject_id=subject_id,
            role=Role(role),
            token_id=self._id_factory(),
            kind=TokenKind(kind),
            issued_at=issued_at,
            expires_at=issued_at + int(ttl_seconds),
        )
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": claims.subject_id,
            "role": claims.role.value,
            "token_type": claims.kind.value,
            "jti": claims.token_id,
            "iat": claims.issued_at,
            "exp": claims.expires_at,
        }
        return IssuedToken(token=self._encode_jwt(payload), claims=claims)

    def verify(self, token: str, expected_kind: TokenKind) -> TokenClaims:
        if not isinstance(token, str) or not token:
            raise TokenError(ErrorKind.MALFORMED)
        parts = token.split(".")
        if len(parts) != 3:
            raise TokenError(ErrorKind.MALFORMED)
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenError(ErrorKind.MALFORMED) from None
        # Only HS256 is accepted, whatever the header claims
        if not isinstance(header, dict) or header.get("alg") != self.ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenError(ErrorKind.MALFORMED)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(
            expected_sig.encode("ascii"), sig_b64.encode("utf-8", "replace")
        ):
            raise TokenError(ErrorKind.BAD_SIGNATURE)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenError(ErrorKind.MALFORMED) from None
        claims = self._claims_from_payload(payload)

        if claims.kind != TokenKind(expected_kind):
            raise TokenError(ErrorKind.WRONG_KIND)
        if self._clock() > claims.expires_at + self.leeway_seconds:
            raise TokenError(ErrorKind.EXPIRED)
        return claims

    def _claims_from_payload(self, payload: Any) -> TokenClaims:
        if not isinstance(payload, dict):
            raise TokenError(ErrorKind.MALFORMED)
        if payload.get("iss") != self.issuer:
            raise TokenError(ErrorKind.MALFORMED)
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenError(ErrorKind.MALFORMED)

        subject_id = payload.get("sub")
        token_id = payload.get("jti")
        issued_at = payload.get("iat")
        expires_at = payload.get("exp")
        if not isinstance(subject_id, str) or not subject_id:
            raise TokenError(ErrorKind.MALFORMED)
        if not isinstance(token_id, str) or not token_id:
            raise TokenError(ErrorKind.MALFORMED)
        if not _is_number(issued_at) or not _is_number(expires_at):
            raise TokenError(ErrorKind.MALFORMED)
        try:
            role = Role(payload.get("role"))
            kind = TokenKind(payload.get("token_type"))
        except ValueError:
            raise TokenError(ErrorKind.MALFORMED) from None
        return TokenClaims(
            subject_id=subject_id,
            role=role,
            token_id=token_id,
            kind=kind,
            issued_at=int(issued_at),
            expires_at=int(expires_at),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        signature = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(signature)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Return the token from ``Authorization: Bearer <token>``, or None if malformed.

    Exactly one space separates the scheme from the token and the token may
    not contain whitespace.
    """
    if not header:
        return None
    scheme, sep, token = header.partition(" ")
    if not sep or scheme.lower() != "bearer":
        return None
    if not token or any(ch.isspace() for ch in token):
        return None
    return token
