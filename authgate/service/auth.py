from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import (
    DependencyUnavailableError,
    DuplicateIdentityError,
    InvalidCredentialsError,
    InvalidTokenError,
    TokenError,
)
from authgate.service.tokens import (
    TokenClaims,
    TokenCodec,
    TokenKind,
    TokenPair,
    extract_bearer,
)
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import Principal, Role

logger = get_logger(__name__)


class CredentialRepository(Protocol):
    """Account storage owned outside this service."""

    def create_principal(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        is_active: bool = True,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...


class RevocationStore(Protocol):
    async def blacklist(self, token_id: str, ttl_seconds: int) -> None: ...

    async def claim(self, token_id: str, ttl_seconds: int) -> bool: ...

    async def is_blacklisted(self, token_id: str) -> bool: ...

    async def revoke_subject(
        self, subject_id: str, revoked_before: float, ttl_seconds: int
    ) -> None: ...

    async def subject_revoked_before(self, subject_id: str) -> Optional[float]: ...


@dataclass
class AuthContext:
    user_id: str
    role: Role
    token_id: str
    expires_at: int

    def has_role(self, required: Role) -> bool:
        if self.role == required:
            return True
        return self.role == Role.ADMIN and required in {Role.ADMIN, Role.USER}


@dataclass
class AuthResult:
    principal: Principal
    tokens: TokenPair


class AuthService:
    """Register, login, refresh, logout and validate.

    Every operation is a single transition over shared state held in the
    revocation store and the credential repository; the service itself keeps
    nothing per request. Revocation checks fail closed: if the store cannot
    answer, the token is treated as revoked. Logout is the exception and
    never reports failure.
    """

    def __init__(
        self,
        store: CredentialRepository,
        cache: RevocationStore,
        codec: TokenCodec,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.codec = codec
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self._dummy_lock = threading.Lock()

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.settings.refresh_token_ttl_minutes * 60

    async def _run_bounded(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking repository or hashing call off the event loop with a deadline."""
        timeout = self.settings.repository_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)
        except asyncio.TimeoutError:
            logger.error("credential_repository_timeout", operation=operation, timeout=timeout)
            raise DependencyUnavailableError() from None

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: Role = Role.USER,
    ) -> AuthResult:
        existing = await self._run_bounded(
            "get_principal_by_email", self.store.get_principal_by_email, email
        )
        if existing:
            logger.info("registration_rejected_duplicate")
            raise DuplicateIdentityError()
        password_hash = await self._run_bounded("hash_password", self._hash_password, password)

        def _create() -> Principal:
            return self.store.create_principal(
                email,
                password_hash,
                role=role,
                first_name=first_name,
                last_name=last_name,
            )

        try:
            principal = await self._run_bounded("create_principal", _create)
        except ConstraintViolation:
            # Lost a race with a concurrent registration for the same email
            raise DuplicateIdentityError() from None
        logger.info("principal_registered", principal_id=principal.id, role=principal.role.value)
        return AuthResult(principal=principal, tokens=self._issue_pair(principal))

    async def login(self, email: str, password: str) -> AuthResult:
        principal = await self._run_bounded(
            "get_principal_by_email", self.store.get_principal_by_email, email
        )
        if principal is None:
            # Unknown accounts cost one hash verification, like known ones
            await self._run_bounded("verify_password", self._verify_dummy, password)
            logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialsError()
        verified = await self._run_bounded(
            "verify_password", self.verify_password, principal.password_hash, password
        )
        if not verified:
            logger.info("login_failed", reason="password_mismatch", principal_id=principal.id)
            raise InvalidCredentialsError()
        if not principal.is_active:
            logger.info("login_failed", reason="suspended", principal_id=principal.id)
            raise InvalidCredentialsError()
        logger.info("login_succeeded", principal_id=principal.id)
        return AuthResult(principal=principal, tokens=self._issue_pair(principal))

    async def refresh(self, refresh_token: str) -> AuthResult:
        """Exchange a refresh token for a new pair, consuming it.

        The presented token is revoked before the new pair is minted, so at
        most one of any number of concurrent redemptions succeeds and a
        cancelled request leaves the old token dead.
        """
        claims = self._verify_or_reject(refresh_token, TokenKind.REFRESH)
        ttl = self.codec.revocation_ttl(claims)
        try:
            claimed = await self.cache.claim(claims.token_id, ttl)
        except Exception as exc:
            logger.error(
                "refresh_claim_failed_defaulting_to_revoked",
                subject_id=claims.subject_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InvalidTokenError() from None
        if not claimed:
            logger.warning(
                "refresh_token_reused",
                subject_id=claims.subject_id,
                token_id=claims.token_id,
            )
            raise InvalidTokenError()
        await self._ensure_subject_not_revoked(claims)
        principal = await self._run_bounded(
            "get_principal", self.store.get_principal, claims.subject_id
        )
        if principal is None or not principal.is_active:
            logger.info("refresh_rejected_principal_unavailable", subject_id=claims.subject_id)
            raise InvalidTokenError()
        logger.info("refresh_rotated", principal_id=principal.id)
        return AuthResult(principal=principal, tokens=self._issue_pair(principal))

    async def logout(
        self, authorization: Optional[str], refresh_token: Optional[str] = None
    ) -> None:
        """Revoke the presented access token (and refresh token, if given).

        Never raises: a missing or unusable token, or a store outage, is
        logged and the caller still sees a successful logout.
        """
        token = extract_bearer(authorization)
        if token is None:
            logger.info("logout_without_bearer_token")
        else:
            await self._revoke_quietly(token, TokenKind.ACCESS)
        if refresh_token:
            await self._revoke_quietly(refresh_token, TokenKind.REFRESH)

    async def validate(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        if token is None:
            raise InvalidTokenError()
        claims = self._verify_or_reject(token, TokenKind.ACCESS)
        try:
            revoked = await self.cache.is_blacklisted(claims.token_id)
        except Exception as exc:
            logger.error(
                "revocation_lookup_failed_rejecting",
                subject_id=claims.subject_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InvalidTokenError() from None
        if revoked:
            logger.info("access_token_revoked_presented", subject_id=claims.subject_id)
            raise InvalidTokenError()
        await self._ensure_subject_not_revoked(claims)
        return AuthContext(
            user_id=claims.subject_id,
            role=claims.role,
            token_id=claims.token_id,
            expires_at=claims.expires_at,
        )

    async def revoke_subject_tokens(self, subject_id: str) -> None:
        """Invalidate every token issued to ``subject_id`` up to now."""
        now = self.codec.now()
        ttl = self.refresh_ttl_seconds + self.codec.leeway_seconds
        try:
            await self.cache.revoke_subject(subject_id, now, ttl)
        except Exception as exc:
            logger.error(
                "subject_revocation_failed",
                subject_id=subject_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DependencyUnavailableError() from None
        logger.info("subject_tokens_revoked", subject_id=subject_id)

    def _issue_pair(self, principal: Principal) -> TokenPair:
        access = self.codec.issue(
            principal.id, principal.role, TokenKind.ACCESS, self.access_ttl_seconds
        )
        refresh = self.codec.issue(
            principal.id, principal.role, TokenKind.REFRESH, self.refresh_ttl_seconds
        )
        return TokenPair(access=access, refresh=refresh)

    def _verify_or_reject(self, token: str, kind: TokenKind) -> TokenClaims:
        try:
            return self.codec.verify(token, kind)
        except TokenError as exc:
            # Callers only ever learn "invalid token"; the reason stays in the logs
            logger.info("token_rejected", expected_kind=kind.value, reason=exc.kind.value)
            raise InvalidTokenError() from None

    async def _ensure_subject_not_revoked(self, claims: TokenClaims) -> None:
        try:
            revoked_before = await self.cache.subject_revoked_before(claims.subject_id)
        except Exception as exc:
            logger.error(
                "subject_revocation_lookup_failed_rejecting",
                subject_id=claims.subject_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InvalidTokenError() from None
        if revoked_before is not None and claims.issued_at <= revoked_before:
            logger.info("token_predates_subject_revocation", subject_id=claims.subject_id)
            raise InvalidTokenError()

    async def _revoke_quietly(self, token: str, kind: TokenKind) -> None:
        try:
            claims = self.codec.verify(token, kind)
        except TokenError as exc:
            logger.info("logout_token_ignored", kind=kind.value, reason=exc.kind.value)
            return
        ttl = self.codec.revocation_ttl(claims)
        try:
            await self.cache.blacklist(claims.token_id, ttl)
        except Exception as exc:
            logger.error(
                "logout_revocation_failed",
                kind=kind.value,
                subject_id=claims.subject_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        logger.info("logout_token_revoked", kind=kind.value, subject_id=claims.subject_id)

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _verify_dummy(self, password: str) -> bool:
        with self._dummy_lock:
            if self._dummy_hash is None:
                self._dummy_hash = self._pwd_hasher.hash("authgate-dummy-password")
            dummy_hash = self._dummy_hash
        self.verify_password(dummy_hash, password)
        return False
