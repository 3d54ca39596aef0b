from __future__ import annotations

import functools
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, TypeVar

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.schemas import (
    Acknowledgement,
    AccountSummary,
    AuthResult,
    EnableTwoFactorResponse,
    LoginResponse,
    RecoveryCodesResponse,
    RegisterResponse,
    TokenResponse,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    validate_email_address,
)
from authcore.service.errors import AuthErrorKind, AuthFailure
from authcore.service.lockout import LockoutPolicy
from authcore.service.notifications import NotificationSender, send_safely
from authcore.service.passwords import CredentialVerifier, PasswordHashing
from authcore.service.primitives import Clock, SecureRandom
from authcore.service.recovery import RecoveryCodeVault
from authcore.service.temp_tokens import TempTokenProtector
from authcore.service.tokens import TokenPair, TokenService, hash_opaque_token
from authcore.service.totp import TwoFactorEngine
from authcore.storage.common import (
    AccountRepository,
    normalize_email,
    update_account_with_retry,
)
from authcore.storage.errors import ConstraintViolation, StorageUnavailable
from authcore.storage.models import Account

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., AuthResult])

_LIFECYCLE_TOKEN_BYTES = 32
_BEARER_PREFIX = "bearer "


@dataclass
class AuthContext:
    account_id: str
    role: str
    email: str
    token_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _boundary(operation: str) -> Callable[[F], F]:
    """Turn expected failures and storage faults into failed results."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(self: "AuthOrchestrator", *args: Any, **kwargs: Any) -> AuthResult:
            try:
                return func(self, *args, **kwargs)
            except AuthFailure as exc:
                logger.info(
                    "auth_operation_rejected",
                    operation=operation,
                    kind=exc.kind.value,
                )
                return AuthResult.failure(
                    exc.kind, exc.message, retry_after=exc.retry_after
                )
            except StorageUnavailable as exc:
                logger.error(
                    "auth_storage_unavailable",
                    operation=operation,
                    detail=exc.message,
                    exc_info=True,
                )
                return AuthResult.failure(AuthErrorKind.STORAGE_UNAVAILABLE)

        return wrapper  # type: ignore[return-value]

    return decorator


class AuthOrchestrator:
    """Login, two-factor and session state machine.

    A caller moves from Unauthenticated to Authenticated either directly
    (password only) or through PendingTwoFactor, which is represented by a
    sealed temp token held by the client. Every public method returns an
    :class:`AuthResult`; expected failures are never raised.
    """

    def __init__(
        self,
        store: AccountRepository,
        settings: Settings,
        *,
        clock: Clock,
        random: SecureRandom,
        hashing: PasswordHashing,
        lockout: LockoutPolicy,
        verifier: CredentialVerifier,
        totp: TwoFactorEngine,
        recovery: RecoveryCodeVault,
        temp_tokens: TempTokenProtector,
        tokens: TokenService,
        notifier: NotificationSender,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.random = random
        self.hashing = hashing
        self.lockout = lockout
        self.verifier = verifier
        self.totp = totp
        self.recovery = recovery
        self.temp_tokens = temp_tokens
        self.tokens = tokens
        self.notifier = notifier
        self.confirmation_ttl = timedelta(hours=settings.email_confirmation_ttl_hours)
        self.reset_ttl = timedelta(minutes=settings.password_reset_ttl_minutes)

    # helpers
    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id) if account_id else None
        if account is None:
            raise AuthFailure(AuthErrorKind.ACCOUNT_NOT_FOUND)
        return account

    def _ensure_unlocked(self, account: Account, now: datetime) -> None:
        if self.lockout.is_locked(account, now):
            raise AuthFailure(
                AuthErrorKind.ACCOUNT_LOCKED,
                retry_after=self.lockout.retry_after(account, now),
            )

    def _update(
        self, account_id: str, mutate: Callable[[Account], Optional[Account]]
    ) -> Account:
        outcome = update_account_with_retry(self.store, account_id, mutate)
        if outcome is None:
            raise AuthFailure(AuthErrorKind.ACCOUNT_NOT_FOUND)
        return outcome[1]

    def _new_lifecycle_token(self) -> tuple[str, str]:
        token = self.random.token_urlsafe(_LIFECYCLE_TOKEN_BYTES)
        return token, hash_opaque_token(token)

    def _complete_login(self, account: Account, now: datetime) -> TokenPair:
        self.lockout.record_success(account.id, now)
        pair = self.tokens.issue_pair(account, now)
        logger.info(
            "login_succeeded",
            account_id=account.id,
            two_factor=account.two_factor_enabled,
        )
        return pair

    @staticmethod
    def _token_response(pair: TokenPair) -> TokenResponse:
        return TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )

    def _check_second_factor(self, account: Account, code: str, now: datetime) -> None:
        if not account.two_factor_enabled or not account.two_factor_secret:
            raise AuthFailure(AuthErrorKind.TWO_FACTOR_SETUP_REQUIRED)
        if not self.totp.validate_code(account.two_factor_secret, code, now):
            self.lockout.record_failure(account.id, now)
            raise AuthFailure(AuthErrorKind.INVALID_TWO_FACTOR_CODE)

    def _open_pending(self, temp_token: str, now: datetime) -> Account:
        account_id = self.temp_tokens.open(temp_token, now)
        if account_id is None:
            raise AuthFailure(AuthErrorKind.TEMP_TOKEN_INVALID)
        account = self.store.get_account(account_id)
        if account is None:
            logger.warning("temp_token_account_missing", account_id=account_id)
            raise AuthFailure(AuthErrorKind.TEMP_TOKEN_INVALID)
        self._ensure_unlocked(account, now)
        return account

    def _upgrade_hash(self, account: Account, password: str) -> None:
        if not self.hashing.needs_rehash(account.password_hash):
            return
        old_hash = account.password_hash
        try:
            new_hash = self.hashing.hash(password)
        except ValueError:
            # legacy password the configured algorithm cannot take (bcrypt 72-byte cap)
            logger.warning("password_rehash_skipped", account_id=account.id)
            return
        now = self.clock.now()

        def _apply(current: Account) -> Optional[Account]:
            if current.password_hash != old_hash:
                return None
            current.password_hash = new_hash
            current.updated_at = now
            return current

        try:
            update_account_with_retry(self.store, account.id, _apply)
        except StorageUnavailable:
            # keep the old hash; the next successful login retries the upgrade
            logger.warning("password_rehash_failed", account_id=account.id, exc_info=True)
            return
        logger.info("password_rehashed", account_id=account.id)

    def _revert_two_factor_enable(self, account_id: str, secret: str) -> None:
        """Switch 2FA back off after its recovery codes could not be stored."""
        now = self.clock.now()

        def _apply(current: Account) -> Optional[Account]:
            if not current.two_factor_enabled or current.two_factor_secret != secret:
                return None
            current.two_factor_enabled = False
            current.updated_at = now
            return current

        try:
            update_account_with_retry(self.store, account_id, _apply)
        except StorageUnavailable:
            logger.error("two_factor_enable_revert_failed", account_id=account_id, exc_info=True)
            return
        logger.warning("two_factor_enable_reverted", account_id=account_id)

    def _notify(self, event: str, send: Callable[..., Any], *args: Any) -> None:
        send_safely(event, send, *args)

    # login flow
    @_boundary("login")
    def login(
        self, email: str, password: str, two_factor_code: Optional[str] = None
    ) -> AuthResult[LoginResponse]:
        outcome = self.verifier.verify(email, password)
        if outcome.locked:
            raise AuthFailure(
                AuthErrorKind.ACCOUNT_LOCKED, retry_after=outcome.retry_after
            )
        if not outcome.ok or outcome.account is None:
            raise AuthFailure(AuthErrorKind.INVALID_CREDENTIALS)

        account = outcome.account
        self._upgrade_hash(account, password)
        now = self.clock.now()

        if account.two_factor_enabled:
            if not two_factor_code:
                temp_token = self.temp_tokens.seal(account.id, now)
                logger.info("login_pending_two_factor", account_id=account.id)
                return AuthResult[LoginResponse].success(
                    LoginResponse(
                        requires_two_factor=True,
                        temp_token=temp_token,
                        expires_in=self.temp_tokens.ttl_seconds,
                    )
                )
            self._check_second_factor(account, two_factor_code, now)

        pair = self._complete_login(account, now)
        return AuthResult[LoginResponse].success(
            LoginResponse(
                access_token=pair.access_token,
                refresh_token=pair.refresh_token,
                requires_two_factor=False,
                expires_in=pair.expires_in,
                account=AccountSummary.from_account(account),
            )
        )

    @_boundary("verify_two_factor")
    def verify_two_factor(self, temp_token: str, code: str) -> AuthResult[TokenResponse]:
        now = self.clock.now()
        account = self._open_pending(temp_token, now)
        self._check_second_factor(account, code, now)
        pair = self._complete_login(account, now)
        return AuthResult[TokenResponse].success(self._token_response(pair))

    @_boundary("verify_recovery_code")
    def verify_recovery_code(
        self, temp_token: str, recovery_code: str
    ) -> AuthResult[TokenResponse]:
        now = self.clock.now()
        account = self._open_pending(temp_token, now)
        if not account.two_factor_enabled:
            raise AuthFailure(AuthErrorKind.TWO_FACTOR_NOT_ENABLED)
        if not self.recovery.consume(account.id, recovery_code, now):
            self.lockout.record_failure(account.id, now)
            raise AuthFailure(AuthErrorKind.RECOVERY_CODE_INVALID)
        logger.info(
            "recovery_code_login",
            account_id=account.id,
            remaining=self.recovery.remaining(account.id),
        )
        pair = self._complete_login(account, now)
        return AuthResult[TokenResponse].success(self._token_response(pair))

    @_boundary("refresh_token")
    def refresh_token(self, refresh_token: str) -> AuthResult[TokenResponse]:
        pair = self.tokens.rotate(refresh_token, self.clock.now())
        if pair is None:
            raise AuthFailure(AuthErrorKind.REFRESH_TOKEN_INVALID)
        return AuthResult[TokenResponse].success(self._token_response(pair))

    @_boundary("logout")
    def logout(self, refresh_token: str) -> AuthResult[Acknowledgement]:
        self.tokens.revoke(refresh_token, self.clock.now())
        return AuthResult[Acknowledgement].success(Acknowledgement(message="Logged out"))

    @_boundary("authenticate")
    def authenticate(self, bearer: str) -> AuthResult[AuthContext]:
        token = (bearer or "").strip()
        if token.lower().startswith(_BEARER_PREFIX):
            token = token[len(_BEARER_PREFIX) :].strip()
        claims = self.tokens.decode_access_token(token, self.clock.now())
        if claims is None:
            raise AuthFailure(
                AuthErrorKind.INVALID_CREDENTIALS, "Invalid or expired access token"
            )
        account = self.store.get_account(str(claims["sub"]))
        if account is None:
            raise AuthFailure(
                AuthErrorKind.INVALID_CREDENTIALS, "Invalid or expired access token"
            )
        return AuthResult[AuthContext].success(
            AuthContext(
                account_id=account.id,
                role=account.role,
                email=account.email,
                token_id=claims.get("jti"),
            )
        )

    # two-factor management
    @_boundary("setup_two_factor")
    def setup_two_factor(self, account_id: str) -> AuthResult[TwoFactorSetupResponse]:
        account = self._require_account(account_id)
        if account.two_factor_enabled:
            raise AuthFailure(AuthErrorKind.TWO_FACTOR_ALREADY_ENABLED)
        if not account.two_factor_secret:
            secret = self.totp.generate_secret()
            now = self.clock.now()

            def _apply(current: Account) -> Optional[Account]:
                if current.two_factor_enabled:
                    raise AuthFailure(AuthErrorKind.TWO_FACTOR_ALREADY_ENABLED)
                if current.two_factor_secret:
                    return None
                current.two_factor_secret = secret
                current.updated_at = now
                return current

            account = self._update(account.id, _apply)
            logger.info("two_factor_secret_created", account_id=account.id)
        secret = account.two_factor_secret
        return AuthResult[TwoFactorSetupResponse].success(
            TwoFactorSetupResponse(
                secret=secret,
                provisioning_uri=self.totp.provisioning_uri(account.email, secret),
                manual_entry_format=self.totp.format_secret_for_display(secret),
            )
        )

    @_boundary("enable_two_factor")
    def enable_two_factor(
        self, account_id: str, code: str
    ) -> AuthResult[EnableTwoFactorResponse]:
        account = self._require_account(account_id)
        if account.two_factor_enabled:
            raise AuthFailure(AuthErrorKind.TWO_FACTOR_ALREADY_ENABLED)
        if not account.two_factor_secret:
            raise AuthFailure(AuthErrorKind.TWO_FACTOR_SETUP_REQUIRED)
        now = self.clock.now()
        if not self.totp.validate_code(account.two_factor_secret, code, now):
            raise AuthFailure(AuthErrorKind.INVALID_TWO_FACTOR_CODE)
        validated_secret = account.two_factor_secret

        def _apply(current: Account) -> Optional[Account]:
            if current.two_factor_enabled:
                raise AuthFailure(AuthErrorKind.TWO_FACTOR_ALREADY_ENABLED)
            if current.two_factor_secret != validated_secret:
                # the secret was replaced after the code was checked
                raise AuthFailure(AuthErrorKind.INVALID_TWO_FACTOR_CODE)
            current.two_factor_enabled = True
            current.updated_at = now
            return current

        account = self._update(account.id, _apply)
        try:
            codes = self.recovery.generate(account.id, now)
        except StorageUnavailable:
            self._revert_two_factor_enable(account.id, validated_secret)
            raise
        logger.info("two_factor_enabled", account_id=account.id)
        self._notify(
            "two_factor_enabled", self.notifier.send_two_factor_enabled, account.email
        )
        return AuthResult[EnableTwoFactorResponse].success(
            EnableTwoFactorResponse(recovery_codes=codes)
        )

    @_boundary("disable_two_factor")
    def disable_two_factor(self, account_id: str) -> AuthResult[Acknowledgement]:
        account = self._require_account(account_id)
        if not account.two_factor_enabled:
            raise AuthFailure(AuthErrorKind.TWO_FACTOR_NOT_ENABLED)
        now = self.clock.now()

        def _apply(current: Account) -> Optional[Account]:
            if not current.two_factor_enabled:
                raise AuthFailure(AuthErrorKind.TWO_FACTOR_NOT_ENABLED)
            current.two_factor_enabled = False
            current.two_factor_secret = None
            current.updated_at = now
            return current

        self._update(account.id, _apply)
        self.recovery.revoke_all(account.id)
        logger.info("two_factor_disabled", account_id=account.id)
        return AuthResult[Acknowledgement].success(
            Acknowledgement(message="Two-factor authentication disabled")
        )

    @_boundary("regenerate_recovery_codes")
    def regenerate_recovery_codes(
        self, account_id: str
    ) -> AuthResult[RecoveryCodesResponse]:
        account = self._require_account(account_id)
        if not account.two_factor_enabled:
            raise AuthFailure(AuthErrorKind.TWO_FACTOR_NOT_ENABLED)
        now = self.clock.now()
        codes = self.recovery.generate(account.id, now)
        return AuthResult[RecoveryCodesResponse].success(
            RecoveryCodesResponse(recovery_codes=codes, count=len(codes), generated_at=now)
        )

    @_boundary("two_factor_status")
    def two_factor_status(self, account_id: str) -> AuthResult[TwoFactorStatusResponse]:
        account = self._require_account(account_id)
        remaining = self.recovery.remaining(account.id) if account.two_factor_enabled else 0
        return AuthResult[TwoFactorStatusResponse].success(
            TwoFactorStatusResponse(
                enabled=account.two_factor_enabled,
                configured=bool(account.two_factor_secret),
                recovery_codes_remaining=remaining,
            )
        )

    # account lifecycle
    @_boundary("register")
    def register(
        self, email: str, password: str, name: Optional[str] = None
    ) -> AuthResult[RegisterResponse]:
        try:
            normalized = validate_email_address(email)
        except ValueError as exc:
            raise AuthFailure(AuthErrorKind.INVALID_REQUEST, str(exc))
        problem = self.hashing.validate_strength(password)
        if problem:
            raise AuthFailure(AuthErrorKind.WEAK_PASSWORD, problem)

        now = self.clock.now()
        token, token_hash = self._new_lifecycle_token()
        account = Account.new(
            normalized,
            self.hashing.hash(password),
            now,
            name=(name or "").strip() or None,
        )
        account.email_confirmation_token_hash = token_hash
        account.email_confirmation_expires_at = now + self.confirmation_ttl
        try:
            account = self.store.create_account(account, promote_if_first=True)
        except ConstraintViolation:
            raise AuthFailure(AuthErrorKind.EMAIL_ALREADY_REGISTERED)
        logger.info("account_registered", account_id=account.id, role=account.role)
        pair = self.tokens.issue_pair(account, now)
        self._notify(
            "email_confirmation",
            self.notifier.send_email_confirmation,
            account.email,
            token,
        )
        return AuthResult[RegisterResponse].success(
            RegisterResponse(
                account=AccountSummary.from_account(account),
                access_token=pair.access_token,
                refresh_token=pair.refresh_token,
                expires_in=pair.expires_in,
            )
        )

    @_boundary("confirm_email")
    def confirm_email(self, token: str) -> AuthResult[Acknowledgement]:
        now = self.clock.now()
        token_hash = hash_opaque_token(token or "")
        account = self.store.get_account_by_confirmation_token(token_hash) if token else None
        if account is None:
            raise AuthFailure(AuthErrorKind.INVALID_TOKEN)

        def _apply(current: Account) -> Optional[Account]:
            expires_at = current.email_confirmation_expires_at
            if current.email_confirmation_token_hash != token_hash or (
                expires_at is None or expires_at <= now
            ):
                raise AuthFailure(AuthErrorKind.INVALID_TOKEN)
            current.email_confirmed = True
            current.email_confirmation_token_hash = None
            current.email_confirmation_expires_at = None
            current.updated_at = now
            return current

        self._update(account.id, _apply)
        logger.info("email_confirmed", account_id=account.id)
        return AuthResult[Acknowledgement].success(Acknowledgement(message="Email confirmed"))

    def _set_password(
        self,
        account_id: str,
        new_hash: str,
        now: datetime,
        check: Optional[Callable[[Account], None]] = None,
    ) -> Account:
        def _apply(current: Account) -> Optional[Account]:
            if check is not None:
                check(current)
            current.password_hash = new_hash
            current.failed_login_attempts = 0
            current.lockout_until = None
            current.password_reset_token_hash = None
            current.password_reset_expires_at = None
            current.updated_at = now
            return current

        account = self._update(account_id, _apply)
        revoked = self.tokens.revoke_all(account.id, now)
        logger.info("password_changed", account_id=account.id, sessions_revoked=revoked)
        self._notify(
            "password_changed", self.notifier.send_password_changed, account.email
        )
        return account

    @_boundary("change_password")
    def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> AuthResult[Acknowledgement]:
        account = self._require_account(account_id)
        now = self.clock.now()
        self._ensure_unlocked(account, now)
        if not self.hashing.verify(account.password_hash, current_password):
            self.lockout.record_failure(account.id, now)
            raise AuthFailure(AuthErrorKind.INVALID_CREDENTIALS, "Current password is incorrect")
        problem = self.hashing.validate_strength(new_password)
        if problem:
            raise AuthFailure(AuthErrorKind.WEAK_PASSWORD, problem)
        self._set_password(account.id, self.hashing.hash(new_password), now)
        return AuthResult[Acknowledgement].success(Acknowledgement(message="Password changed"))

    @_boundary("request_password_reset")
    def request_password_reset(self, email: str) -> AuthResult[Acknowledgement]:
        ack = Acknowledgement(
            message="If the address is registered, a reset link has been sent"
        )
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None:
            logger.info("password_reset_unknown_account")
            return AuthResult[Acknowledgement].success(ack)

        now = self.clock.now()
        token, token_hash = self._new_lifecycle_token()

        def _apply(current: Account) -> Optional[Account]:
            current.password_reset_token_hash = token_hash
            current.password_reset_expires_at = now + self.reset_ttl
            current.updated_at = now
            return current

        account = self._update(account.id, _apply)
        logger.info("password_reset_requested", account_id=account.id)
        self._notify(
            "password_reset", self.notifier.send_password_reset, account.email, token
        )
        return AuthResult[Acknowledgement].success(ack)

    @_boundary("reset_password")
    def reset_password(self, token: str, new_password: str) -> AuthResult[Acknowledgement]:
        now = self.clock.now()
        token_hash = hash_opaque_token(token or "")
        account = self.store.get_account_by_reset_token(token_hash) if token else None
        if (
            account is None
            or account.password_reset_expires_at is None
            or account.password_reset_expires_at <= now
        ):
            raise AuthFailure(AuthErrorKind.INVALID_TOKEN)
        problem = self.hashing.validate_strength(new_password)
        if problem:
            raise AuthFailure(AuthErrorKind.WEAK_PASSWORD, problem)

        def _check(current: Account) -> None:
            if current.password_reset_token_hash != token_hash:
                raise AuthFailure(AuthErrorKind.INVALID_TOKEN)
            # the reset link proved control of the mailbox
            current.email_confirmed = True

        self._set_password(account.id, self.hashing.hash(new_password), now, check=_check)
        return AuthResult[Acknowledgement].success(
            Acknowledgement(message="Password has been reset")
        )
