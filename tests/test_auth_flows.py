"""End-to-end login, two-factor and session flows through the orchestrator."""

from datetime import timedelta

import pytest

from authcore.service.errors import AuthErrorKind
from authcore.service.runtime import Runtime
from authcore.storage.errors import StorageUnavailable


def _wrong_code(totp, secret, now):
    window = {
        totp.generate_code(secret, now + timedelta(seconds=offset))
        for offset in (-30, 0, 30)
    }
    return next(c for c in ("000000", "111111", "222222", "333333") if c not in window)


class TestPasswordLogin:
    def test_login_without_two_factor(self, auth, register):
        account_id = register("a@x.com", "Secret123!")
        result = auth.login("a@x.com", "Secret123!")

        assert result.ok
        assert result.data.requires_two_factor is False
        assert result.data.access_token
        assert result.data.refresh_token
        assert result.data.temp_token is None
        assert result.data.expires_in == 3600
        assert result.data.account.id == account_id

    def test_wrong_password(self, auth, register):
        register()
        result = auth.login("a@x.com", "Wrong123!")
        assert not result.ok
        assert result.kind is AuthErrorKind.INVALID_CREDENTIALS
        assert result.error.code == 4001

    def test_unknown_email_looks_like_wrong_password(self, auth, register):
        register()
        unknown = auth.login("nobody@x.com", "Secret123!")
        wrong = auth.login("a@x.com", "Wrong123!")
        assert unknown.error == wrong.error

    def test_email_is_case_insensitive(self, auth, register):
        register("a@x.com")
        assert auth.login("  A@X.COM", "Secret123!").ok

    def test_wire_shape_is_camel_case(self, auth, register):
        register()
        dumped = auth.login("a@x.com", "Secret123!").model_dump()
        assert dumped["ok"] is True
        assert dumped["data"]["requiresTwoFactor"] is False
        assert "accessToken" in dumped["data"]
        assert "twoFactorEnabled" in dumped["data"]["account"]

        failed = auth.login("a@x.com", "nope").model_dump(mode="json")
        assert failed["error"]["kind"] == "invalid_credentials"
        assert failed["error"]["retryAfter"] is None


class TestLockoutFlow:
    def test_sixth_attempt_locked_then_recovers(self, runtime, auth, register, clock):
        account_id = register("b@x.com", "Secret123!")
        for _ in range(5):
            result = auth.login("b@x.com", "Wrong123!")
            assert result.kind is AuthErrorKind.INVALID_CREDENTIALS

        locked = auth.login("b@x.com", "Secret123!")
        assert locked.kind is AuthErrorKind.ACCOUNT_LOCKED
        assert locked.error.code == 4029
        assert locked.error.retry_after == 15 * 60

        clock.advance(minutes=15)
        assert auth.login("b@x.com", "Secret123!").ok
        assert runtime.store.get_account(account_id).failed_login_attempts == 0

    def test_success_resets_counter(self, runtime, auth, register):
        account_id = register()
        for _ in range(3):
            auth.login("a@x.com", "Wrong123!")
        assert auth.login("a@x.com", "Secret123!").ok
        assert runtime.store.get_account(account_id).failed_login_attempts == 0

    def test_lockout_sends_one_notice(self, auth, register, notifier):
        register("b@x.com")
        for _ in range(6):
            auth.login("b@x.com", "Wrong123!")
        assert [n["to"] for n in notifier.of_kind("lockout")] == ["b@x.com"]

    def test_broken_mail_relay_does_not_fail_login(
        self, settings, store, clock, exploding_notifier
    ):
        runtime = Runtime(settings, store=store, clock=clock, notifier=exploding_notifier)
        assert runtime.auth.register("b@x.com", "Secret123!").ok
        for _ in range(5):
            assert runtime.auth.login("b@x.com", "Wrong123!").kind is (
                AuthErrorKind.INVALID_CREDENTIALS
            )
        assert runtime.auth.login("b@x.com", "Secret123!").kind is AuthErrorKind.ACCOUNT_LOCKED


class TestTwoFactorLogin:
    def test_login_returns_temp_token(self, runtime, auth, register, enable_two_factor):
        account_id = register()
        enable_two_factor(account_id)
        result = auth.login("a@x.com", "Secret123!")

        assert result.ok
        assert result.data.requires_two_factor is True
        assert result.data.temp_token
        assert result.data.access_token is None
        assert result.data.refresh_token is None
        assert result.data.expires_in == runtime.settings.temp_token_ttl_seconds

    def test_verify_issues_tokens(self, runtime, auth, register, enable_two_factor, clock):
        account_id = register()
        secret, _ = enable_two_factor(account_id)
        temp = auth.login("a@x.com", "Secret123!").data.temp_token

        result = auth.verify_two_factor(temp, runtime.totp.generate_code(secret, clock.now()))
        assert result.ok
        assert result.data.access_token
        assert result.data.refresh_token

    def test_temp_token_reusable_with_another_valid_code(
        self, runtime, auth, register, enable_two_factor, clock
    ):
        account_id = register()
        secret, _ = enable_two_factor(account_id)
        temp = auth.login("a@x.com", "Secret123!").data.temp_token
        now = clock.now()
        first = runtime.totp.generate_code(secret, now)
        second = runtime.totp.generate_code(secret, now + timedelta(seconds=30))

        assert auth.verify_two_factor(temp, first).ok
        assert auth.verify_two_factor(temp, second).ok

        clock.advance(minutes=5, seconds=1)
        late = auth.verify_two_factor(temp, runtime.totp.generate_code(secret, clock.now()))
        assert late.kind is AuthErrorKind.TEMP_TOKEN_INVALID

    def test_wrong_code_counts_toward_lockout(
        self, runtime, auth, register, enable_two_factor, clock
    ):
        account_id = register()
        secret, _ = enable_two_factor(account_id)
        temp = auth.login("a@x.com", "Secret123!").data.temp_token
        wrong = _wrong_code(runtime.totp, secret, clock.now())

        for _ in range(5):
            result = auth.verify_two_factor(temp, wrong)
            assert result.kind is AuthErrorKind.INVALID_TWO_FACTOR_CODE

        good = runtime.totp.generate_code(secret, clock.now())
        locked = auth.verify_two_factor(temp, good)
        assert locked.kind is AuthErrorKind.ACCOUNT_LOCKED
        assert locked.error.retry_after > 0

    def test_garbage_temp_token(self, auth):
        result = auth.verify_two_factor("not-a-token", "123456")
        assert result.kind is AuthErrorKind.TEMP_TOKEN_INVALID

    def test_inline_code_skips_temp_token(
        self, runtime, auth, register, enable_two_factor, clock
    ):
        account_id = register()
        secret, _ = enable_two_factor(account_id)
        code = runtime.totp.generate_code(secret, clock.now())

        result = auth.login("a@x.com", "Secret123!", two_factor_code=code)
        assert result.ok
        assert result.data.requires_two_factor is False
        assert result.data.access_token

    def test_inline_wrong_code(self, runtime, auth, register, enable_two_factor, clock):
        account_id = register()
        secret, _ = enable_two_factor(account_id)
        wrong = _wrong_code(runtime.totp, secret, clock.now())

        result = auth.login("a@x.com", "Secret123!", two_factor_code=wrong)
        assert result.kind is AuthErrorKind.INVALID_TWO_FACTOR_CODE
        assert runtime.store.get_account(account_id).failed_login_attempts == 1


class TestRecoveryCodeLogin:
    def test_recovery_code_completes_login_once(self, runtime, auth, register, enable_two_factor):
        account_id = register()
        _, codes = enable_two_factor(account_id)
        temp = auth.login("a@x.com", "Secret123!").data.temp_token

        assert auth.verify_recovery_code(temp, codes[0]).ok
        reused = auth.verify_recovery_code(temp, codes[0])
        assert reused.kind is AuthErrorKind.RECOVERY_CODE_INVALID
        assert runtime.recovery.remaining(account_id) == 9

    def test_bad_recovery_code_counts_toward_lockout(
        self, runtime, auth, register, enable_two_factor
    ):
        account_id = register()
        enable_two_factor(account_id)
        temp = auth.login("a@x.com", "Secret123!").data.temp_token

        result = auth.verify_recovery_code(temp, "0000-0000")
        assert result.kind is AuthErrorKind.RECOVERY_CODE_INVALID
        assert runtime.store.get_account(account_id).failed_login_attempts == 1

    def test_requires_enabled_two_factor(self, runtime, auth, register, clock):
        account_id = register()
        temp = runtime.temp_tokens.seal(account_id, clock.now())
        result = auth.verify_recovery_code(temp, "1234-5678")
        assert result.kind is AuthErrorKind.TWO_FACTOR_NOT_ENABLED


class TestSessions:
    def test_refresh_rotates(self, auth, register):
        register()
        login = auth.login("a@x.com", "Secret123!").data
        refreshed = auth.refresh_token(login.refresh_token)

        assert refreshed.ok
        assert refreshed.data.refresh_token != login.refresh_token
        reused = auth.refresh_token(login.refresh_token)
        assert reused.kind is AuthErrorKind.REFRESH_TOKEN_INVALID

    def test_logout_revokes_refresh(self, auth, register):
        register()
        login = auth.login("a@x.com", "Secret123!").data
        assert auth.logout(login.refresh_token).ok
        assert auth.logout(login.refresh_token).ok
        assert auth.refresh_token(login.refresh_token).kind is AuthErrorKind.REFRESH_TOKEN_INVALID

    def test_authenticate_bearer(self, auth, register):
        account_id = register()
        login = auth.login("a@x.com", "Secret123!").data
        context = auth.authenticate(f"Bearer {login.access_token}")

        assert context.ok
        assert context.data.account_id == account_id
        assert context.data.email == "a@x.com"
        assert context.data.is_admin
        assert context.data.token_id

    def test_authenticate_rejects_garbage_and_expired(self, auth, register, clock):
        register()
        login = auth.login("a@x.com", "Secret123!").data
        assert auth.authenticate("Bearer nonsense").kind is AuthErrorKind.INVALID_CREDENTIALS
        clock.advance(hours=1)
        assert auth.authenticate(login.access_token).kind is AuthErrorKind.INVALID_CREDENTIALS

    def test_authenticate_non_ascii_signature_is_a_result(self, auth, register):
        register()
        header, payload, _ = auth.login("a@x.com", "Secret123!").data.access_token.split(".")
        result = auth.authenticate(f"Bearer {header}.{payload}.sig\u00e9")
        assert result.kind is AuthErrorKind.INVALID_CREDENTIALS


class TestTwoFactorManagement:
    def test_setup_is_stable_until_enabled(self, auth, register):
        account_id = register()
        first = auth.setup_two_factor(account_id)
        second = auth.setup_two_factor(account_id)

        assert first.ok
        assert first.data.secret == second.data.secret
        assert first.data.provisioning_uri.startswith("otpauth://totp/")
        assert first.data.manual_entry_format.replace(" ", "") == first.data.secret

    def test_status_transitions(self, auth, register, enable_two_factor):
        account_id = register()
        status = auth.two_factor_status(account_id).data
        assert (status.enabled, status.configured, status.recovery_codes_remaining) == (
            False,
            False,
            0,
        )

        auth.setup_two_factor(account_id)
        status = auth.two_factor_status(account_id).data
        assert (status.enabled, status.configured) == (False, True)

        # setup already ran above; enabling reuses the stored secret
        enable_two_factor(account_id)
        status = auth.two_factor_status(account_id).data
        assert (status.enabled, status.recovery_codes_remaining) == (True, 10)

    def test_enable_requires_setup(self, auth, register):
        account_id = register()
        result = auth.enable_two_factor(account_id, "123456")
        assert result.kind is AuthErrorKind.TWO_FACTOR_SETUP_REQUIRED

    def test_enable_rejects_wrong_code(self, runtime, auth, register, clock):
        account_id = register()
        secret = auth.setup_two_factor(account_id).data.secret
        wrong = _wrong_code(runtime.totp, secret, clock.now())
        result = auth.enable_two_factor(account_id, wrong)
        assert result.kind is AuthErrorKind.INVALID_TWO_FACTOR_CODE
        assert not runtime.store.get_account(account_id).two_factor_enabled

    def test_enable_twice(self, runtime, auth, register, enable_two_factor, clock):
        account_id = register()
        secret, _ = enable_two_factor(account_id)
        again = auth.enable_two_factor(account_id, runtime.totp.generate_code(secret, clock.now()))
        assert again.kind is AuthErrorKind.TWO_FACTOR_ALREADY_ENABLED
        assert auth.setup_two_factor(account_id).kind is AuthErrorKind.TWO_FACTOR_ALREADY_ENABLED

    def test_enable_sends_notice(self, auth, register, enable_two_factor, notifier):
        account_id = register()
        enable_two_factor(account_id)
        assert len(notifier.of_kind("two_factor_enabled")) == 1

    def test_disable_clears_secret_and_codes(self, runtime, auth, register, enable_two_factor):
        account_id = register()
        enable_two_factor(account_id)

        assert auth.disable_two_factor(account_id).ok
        account = runtime.store.get_account(account_id)
        assert not account.two_factor_enabled
        assert account.two_factor_secret is None
        assert runtime.recovery.remaining(account_id) == 0
        assert auth.login("a@x.com", "Secret123!").data.requires_two_factor is False

    def test_disable_when_not_enabled(self, auth, register):
        account_id = register()
        assert auth.disable_two_factor(account_id).kind is AuthErrorKind.TWO_FACTOR_NOT_ENABLED

    def test_regenerate_recovery_codes(self, runtime, auth, register, enable_two_factor, clock):
        account_id = register()
        _, old_codes = enable_two_factor(account_id)
        result = auth.regenerate_recovery_codes(account_id)

        assert result.ok
        assert result.data.count == 10
        assert result.data.generated_at == clock.now()
        temp = auth.login("a@x.com", "Secret123!").data.temp_token
        stale = [c for c in old_codes if c not in result.data.recovery_codes][0]
        assert auth.verify_recovery_code(temp, stale).kind is AuthErrorKind.RECOVERY_CODE_INVALID

    def test_regenerate_requires_enabled(self, auth, register):
        account_id = register()
        result = auth.regenerate_recovery_codes(account_id)
        assert result.kind is AuthErrorKind.TWO_FACTOR_NOT_ENABLED

    def test_unknown_account(self, auth):
        assert auth.setup_two_factor("missing").kind is AuthErrorKind.ACCOUNT_NOT_FOUND
        assert auth.two_factor_status("missing").kind is AuthErrorKind.ACCOUNT_NOT_FOUND


class TestStorageFailures:
    def test_login_maps_storage_outage(self, runtime, auth, register, monkeypatch):
        register()

        def down(*_args, **_kwargs):
            raise StorageUnavailable("database unreachable")

        monkeypatch.setattr(runtime.store, "get_account_by_email", down)
        result = auth.login("a@x.com", "Secret123!")

        assert not result.ok
        assert result.kind is AuthErrorKind.STORAGE_UNAVAILABLE
        assert result.error.code == 5000
        assert "database" not in result.error.message

    def test_enable_rolls_back_when_codes_cannot_be_stored(
        self, runtime, auth, register, clock, monkeypatch
    ):
        account_id = register()
        secret = auth.setup_two_factor(account_id).data.secret
        code = runtime.totp.generate_code(secret, clock.now())

        def down(*_args, **_kwargs):
            raise StorageUnavailable("write failed")

        monkeypatch.setattr(runtime.store, "replace_recovery_codes", down)
        assert auth.enable_two_factor(account_id, code).kind is AuthErrorKind.STORAGE_UNAVAILABLE

        status = auth.two_factor_status(account_id).data
        assert (status.enabled, status.configured) == (False, True)

        monkeypatch.undo()
        retried = auth.enable_two_factor(account_id, code)
        assert retried.ok
        assert len(retried.data.recovery_codes) == 10

    def test_refresh_maps_storage_outage(self, runtime, auth, monkeypatch):
        def down(*_args, **_kwargs):
            raise StorageUnavailable("pool timeout")

        monkeypatch.setattr(runtime.store, "get_refresh_session", down)
        assert auth.refresh_token("anything").kind is AuthErrorKind.STORAGE_UNAVAILABLE

    @pytest.mark.parametrize("status_kind", list(AuthErrorKind))
    def test_every_kind_has_status_hint(self, status_kind):
        assert status_kind.status_code in {400, 401, 404, 409, 423, 503}
        assert status_kind.default_message
