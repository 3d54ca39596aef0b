"""Registration, email confirmation and password management."""

from datetime import timedelta

import pytest

from authcore.service.errors import AuthErrorKind
from authcore.service.passwords import PasswordHashing
from authcore.service.runtime import Runtime


class TestRegister:
    def test_first_account_is_admin(self, auth):
        first = auth.register("first@x.com", "Secret123!")
        second = auth.register("second@x.com", "Secret123!")
        assert first.data.account.role == "admin"
        assert second.data.account.role == "user"

    def test_issues_session(self, auth):
        result = auth.register("a@x.com", "Secret123!")
        assert result.data.expires_in == 3600

        context = auth.authenticate(result.data.access_token)
        assert context.data.account_id == result.data.account.id
        assert auth.refresh_token(result.data.refresh_token).ok

    def test_email_is_normalized(self, auth):
        result = auth.register("  Mixed.Case@Example.COM ", "Secret123!", name=" Ada ")
        assert result.data.account.email == "mixed.case@example.com"
        assert result.data.account.name == "Ada"
        assert result.data.account.email_confirmed is False

    def test_compatibility_characters_register_and_login_alike(self, auth, notifier):
        fullwidth = "ａ@x.com"
        registered = auth.register(fullwidth, "Secret123!")
        assert registered.data.account.email == "a@x.com"

        assert auth.login(fullwidth, "Secret123!").ok
        assert auth.login("a@x.com", "Secret123!").ok
        assert auth.register("a@x.com", "Another123!").kind is AuthErrorKind.EMAIL_ALREADY_REGISTERED

        auth.request_password_reset(fullwidth)
        assert len(notifier.of_kind("password_reset")) == 1

    def test_duplicate_email(self, auth, register):
        register("a@x.com")
        result = auth.register("A@x.com", "Another123!")
        assert result.kind is AuthErrorKind.EMAIL_ALREADY_REGISTERED
        assert result.error.code == 4003

    @pytest.mark.parametrize("email", ["", "no-at-sign", "a@localhost", "a b@x.com", "@x.com"])
    def test_invalid_email(self, auth, email):
        result = auth.register(email, "Secret123!")
        assert result.kind is AuthErrorKind.INVALID_REQUEST

    def test_weak_password(self, auth):
        result = auth.register("a@x.com", "short")
        assert result.kind is AuthErrorKind.WEAK_PASSWORD
        assert result.error.code == 4002

    def test_sends_confirmation(self, auth, notifier):
        auth.register("a@x.com", "Secret123!")
        sent = notifier.of_kind("email_confirmation")
        assert len(sent) == 1
        assert sent[0]["to"] == "a@x.com"
        assert sent[0]["token"]


class TestConfirmEmail:
    def _token(self, notifier):
        return notifier.of_kind("email_confirmation")[-1]["token"]

    def test_confirm(self, runtime, auth, register, notifier):
        account_id = register()
        assert auth.confirm_email(self._token(notifier)).ok
        account = runtime.store.get_account(account_id)
        assert account.email_confirmed
        assert account.email_confirmation_token_hash is None

    def test_token_is_single_use(self, auth, register, notifier):
        register()
        token = self._token(notifier)
        assert auth.confirm_email(token).ok
        assert auth.confirm_email(token).kind is AuthErrorKind.INVALID_TOKEN

    def test_expired_token(self, auth, register, notifier, clock):
        register()
        clock.advance(hours=24)
        assert auth.confirm_email(self._token(notifier)).kind is AuthErrorKind.INVALID_TOKEN

    @pytest.mark.parametrize("token", ["", "bogus"])
    def test_unknown_token(self, auth, token):
        assert auth.confirm_email(token).kind is AuthErrorKind.INVALID_TOKEN


class TestChangePassword:
    def test_change_password(self, runtime, auth, register, notifier):
        account_id = register()
        session = auth.login("a@x.com", "Secret123!").data

        result = auth.change_password(account_id, "Secret123!", "Fresh456!")
        assert result.ok
        assert auth.login("a@x.com", "Fresh456!").ok
        assert auth.login("a@x.com", "Secret123!").kind is AuthErrorKind.INVALID_CREDENTIALS
        assert auth.refresh_token(session.refresh_token).kind is (
            AuthErrorKind.REFRESH_TOKEN_INVALID
        )
        assert len(notifier.of_kind("password_changed")) == 1

    def test_wrong_current_password_counts(self, runtime, auth, register):
        account_id = register()
        result = auth.change_password(account_id, "Wrong123!", "Fresh456!")
        assert result.kind is AuthErrorKind.INVALID_CREDENTIALS
        assert runtime.store.get_account(account_id).failed_login_attempts == 1

    def test_locked_account_cannot_change(self, auth, register):
        account_id = register()
        for _ in range(5):
            auth.login("a@x.com", "Wrong123!")
        result = auth.change_password(account_id, "Secret123!", "Fresh456!")
        assert result.kind is AuthErrorKind.ACCOUNT_LOCKED

    def test_weak_new_password(self, auth, register):
        account_id = register()
        result = auth.change_password(account_id, "Secret123!", "weak")
        assert result.kind is AuthErrorKind.WEAK_PASSWORD


class TestPasswordReset:
    def _token(self, notifier):
        return notifier.of_kind("password_reset")[-1]["token"]

    def test_unknown_email_gets_same_answer(self, auth, register, notifier):
        register()
        known = auth.request_password_reset("a@x.com")
        unknown = auth.request_password_reset("nobody@x.com")
        assert known.ok and unknown.ok
        assert known.data.message == unknown.data.message
        assert len(notifier.of_kind("password_reset")) == 1

    def test_reset_flow(self, runtime, auth, register, notifier):
        account_id = register()
        session = auth.login("a@x.com", "Secret123!").data
        for _ in range(5):
            auth.login("a@x.com", "Wrong123!")
        auth.request_password_reset("a@x.com")

        assert auth.reset_password(self._token(notifier), "Fresh456!").ok
        account = runtime.store.get_account(account_id)
        assert account.failed_login_attempts == 0
        assert account.lockout_until is None
        assert account.email_confirmed
        assert auth.refresh_token(session.refresh_token).kind is (
            AuthErrorKind.REFRESH_TOKEN_INVALID
        )
        assert auth.login("a@x.com", "Fresh456!").ok

    def test_reset_token_is_single_use(self, auth, register, notifier):
        register()
        auth.request_password_reset("a@x.com")
        token = self._token(notifier)
        assert auth.reset_password(token, "Fresh456!").ok
        assert auth.reset_password(token, "Other789!").kind is AuthErrorKind.INVALID_TOKEN

    def test_newer_request_replaces_older_token(self, auth, register, notifier):
        register()
        auth.request_password_reset("a@x.com")
        old = self._token(notifier)
        auth.request_password_reset("a@x.com")
        assert auth.reset_password(old, "Fresh456!").kind is AuthErrorKind.INVALID_TOKEN
        assert auth.reset_password(self._token(notifier), "Fresh456!").ok

    def test_expired_reset_token(self, auth, register, notifier, clock):
        register()
        auth.request_password_reset("a@x.com")
        clock.advance(minutes=60)
        result = auth.reset_password(self._token(notifier), "Fresh456!")
        assert result.kind is AuthErrorKind.INVALID_TOKEN

    def test_reset_rejects_weak_password(self, auth, register, notifier):
        register()
        auth.request_password_reset("a@x.com")
        result = auth.reset_password(self._token(notifier), "weak")
        assert result.kind is AuthErrorKind.WEAK_PASSWORD


class TestHashUpgrade:
    def test_login_rehashes_outdated_hash(
        self, settings_factory, store, clock, notifier
    ):
        old = Runtime(settings_factory(), store=store, clock=clock, notifier=notifier)
        assert old.auth.register("a@x.com", "Secret123!").ok

        upgraded = Runtime(
            settings_factory(password_algorithm="bcrypt"),
            store=store,
            clock=clock,
            notifier=notifier,
        )
        assert upgraded.auth.login("a@x.com", "Secret123!").ok
        stored = store.get_account_by_email("a@x.com").password_hash
        assert stored.startswith("$2b$")
        assert upgraded.auth.login("a@x.com", "Secret123!").ok

    def test_current_hash_left_alone(self, runtime, auth, register):
        account_id = register()
        before = runtime.store.get_account(account_id).password_hash
        auth.login("a@x.com", "Secret123!")
        assert runtime.store.get_account(account_id).password_hash == before

    def test_hashing_uses_configured_cost(self, settings_factory):
        hashing = PasswordHashing(settings_factory(argon2_time_cost=2))
        assert "t=2" in hashing.hash("Secret123!")


class TestLifecycleTokenExpiry:
    def test_confirmation_expiry_window(self, runtime, auth, register, clock):
        account_id = register()
        account = runtime.store.get_account(account_id)
        assert account.email_confirmation_expires_at == clock.now() + timedelta(hours=24)
