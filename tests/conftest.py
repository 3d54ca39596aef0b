import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment defaults before any authcore import reads them
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.config import Settings  # noqa: E402
from authcore.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "jwt-secret-for-automated-tests-only-0123456789"
TEST_TEMP_TOKEN_SECRET = "temp-token-secret-for-automated-tests-0123456789"


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingNotifier:
    """Notification sender that keeps every notice in memory."""

    def __init__(self):
        self.sent = []

    def _record(self, kind, to_email, **payload):
        self.sent.append({"kind": kind, "to": to_email, **payload})
        return True

    def of_kind(self, kind):
        return [n for n in self.sent if n["kind"] == kind]

    def send_lockout_notice(self, to_email, locked_until):
        return self._record("lockout", to_email, locked_until=locked_until)

    def send_two_factor_enabled(self, to_email):
        return self._record("two_factor_enabled", to_email)

    def send_password_changed(self, to_email):
        return self._record("password_changed", to_email)

    def send_email_confirmation(self, to_email, token):
        return self._record("email_confirmation", to_email, token=token)

    def send_password_reset(self, to_email, token):
        return self._record("password_reset", to_email, token=token)


class ExplodingNotifier(RecordingNotifier):
    """Sender whose relay is down: every send raises."""

    def _record(self, kind, to_email, **payload):
        raise ConnectionError("mail relay unreachable")


def make_settings(**overrides) -> Settings:
    values = dict(
        test_mode=True,
        use_memory_store=True,
        jwt_secret=TEST_JWT_SECRET,
        temp_token_secret=TEST_TEMP_TOKEN_SECRET,
        # cheap hashing keeps the suite fast; production defaults are much higher
        argon2_time_cost=1,
        argon2_memory_cost_kib=8,
        argon2_parallelism=1,
        bcrypt_rounds=4,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, store, clock, notifier):
    return Runtime(settings, store=store, clock=clock, notifier=notifier)


@pytest.fixture
def auth(runtime):
    return runtime.auth


@pytest.fixture
def register(auth):
    """Register an account and return its id."""

    def _register(email="a@x.com", password="Secret123!", name=None):
        result = auth.register(email, password, name=name)
        assert result.ok, result.error
        return result.data.account.id

    return _register


@pytest.fixture
def enable_two_factor(runtime, clock):
    """Turn on 2FA for an account; returns (secret, recovery_codes)."""

    def _enable(account_id):
        setup = runtime.auth.setup_two_factor(account_id)
        assert setup.ok, setup.error
        secret = setup.data.secret
        code = runtime.totp.generate_code(secret, clock.now())
        enabled = runtime.auth.enable_two_factor(account_id, code)
        assert enabled.ok, enabled.error
        return secret, enabled.data.recovery_codes

    return _enable


@pytest.fixture
def exploding_notifier():
    return ExplodingNotifier()
