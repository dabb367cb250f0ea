import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
from botocore.credentials import Credentials

from bedrock_core.domain.exceptions import BrokerUnavailable, DelegationDenied, InitializationFailed
from bedrock_core.domain.models import Ambient, CallerIdentity, Delegated, DelegatedCredential
from bedrock_core.providers.credentials import CredentialManager, mode_from_settings


class SettingsStub:
    aws_region = "us-east-1"
    sts_session_name = "test-session"
    assume_role_duration_seconds = 3600
    credential_refresh_margin_seconds = 300
    verify_assumed_identity = True
    cross_account_role_arn = None


class Clock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


class FakeBroker:
    def __init__(self, clock, lifetime=timedelta(hours=1)):
        self.clock = clock
        self.lifetime = lifetime
        self.assume_calls = 0
        self.who_calls = []
        self.error = None
        self.entered = None
        self.release = None

    def assume_delegated_identity(self, role_identifier, session_label, duration_seconds=3600):
        self.assume_calls += 1
        if self.error is not None:
            raise self.error
        if self.entered is not None:
            self.entered.set()
            self.release.wait(5)
        n = self.assume_calls
        return DelegatedCredential(
            access_key=f"ASIA{n:04d}",
            secret_key=f"secret-{n}",
            session_token=f"token-{n}",
            expires_at=self.clock() + self.lifetime,
        )

    def who_am_i(self, credential=None):
        self.who_calls.append(credential)
        return CallerIdentity(account_id="111122223333", principal_arn="arn:aws:iam::111122223333:user/app")


ROLE = "arn:aws:iam::444455556666:role/BedrockRole"


def _delegated(clock, lifetime=timedelta(hours=1)):
    broker = FakeBroker(clock, lifetime)
    return CredentialManager(Delegated(ROLE), broker, SettingsStub(), clock=clock), broker


def test_mode_from_settings():
    cfg = SettingsStub()
    assert isinstance(mode_from_settings(cfg), Ambient)
    cfg.cross_account_role_arn = "  "
    assert isinstance(mode_from_settings(cfg), Ambient)
    cfg.cross_account_role_arn = ROLE
    assert mode_from_settings(cfg) == Delegated(ROLE)


def test_ensure_ready_delegates_once():
    clock = Clock()
    mgr, broker = _delegated(clock)
    mgr.ensure_ready()
    mgr.ensure_ready()
    assert mgr.is_ready
    assert broker.assume_calls == 1
    # 初始身份确认 + 委托后的身份确认
    assert broker.who_calls[0] is None
    assert broker.who_calls[1] == mgr.credential
    creds = mgr.current_credentials()
    assert creds.access_key == "ASIA0001"
    assert creds.token == "token-1"


def test_refresh_within_margin_triggers_exchange():
    clock = Clock()
    mgr, broker = _delegated(clock, lifetime=timedelta(minutes=4))
    mgr.ensure_ready()
    mgr.refresh_if_needed(False)
    assert broker.assume_calls == 2
    assert mgr.current_credentials().access_key == "ASIA0002"


def test_refresh_outside_margin_is_noop():
    clock = Clock()
    mgr, broker = _delegated(clock, lifetime=timedelta(minutes=10))
    mgr.ensure_ready()
    mgr.refresh_if_needed(False)
    assert broker.assume_calls == 1


def test_refresh_after_time_passes():
    clock = Clock()
    mgr, broker = _delegated(clock)
    mgr.ensure_ready()
    clock.now += timedelta(minutes=56)
    mgr.ensure_ready()
    assert broker.assume_calls == 2


def test_force_refresh_and_no_credential_yet():
    clock = Clock()
    mgr, broker = _delegated(clock)
    mgr.refresh_if_needed(False)
    assert broker.assume_calls == 1
    mgr.refresh_if_needed(True)
    assert broker.assume_calls == 2


def test_concurrent_forced_refresh_single_exchange():
    clock = Clock()
    mgr, broker = _delegated(clock)
    mgr.ensure_ready()
    before = broker.assume_calls
    broker.entered = threading.Event()
    broker.release = threading.Event()

    first = threading.Thread(target=mgr.refresh_if_needed, args=(True,))
    first.start()
    assert broker.entered.wait(5)
    second = threading.Thread(target=mgr.refresh_if_needed, args=(True,))
    second.start()
    time.sleep(0.1)
    broker.release.set()
    first.join(5)
    second.join(5)

    assert broker.assume_calls - before == 1
    assert mgr.current_credentials().access_key == "ASIA0002"


def test_broker_unavailable_leaves_manager_unready_until_retry():
    clock = Clock()
    mgr, broker = _delegated(clock)
    broker.error = BrokerUnavailable("timeout")
    with pytest.raises(BrokerUnavailable):
        mgr.ensure_ready()
    assert not mgr.is_ready
    with pytest.raises(InitializationFailed):
        mgr.current_credentials()

    broker.error = None
    mgr.ensure_ready()
    assert mgr.is_ready


def test_delegation_denied_is_initialization_failure():
    clock = Clock()
    mgr, broker = _delegated(clock)
    broker.error = DelegationDenied("not authorized")
    with pytest.raises(InitializationFailed) as exc:
        mgr.ensure_ready()
    assert exc.value.code == "DELEGATION_DENIED"
    assert not mgr.is_ready


def test_unexpected_setup_error_wrapped():
    clock = Clock()
    mgr, broker = _delegated(clock)
    broker.error = RuntimeError("boom")
    with pytest.raises(InitializationFailed) as exc:
        mgr.ensure_ready()
    assert isinstance(exc.value.__cause__, RuntimeError)


def test_failed_refresh_blocks_calls():
    clock = Clock()
    mgr, broker = _delegated(clock)
    mgr.ensure_ready()
    broker.error = BrokerUnavailable("down")
    with pytest.raises(BrokerUnavailable):
        mgr.refresh_if_needed(True)
    with pytest.raises(InitializationFailed):
        mgr.current_credentials()


class FakeSession:
    def __init__(self, creds):
        self._creds = creds

    def get_credentials(self):
        return self._creds


def test_ambient_mode_uses_default_chain():
    clock = Clock()
    broker = FakeBroker(clock)
    mgr = CredentialManager(
        Ambient(),
        broker,
        SettingsStub(),
        clock=clock,
        session_factory=lambda **kw: FakeSession(Credentials("AKIDAMBIENT", "secret")),
    )
    mgr.ensure_ready()
    mgr.refresh_if_needed(True)
    assert broker.assume_calls == 0
    assert mgr.current_credentials().access_key == "AKIDAMBIENT"


def test_ambient_mode_without_credentials_fails():
    clock = Clock()
    mgr = CredentialManager(
        Ambient(),
        FakeBroker(clock),
        SettingsStub(),
        clock=clock,
        session_factory=lambda **kw: FakeSession(None),
    )
    with pytest.raises(InitializationFailed) as exc:
        mgr.ensure_ready()
    assert exc.value.code == "NO_AMBIENT_CREDENTIALS"
    assert not mgr.is_ready


def test_unexpected_refresh_error_wrapped_and_unready():
    clock = Clock()
    mgr, broker = _delegated(clock)
    mgr.ensure_ready()
    broker.error = RuntimeError("boom")
    with pytest.raises(InitializationFailed) as exc:
        mgr.refresh_if_needed(True)
    assert isinstance(exc.value.__cause__, RuntimeError)
    assert not mgr.is_ready
    with pytest.raises(InitializationFailed):
        mgr.current_credentials()
