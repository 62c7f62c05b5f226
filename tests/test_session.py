from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import allure
import httpx
import pytest
from support import FAKE_WORKER_COMMAND, TEST_SECRET

from spider_queue.orchestrator.errors import ConfigurationError
from spider_queue.orchestrator.models import (
    CredentialInvalidNotice,
    CredentialUpdatedNotice,
    CredentialValidation,
    UserInfo,
)
from spider_queue.orchestrator.session import (
    EXPIRED_MESSAGE,
    SESSION_KEY,
    CredentialCipher,
    HttpCredentialVerifier,
    SessionManager,
    WorkerCredentialVerifier,
)
from spider_queue.orchestrator.settings_repository import SettingsRepository
from spider_queue.storage.alembic_runner import upgrade_head

pytestmark = [
    allure.epic("Credentials"),
    allure.feature("Session Manager"),
]

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class StubVerifier:
    def __init__(self, result: CredentialValidation) -> None:
        self.result = result
        self.calls: list[str] = []

    def verify(self, credential: str) -> CredentialValidation:
        self.calls.append(credential)
        return self.result


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[SettingsRepository]:
    db_path = tmp_path / "session.db"
    upgrade_head(db_path)
    repo = SettingsRepository(db_path)
    yield repo
    repo.close()


def _session(
    repository: SettingsRepository,
    *,
    verifier: StubVerifier | None = None,
    clock: FrozenClock | None = None,
    secret: str = TEST_SECRET,
) -> SessionManager:
    return SessionManager(
        repository,
        cipher=CredentialCipher(secret),
        verifier=verifier,
        clock=clock or FrozenClock(NOW),
    )


def test_credential_is_trimmed_and_encrypted_at_rest(repository: SettingsRepository) -> None:
    session = _session(repository)
    updates: list[CredentialUpdatedNotice] = []
    session.subscribe_updated(updates.append)

    session.set_credential("  a1=secret-value; web_session=xyz \n")

    assert session.get_credential() == "a1=secret-value; web_session=xyz"
    stored = repository.get(SESSION_KEY)
    assert "secret-value" not in stored["cookie"]
    assert session.is_valid()
    assert updates == [CredentialUpdatedNotice(has_credential=True)]

    session.set_credential("   ")
    assert repository.get(SESSION_KEY) is None
    assert session.get_credential() == ""
    assert not session.is_valid()
    assert updates[-1] == CredentialUpdatedNotice(has_credential=False)


def test_credential_expires_at_deadline(repository: SettingsRepository) -> None:
    clock = FrozenClock(NOW)
    session = _session(repository, clock=clock)
    session.set_credential("cookie=1", valid_until=NOW + timedelta(hours=1))

    notices: list[CredentialInvalidNotice] = []
    session.subscribe_invalid(notices.append)

    assert session.is_valid()
    assert notices == []
    clock.now = NOW + timedelta(hours=1)
    assert not session.is_valid()
    assert not session.is_valid()

    assert notices == [CredentialInvalidNotice(message=EXPIRED_MESSAGE, source="expiry")]
    status = session.status()
    assert status.valid_until == NOW + timedelta(hours=1)
    assert status.invalidated
    assert status.invalid_reason == EXPIRED_MESSAGE
    assert not status.valid

    session.set_credential("cookie=2", valid_until=NOW + timedelta(hours=2))
    assert session.is_valid()


def test_invalidate_notifies_only_on_transition(repository: SettingsRepository) -> None:
    session = _session(repository)
    notices: list[CredentialInvalidNotice] = []
    session.subscribe_invalid(notices.append)
    session.set_credential("cookie=1")

    assert session.invalidate("expired upstream", source="worker")
    assert not session.invalidate("expired again", source="worker")

    assert notices == [CredentialInvalidNotice(message="expired upstream", source="worker")]
    status = session.status()
    assert status.invalidated
    assert status.invalid_reason == "expired upstream"
    assert not status.valid

    session.set_credential("cookie=2")
    assert session.is_valid()
    assert not session.status().invalidated


def test_status_masks_credential(repository: SettingsRepository) -> None:
    session = _session(repository)
    assert not session.status().has_credential

    session.set_credential("a1=0123456789abcdef")
    status = session.status()

    assert status.has_credential
    assert status.masked == "a1=0…cdef"
    assert "0123456789" not in status.masked


def test_credential_unreadable_after_secret_change(repository: SettingsRepository) -> None:
    _session(repository).set_credential("cookie=1")
    other = _session(repository, secret="another-secret")

    assert not other.is_valid()
    assert other.status().masked == "<undecryptable>"
    with pytest.raises(ConfigurationError):
        other.get_credential()


def test_validate_caches_user_info_on_success(repository: SettingsRepository) -> None:
    info = UserInfo(user_id="u-9", nickname="reader", red_id="r-9")
    verifier = StubVerifier(CredentialValidation(valid=True, message="ok", user_info=info))
    session = _session(repository, verifier=verifier)
    session.set_credential("cookie=1")

    result = session.validate()

    assert result.valid
    assert verifier.calls == ["cookie=1"]
    assert session.status().user_info == info
    assert session.is_valid()


def test_validate_failure_invalidates_stored_credential(repository: SettingsRepository) -> None:
    verifier = StubVerifier(CredentialValidation(valid=False, message="rejected"))
    session = _session(repository, verifier=verifier)
    notices: list[CredentialInvalidNotice] = []
    session.subscribe_invalid(notices.append)
    session.set_credential("cookie=1")

    # Checking a candidate value leaves the stored credential alone.
    assert not session.validate("other=2").valid
    assert session.is_valid()

    assert not session.validate().valid
    assert not session.is_valid()
    assert notices == [CredentialInvalidNotice(message="rejected", source="validation")]


def test_validate_without_verifier_or_credential(repository: SettingsRepository) -> None:
    with pytest.raises(ConfigurationError):
        _session(repository).validate()

    verifier = StubVerifier(CredentialValidation(valid=True, message="ok"))
    result = _session(repository, verifier=verifier).validate()
    assert not result.valid
    assert verifier.calls == []


def test_http_verifier_accepts_user_payload() -> None:
    seen_cookies: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen_cookies.append(request.headers["Cookie"])
        return httpx.Response(
            200,
            json={
                "valid": True,
                "message": "welcome",
                "userInfo": {"userId": "u-1", "nickname": "tester", "redId": "r-1"},
            },
        )

    verifier = HttpCredentialVerifier(
        "https://validator.example.com/me",
        transport=httpx.MockTransport(_handler),
    )
    result = verifier.verify("a1=abc")

    assert seen_cookies == ["a1=abc"]
    assert result == CredentialValidation(
        valid=True,
        message="welcome",
        user_info=UserInfo(user_id="u-1", nickname="tester", red_id="r-1"),
    )


@pytest.mark.parametrize(
    ("response", "message"),
    [
        (httpx.Response(401), "Credential rejected (HTTP 401)"),
        (httpx.Response(500), "Validation endpoint returned HTTP 500"),
        (httpx.Response(200, text="<html>"), "Validation response is not JSON"),
    ],
)
def test_http_verifier_rejections(response: httpx.Response, message: str) -> None:
    verifier = HttpCredentialVerifier(
        "https://validator.example.com/me",
        transport=httpx.MockTransport(lambda _request: response),
    )

    assert verifier.verify("a1=abc") == CredentialValidation(valid=False, message=message)


def test_http_verifier_reports_transport_errors() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    verifier = HttpCredentialVerifier(
        "https://validator.example.com/me",
        transport=httpx.MockTransport(_handler),
    )
    result = verifier.verify("a1=abc")

    assert not result.valid
    assert result.message.startswith("Validation request failed")


def test_worker_verifier_reads_last_validation_result() -> None:
    verifier = WorkerCredentialVerifier(FAKE_WORKER_COMMAND, timeout_seconds=15)

    accepted = verifier.verify("good-cookie")
    rejected = verifier.verify("stale-cookie")

    assert accepted.valid
    assert accepted.user_info == UserInfo(user_id="u-1", nickname="tester", red_id="r-1")
    assert rejected == CredentialValidation(valid=False, message="cookie rejected")


def test_worker_verifier_reports_missing_result(tmp_path: Path) -> None:
    verifier = WorkerCredentialVerifier(str(tmp_path / "missing-worker"), timeout_seconds=5)

    result = verifier.verify("good-cookie")

    assert not result.valid
    assert result.message.startswith("Validator failed to start")
