"""Credential (cookie) storage, validity tracking and verification."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import subprocess
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

import httpx
from cryptography.fernet import Fernet, InvalidToken

from spider_queue.orchestrator.backend.process import build_worker_argv, terminate_process
from spider_queue.orchestrator.errors import ConfigurationError
from spider_queue.orchestrator.events import EventChannel, Subscription
from spider_queue.orchestrator.models import (
    CredentialInvalidNotice,
    CredentialStatus,
    CredentialUpdatedNotice,
    CredentialValidation,
    UserInfo,
)
from spider_queue.orchestrator.settings_repository import SettingsRepository
from spider_queue.storage.common import to_utc_aware_datetime, utc_now

logger = logging.getLogger(__name__)

SESSION_KEY = "session"
VALIDATION_RESULT_TYPE = "validation_result"
VALIDATE_COOKIE_ARG = "validate-cookie"
EXPIRED_MESSAGE = "Credential expired"


class CredentialCipher:
    """Fernet encryption with a key derived from the configured secret."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ConfigurationError("Credential secret key is empty.")
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            return ""
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken as error:
            raise ConfigurationError(
                "Stored credential cannot be decrypted with the current secret key; "
                "set the cookie again.",
            ) from error


class CredentialVerifier(Protocol):
    def verify(self, credential: str) -> CredentialValidation: ...


class WorkerCredentialVerifier:
    """Ask the worker itself whether a credential is accepted.

    The worker runs with a `validate-cookie` argument, reads the credential
    from stdin and prints JSON lines; the last `validation_result` line wins.
    """

    def __init__(
        self,
        command: str,
        *,
        timeout_seconds: float = 30.0,
        cwd: str | None = None,
    ) -> None:
        self._command = command
        self._timeout_seconds = timeout_seconds
        self._cwd = cwd

    def verify(self, credential: str) -> CredentialValidation:
        argv = build_worker_argv(self._command, VALIDATE_COOKIE_ARG)
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                cwd=self._cwd,
            )
        except OSError as error:
            logger.warning("Credential validator failed to start: %s", error)
            return CredentialValidation(valid=False, message=f"Validator failed to start: {error}")

        try:
            stdout, stderr = process.communicate(credential + "\n", timeout=self._timeout_seconds)
        except subprocess.TimeoutExpired:
            terminate_process(process)
            return CredentialValidation(
                valid=False,
                message=f"Validation timed out after {self._timeout_seconds:g}s",
            )

        result = _last_validation_result(stdout)
        if result is None:
            detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
            message = f"Validator returned no result (exit code {process.returncode})"
            return CredentialValidation(
                valid=False,
                message=f"{message}: {detail}" if detail else message,
            )
        return _validation_from_payload(result)


class HttpCredentialVerifier:
    """Check the credential against an HTTP endpoint.

    The endpoint receives the credential as the Cookie header and answers
    with the same JSON shape as the worker's `validation_result` line.
    401 and 403 responses mean the credential was rejected.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 10.0))
        self._transport = transport

    def verify(self, credential: str) -> CredentialValidation:
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.get(self._url, headers={"Cookie": credential})
        except httpx.TimeoutException:
            logger.warning("Timeout validating credential against %s", self._url)
            return CredentialValidation(valid=False, message="Validation request timed out")
        except httpx.HTTPError as exc:
            logger.warning("HTTP error validating credential against %s: %s", self._url, exc)
            return CredentialValidation(valid=False, message=f"Validation request failed: {exc}")

        if response.status_code in {401, 403}:
            return CredentialValidation(
                valid=False,
                message=f"Credential rejected (HTTP {response.status_code})",
            )
        if not response.is_success:
            return CredentialValidation(
                valid=False,
                message=f"Validation endpoint returned HTTP {response.status_code}",
            )
        try:
            payload = response.json()
        except ValueError:
            return CredentialValidation(valid=False, message="Validation response is not JSON")
        if not isinstance(payload, dict):
            return CredentialValidation(
                valid=False,
                message="Validation response is not a JSON object",
            )
        return _validation_from_payload(payload)


class SessionManager:
    """Single stored credential with expiry, invalidation and user info.

    Thread-safe: worker readers invalidate while the CLI thread may set or
    validate. Listeners are notified outside the internal lock.
    """

    def __init__(
        self,
        repository: SettingsRepository,
        *,
        cipher: CredentialCipher,
        verifier: CredentialVerifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._cipher = cipher
        self._verifier = verifier
        self._clock = clock
        self._lock = threading.Lock()
        self.invalid_events: EventChannel[CredentialInvalidNotice] = EventChannel(
            "credential-invalid",
        )
        self.updated_events: EventChannel[CredentialUpdatedNotice] = EventChannel(
            "credential-updated",
        )

    def subscribe_invalid(
        self,
        listener: Callable[[CredentialInvalidNotice], None],
    ) -> Subscription:
        return self.invalid_events.subscribe(listener)

    def subscribe_updated(
        self,
        listener: Callable[[CredentialUpdatedNotice], None],
    ) -> Subscription:
        return self.updated_events.subscribe(listener)

    def set_credential(self, value: str, valid_until: datetime | None = None) -> None:
        """Store a trimmed credential; an empty value clears the session."""

        credential = value.strip()
        with self._lock:
            if not credential:
                self._repository.delete(SESSION_KEY)
            else:
                self._repository.set(
                    SESSION_KEY,
                    {
                        "cookie": self._cipher.encrypt(credential),
                        "validUntil": (
                            to_utc_aware_datetime(valid_until).isoformat()
                            if valid_until is not None
                            else None
                        ),
                        "invalidated": False,
                        "invalidReason": None,
                        "userInfo": None,
                    },
                )
        logger.info("Credential %s", "updated" if credential else "cleared")
        self.updated_events.publish(
            CredentialUpdatedNotice(has_credential=bool(credential), valid_until=valid_until),
        )

    def clear(self) -> None:
        self.set_credential("")

    def get_credential(self) -> str:
        with self._lock:
            record = self._load()
        return self._cipher.decrypt(str(record.get("cookie") or ""))

    def is_valid(self) -> bool:
        """Usable credential check; the first check past the deadline invalidates it."""

        expired = False
        with self._lock:
            record = self._load()
            if not record.get("cookie") or record.get("invalidated"):
                return False
            deadline = _parse_deadline(record.get("validUntil"))
            if deadline is not None and deadline <= self._clock():
                record["invalidated"] = True
                record["invalidReason"] = EXPIRED_MESSAGE
                self._repository.set(SESSION_KEY, record)
                expired = True
        if expired:
            logger.warning("Credential invalidated (expiry): %s", EXPIRED_MESSAGE)
            self.invalid_events.publish(
                CredentialInvalidNotice(message=EXPIRED_MESSAGE, source="expiry"),
            )
            return False
        try:
            return bool(self._cipher.decrypt(str(record["cookie"])))
        except ConfigurationError as error:
            logger.warning("%s", error)
            return False

    def invalidate(self, reason: str, *, source: str = "session") -> bool:
        """Mark the credential unusable; notifies only on the valid→invalid edge."""

        with self._lock:
            record = self._load()
            if record.get("invalidated"):
                return False
            record["invalidated"] = True
            record["invalidReason"] = reason
            self._repository.set(SESSION_KEY, record)
        logger.warning("Credential invalidated (%s): %s", source, reason)
        self.invalid_events.publish(CredentialInvalidNotice(message=reason, source=source))
        return True

    def validate(self, value: str | None = None) -> CredentialValidation:
        """Verify `value`, or the stored credential when omitted.

        Only the stored credential updates session state: success caches the
        user info, failure invalidates.
        """

        if self._verifier is None:
            raise ConfigurationError("No credential verifier is configured.")
        candidate = value.strip() if value is not None else self.get_credential()
        if not candidate:
            return CredentialValidation(valid=False, message="No credential set")

        result = self._verifier.verify(candidate)
        if value is not None:
            return result
        if result.valid:
            with self._lock:
                record = self._load()
                if record:
                    record["userInfo"] = (
                        _user_info_payload(result.user_info) if result.user_info else None
                    )
                    self._repository.set(SESSION_KEY, record)
        else:
            self.invalidate(result.message, source="validation")
        return result

    def status(self) -> CredentialStatus:
        valid = self.is_valid()
        with self._lock:
            record = self._load()
        has_credential = bool(record.get("cookie"))
        masked = ""
        if has_credential:
            try:
                masked = _mask(self._cipher.decrypt(str(record["cookie"])))
            except ConfigurationError:
                masked = "<undecryptable>"
        raw_user = record.get("userInfo")
        return CredentialStatus(
            has_credential=has_credential,
            valid=valid,
            masked=masked,
            valid_until=_parse_deadline(record.get("validUntil")),
            invalidated=bool(record.get("invalidated")),
            invalid_reason=record.get("invalidReason"),
            user_info=_user_info_from_payload(raw_user) if isinstance(raw_user, dict) else None,
        )

    def _load(self) -> dict[str, Any]:
        stored = self._repository.get(SESSION_KEY)
        return dict(stored) if isinstance(stored, dict) else {}


def _last_validation_result(stdout: str) -> dict[str, Any] | None:
    result: dict[str, Any] | None = None
    for line in stdout.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and payload.get("type") == VALIDATION_RESULT_TYPE:
            result = payload
    return result


def _validation_from_payload(payload: dict[str, Any]) -> CredentialValidation:
    raw_user = payload.get("userInfo")
    return CredentialValidation(
        valid=bool(payload.get("valid")),
        message=str(payload.get("message") or ""),
        user_info=_user_info_from_payload(raw_user) if isinstance(raw_user, dict) else None,
    )


def _user_info_from_payload(payload: dict[str, Any]) -> UserInfo:
    return UserInfo(
        user_id=str(payload.get("userId") or ""),
        nickname=str(payload.get("nickname") or ""),
        red_id=str(payload.get("redId") or ""),
        avatar=str(payload.get("avatar") or ""),
    )


def _user_info_payload(info: UserInfo) -> dict[str, str]:
    return {
        "userId": info.user_id,
        "nickname": info.nickname,
        "redId": info.red_id,
        "avatar": info.avatar,
    }


def _parse_deadline(raw: object) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    return to_utc_aware_datetime(datetime.fromisoformat(raw))


def _mask(credential: str) -> str:
    if len(credential) <= 8:
        return "*" * len(credential)
    return f"{credential[:4]}…{credential[-4:]}"
