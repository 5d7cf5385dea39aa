"""One-time passcode challenges.

A record moves ``issued -> verified | expired | exhausted`` (or ``superseded``
when a newer challenge for the same email replaces it) and never comes back.
Attempts are incremented in the store before the candidate code is compared,
so concurrent guesses can never get more than ``max_attempts`` comparisons.
"""

from __future__ import annotations

import hashlib
import hmac
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from feastid.config import Settings
from feastid.logging import email_digest, get_logger
from feastid.storage.models import OTPRecord, OTPStatus

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OTPError(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ATTEMPTS_EXCEEDED = "attempts_exceeded"
    INVALID_CODE = "invalid_code"


@dataclass(frozen=True)
class OTPChallenge:
    otp_id: str
    code: str
    email: str
    expires_at: datetime


@dataclass(frozen=True)
class OTPVerification:
    valid: bool
    error: Optional[OTPError] = None
    attempts: int = 0
    email: Optional[str] = None


# Terminal states map back onto the error a caller would have seen when entering them
_TERMINAL_ERRORS = {
    OTPStatus.EXPIRED: OTPError.EXPIRED,
    OTPStatus.EXHAUSTED: OTPError.ATTEMPTS_EXCEEDED,
    OTPStatus.VERIFIED: OTPError.NOT_FOUND,
    OTPStatus.SUPERSEDED: OTPError.NOT_FOUND,
}


class OTPEngine:
    def __init__(
        self,
        store,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        code_factory: Optional[Callable[[int], str]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or _utcnow
        self._code_factory = code_factory or self._random_code
        self._hash_key = settings.jwt_secret.encode()

    @staticmethod
    def _random_code(length: int) -> str:
        return f"{secrets.randbelow(10 ** length):0{length}d}"

    def _hash_code(self, otp_id: str, code: str) -> str:
        # bind the digest to the record so hashes cannot be replayed across challenges
        message = f"{otp_id}:{code}".encode()
        return hmac.new(self._hash_key, message, hashlib.sha256).hexdigest()

    def issue(self, email: str) -> OTPChallenge:
        """Create a fresh challenge; any live challenge for ``email`` is superseded."""
        length = self.settings.otp_length
        code = self._code_factory(length)
        if len(code) != length or not code.isdigit():
            raise ValueError("generated passcode has the wrong shape")
        superseded = self.store.invalidate_otp_records_for_email(email)
        now = self._clock()
        expires_at = now + timedelta(minutes=self.settings.otp_ttl_minutes)
        record = OTPRecord.new(
            email,
            "",
            expires_at=expires_at,
            max_attempts=self.settings.otp_max_attempts,
        )
        record.code_hash = self._hash_code(record.id, code)
        record.created_at = now
        stored = self.store.create_otp_record(record)
        logger.info(
            "otp_issued",
            otp_id=stored.id,
            email_hash=email_digest(email),
            superseded=superseded,
        )
        return OTPChallenge(
            otp_id=stored.id, code=code, email=stored.email, expires_at=expires_at
        )

    def verify(self, otp_id: str, code: str) -> OTPVerification:
        record = self.store.get_otp_record(otp_id) if otp_id else None
        if record is None:
            return OTPVerification(valid=False, error=OTPError.NOT_FOUND)
        if not record.is_live:
            return OTPVerification(
                valid=False,
                error=_TERMINAL_ERRORS.get(record.status, OTPError.NOT_FOUND),
                attempts=record.attempts,
            )

        if self._clock() >= record.expires_at:
            self.store.mark_otp_consumed(record.id, OTPStatus.EXPIRED)
            logger.info("otp_expired", otp_id=record.id)
            return OTPVerification(
                valid=False, error=OTPError.EXPIRED, attempts=record.attempts
            )

        if record.attempts >= record.max_attempts:
            self.store.mark_otp_consumed(record.id, OTPStatus.EXHAUSTED)
            logger.warning("otp_attempts_exhausted", otp_id=record.id)
            return OTPVerification(
                valid=False, error=OTPError.ATTEMPTS_EXCEEDED, attempts=record.attempts
            )

        attempts = self.store.increment_otp_attempts(record.id)
        if attempts is None:
            # consumed by a concurrent request between the read and the increment
            return OTPVerification(valid=False, error=OTPError.NOT_FOUND)
        if attempts > record.max_attempts:
            self.store.mark_otp_consumed(record.id, OTPStatus.EXHAUSTED)
            logger.warning("otp_attempts_exhausted", otp_id=record.id)
            return OTPVerification(
                valid=False, error=OTPError.ATTEMPTS_EXCEEDED, attempts=attempts
            )

        candidate = self._hash_code(record.id, code if isinstance(code, str) else "")
        if not hmac.compare_digest(candidate, record.code_hash):
            logger.info("otp_mismatch", otp_id=record.id, attempts=attempts)
            return OTPVerification(
                valid=False, error=OTPError.INVALID_CODE, attempts=attempts
            )

        if not self.store.mark_otp_consumed(record.id, OTPStatus.VERIFIED):
            return OTPVerification(
                valid=False, error=OTPError.NOT_FOUND, attempts=attempts
            )
        logger.info("otp_verified", otp_id=record.id, attempts=attempts)
        return OTPVerification(valid=True, attempts=attempts, email=record.email)

    def resend_available_in(self, email: str) -> int:
        """Seconds until another challenge may be sent to ``email`` (0 when allowed)."""
        latest = self.store.latest_otp_record_for_email(email)
        if latest is None:
            return 0
        ready_at = latest.created_at + timedelta(
            seconds=self.settings.otp_resend_cooldown_seconds
        )
        remaining = (ready_at - self._clock()).total_seconds()
        return max(0, math.ceil(remaining))

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_otp_records(self._clock())
        if removed:
            logger.info("otp_sweep_completed", removed=removed)
        return removed
