# Overview: One-time passcodes for customer phone verification with an injected clock and store.

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..errors import PreconditionFailed, ValidationError

"""
OTP semantics:
- Codes are 6 digits from secrets, stored only as sha256 digests.
- A session lives ttl_seconds; a new code for the same phone needs resend_cooldown_seconds.
- Each wrong guess counts; after max_attempts the session is dropped and a new code is required.
- Delivery (WhatsApp) is the caller's job and happens after issue() returns.
"""

Clock = Callable[[], float]


@dataclass
class OtpSession:
    code_hash: str
    expires_at: float
    resend_available_at: float
    attempts: int = 0


class InMemoryOtpStore:
    """Thread-safe dict store. Swap for a shared cache when running several workers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: dict[str, OtpSession] = {}

    def get(self, key: str) -> Optional[OtpSession]:
        with self._lock:
            return self._sessions.get(key)

    def put(self, key: str, session: OtpSession) -> None:
        with self._lock:
            self._sessions[key] = session

    def delete(self, key: str) -> None:
        with self._lock:
            self._sessions.pop(key, None)

    def purge(self, now: float) -> int:
        with self._lock:
            stale = [k for k, s in self._sessions.items() if s.expires_at <= now]
            for k in stale:
                del self._sessions[k]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


def normalize_phone(raw: str) -> str:
    """Indonesian WhatsApp numbers: 08xx / +628xx / 628xx -> 628xx."""
    digits = re.sub(r"\D", "", raw or "")
    if digits.startswith("0"):
        digits = "62" + digits[1:]
    elif digits.startswith("8"):
        digits = "62" + digits
    if not digits.startswith("62") or not (10 <= len(digits) <= 15):
        raise ValidationError("Invalid WhatsApp number", {"field": "whatsapp_number"})
    return digits


def _hash(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class OtpService:
    def __init__(
        self,
        *,
        clock: Clock = time.time,
        store: InMemoryOtpStore | None = None,
        ttl_seconds: int = 300,
        max_attempts: int = 5,
        resend_cooldown_seconds: int = 60,
    ):
        self.clock = clock
        self.store = store if store is not None else InMemoryOtpStore()
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self.resend_cooldown_seconds = resend_cooldown_seconds
        self._running = False

    @classmethod
    def from_config(cls, config, **kwargs) -> "OtpService":
        return cls(
            ttl_seconds=int(config.get("OTP_TTL_SECONDS", 300)),
            max_attempts=int(config.get("OTP_MAX_ATTEMPTS", 5)),
            **kwargs,
        )

    def init(self) -> None:
        self._running = True

    def shutdown(self) -> None:
        self._running = False
        self.store.clear()

    @property
    def running(self) -> bool:
        return self._running

    def _require_running(self) -> None:
        if not self._running:
            raise PreconditionFailed("OTP service is not running")

    def issue(self, phone: str) -> dict:
        """Create a code for the phone. Returns the plain code for the delivery channel."""
        self._require_running()
        key = normalize_phone(phone)
        now = self.clock()
        self.store.purge(now)

        previous = self.store.get(key)
        if previous is not None and previous.resend_available_at > now:
            raise PreconditionFailed(
                "A code was sent recently; try again shortly",
                {"retry_in_seconds": int(previous.resend_available_at - now) + 1},
            )

        code = f"{secrets.randbelow(1_000_000):06d}"
        self.store.put(key, OtpSession(
            code_hash=_hash(code),
            expires_at=now + self.ttl_seconds,
            resend_available_at=now + self.resend_cooldown_seconds,
        ))
        return {
            "whatsapp_number": key,
            "code": code,
            "expires_in_seconds": self.ttl_seconds,
            "resend_in_seconds": self.resend_cooldown_seconds,
        }

    def verify(self, phone: str, code: str) -> bool:
        """
        True on a match (the session is consumed). False for a wrong, missing or expired code.
        Raises PreconditionFailed once the attempt budget is spent.
        """
        self._require_running()
        if not re.fullmatch(r"\d{6}", (code or "").strip()):
            raise ValidationError("OTP code must be 6 digits", {"field": "otp_code"})
        key = normalize_phone(phone)
        now = self.clock()

        session = self.store.get(key)
        if session is None or session.expires_at <= now:
            self.store.delete(key)
            return False

        if hmac.compare_digest(session.code_hash, _hash(code.strip())):
            self.store.delete(key)
            return True

        session.attempts += 1
        if session.attempts >= self.max_attempts:
            self.store.delete(key)
            raise PreconditionFailed("Too many wrong codes; request a new one", {"attempts": session.attempts})
        self.store.put(key, session)
        return False

    def purge_expired(self) -> int:
        return self.store.purge(self.clock())
