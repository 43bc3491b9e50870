"""
core/totp.py — Time-Based One-Time Codes
==========================================
RFC 6238 codes bound to a UMID's secret. Pure functions of
(secret, time step): nothing here touches the database, and nothing here
logs a secret or a code.

The clock is injectable everywhere (any zero-arg callable returning epoch
seconds) so tests can pin time:

    totp_engine.current_code(secret, clock=lambda: 1_700_000_000)
"""

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
import struct
import time
from enum import Enum
from typing import Callable, Optional
from urllib.parse import quote, urlencode

from config import settings

logger = logging.getLogger("umid.totp")

Clock = Callable[[], float]


class CodeCheck(str, Enum):
    valid = "valid"
    malformed = "malformed"     # empty, non-numeric, wrong length
    expired = "expired"         # matches a recent step outside the tolerance window
    invalid = "invalid"         # matches nothing


class TOTPEngine:
    """
    Singleton TOTP engine — used across the app via:
        from core.totp import totp_engine
    """

    def __init__(
        self,
        digits: Optional[int] = None,
        period: Optional[int] = None,
        algorithm: Optional[str] = None,
        secret_bytes: Optional[int] = None,
    ):
        self.digits = digits or settings.TOTP_DIGITS
        self.period = period or settings.TOTP_PERIOD_SECONDS
        self.algorithm = (algorithm or settings.TOTP_ALGORITHM).upper()
        self.secret_bytes = secret_bytes or settings.TOTP_SECRET_BYTES
        if self.secret_bytes < 20:
            raise ValueError("TOTP secrets need at least 160 bits of entropy")
        self._digest = getattr(hashlib, self.algorithm.lower())

    # ── Secrets ────────────────────────────────────────────────────────────
    def generate_secret(self) -> str:
        """Fresh random secret, base32 encoded (authenticator-app friendly)."""
        return base64.b32encode(secrets.token_bytes(self.secret_bytes)).decode().rstrip("=")

    @staticmethod
    def _decode_secret(secret: str) -> bytes:
        padded = secret.strip().upper() + "=" * (-len(secret.strip()) % 8)
        return base64.b32decode(padded)

    # ── Codes ──────────────────────────────────────────────────────────────
    def time_step(self, clock: Clock = time.time) -> int:
        return int(clock() // self.period)

    def seconds_remaining(self, clock: Clock = time.time) -> int:
        """Seconds until the current code rolls over."""
        now = clock()
        return int(self.period - (now % self.period))

    def code_at_step(self, secret: str, step: int) -> str:
        """HOTP(secret, step) per RFC 4226, truncated to `digits`."""
        return self._hotp(self._decode_secret(secret), step)

    def _hotp(self, key: bytes, step: int) -> str:
        mac = hmac.new(key, struct.pack(">Q", step), self._digest).digest()
        offset = mac[-1] & 0x0F
        value = struct.unpack(">I", mac[offset:offset + 4])[0] & 0x7FFFFFFF
        return str(value % (10 ** self.digits)).zfill(self.digits)

    def current_code(self, secret: str, clock: Clock = time.time) -> str:
        """Code for the current step. For display / QR only — never stored."""
        return self.code_at_step(secret, self.time_step(clock))

    # ── Verification ───────────────────────────────────────────────────────
    def check(
        self,
        secret: str,
        presented_code,
        clock: Clock = time.time,
        tolerance_steps: int = 1,
    ) -> CodeCheck:
        """
        Classify a presented code. Never raises: anything unexpected
        (corrupt or empty secret, odd input types) comes back as a rejection.
        Steps before the epoch are never matched.
        """
        if not isinstance(presented_code, str):
            return CodeCheck.malformed
        code = presented_code.strip()
        if len(code) != self.digits or not (code.isascii() and code.isdigit()):
            return CodeCheck.malformed

        try:
            key = self._decode_secret(secret)
            if not key:
                logger.warning("TOTP check failed closed: empty secret")
                return CodeCheck.invalid
            tolerance = max(0, int(tolerance_steps))
            step = self.time_step(clock)
            for candidate in range(step - tolerance, step + tolerance + 1):
                if candidate >= 0 and hmac.compare_digest(self._hotp(key, candidate), code):
                    return CodeCheck.valid
            lookback = settings.TOTP_EXPIRED_LOOKBACK_STEPS
            for candidate in range(step - tolerance - 1, step - tolerance - lookback - 1, -1):
                if candidate >= 0 and hmac.compare_digest(self._hotp(key, candidate), code):
                    return CodeCheck.expired
        except (binascii.Error, struct.error, ValueError, TypeError, AttributeError, OverflowError):
            logger.warning("TOTP check failed closed: stored secret or clock unusable")
            return CodeCheck.invalid
        return CodeCheck.invalid

    def verify(
        self,
        secret: str,
        presented_code,
        clock: Clock = time.time,
        tolerance_steps: int = 1,
    ) -> bool:
        """True only for a well-formed code within ±tolerance_steps."""
        return self.check(secret, presented_code, clock, tolerance_steps) is CodeCheck.valid

    # ── Provisioning ───────────────────────────────────────────────────────
    def provisioning_uri(self, secret: str, label: str, issuer: Optional[str] = None) -> str:
        """otpauth:// URI an authenticator app can scan."""
        issuer = issuer or settings.TOTP_ISSUER
        params = urlencode({
            "secret": secret,
            "issuer": issuer,
            "algorithm": self.algorithm,
            "digits": self.digits,
            "period": self.period,
        })
        return f"otpauth://totp/{quote(issuer)}:{quote(label)}?{params}"


# Singleton instance — import this everywhere
totp_engine = TOTPEngine()
