"""
core/crypto.py — Secrets, Tokens & Hashes
===========================================
All symmetric crypto the registry does, behind one engine:

- TOTP secrets are Fernet-encrypted before they touch the credential store
- UMID numbers are derived from SHA-256 digests
- JWTs identify callers (api/deps.py) and carry post-access grants
- Rotating QR tokens are Fernet tokens whose embedded timestamp is their age

Nothing outside this module touches Fernet or jose directly.
"""

import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError, jwt

from config import settings

logger = logging.getLogger("umid.crypto")

__all__ = ["CryptoEngine", "crypto_engine", "InvalidToken", "JWTError"]


class CryptoEngine:
    """
    Process-wide engine. main.py arms it at startup with ENCRYPTION_KEY;
    everything else does:  from core.crypto import crypto_engine
    """

    def __init__(self):
        self._fernet: Optional[Fernet] = None

    def initialize(self, key: Optional[str] = None):
        key = key or settings.ENCRYPTION_KEY
        if not key:
            raise ValueError(
                "ENCRYPTION_KEY must be set: TOTP secrets cannot be stored unencrypted. "
                "Create one with Fernet.generate_key()."
            )
        self._fernet = Fernet(key.encode())
        logger.info("Crypto engine armed")

    def is_ready(self) -> str:
        return "ok" if self._fernet is not None else "not initialized"

    def _require_ready(self) -> Fernet:
        if self._fernet is None:
            raise RuntimeError("Crypto engine used before initialize()")
        return self._fernet

    # ── Secrets at rest ────────────────────────────────────────────────────
    def encrypt(self, plaintext: str) -> str:
        """Fernet (AES-128-CBC + HMAC-SHA256) ciphertext, as text for a DB column."""
        return self._require_ready().encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Raises InvalidToken if the ciphertext was altered or the key rotated."""
        return self._require_ready().decrypt(ciphertext.encode()).decode()

    # ── Hashing ────────────────────────────────────────────────────────────
    def hash_sha256(self, data: str) -> str:
        return hashlib.sha256(data.encode()).hexdigest()

    # ── JWTs ───────────────────────────────────────────────────────────────
    def create_access_token(
        self,
        subject: str,
        extra_data: dict = None,
        expires_minutes: Optional[int] = None,
    ) -> str:
        """Signed JWT for `subject`, with `extra_data` merged into the claims."""
        issued = datetime.now(timezone.utc)
        minutes = settings.ACCESS_TOKEN_EXPIRY_MINUTES if expires_minutes is None else expires_minutes
        claims = {"sub": subject, "iat": issued, "exp": issued + timedelta(minutes=minutes)}
        claims.update(extra_data or {})
        return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict:
        """Claims of a valid token. Raises JWTError on a bad signature or expiry."""
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])

    # ── QR tokens ──────────────────────────────────────────────────────────
    def issue_qr_token(self, payload: dict, at: float) -> str:
        """Encrypt a QR payload stamped with time `at` (epoch seconds)."""
        data = json.dumps(payload, sort_keys=True).encode()
        return self._require_ready().encrypt_at_time(data, int(at)).decode()

    def read_qr_token(self, token: str) -> Tuple[dict, int]:
        """
        (payload, issued_at) of a QR token. Raises InvalidToken if it was
        tampered with or minted under another key. Age is judged by the
        caller, which knows the UMID's rotation interval.
        """
        fernet = self._require_ready()
        raw = token.encode()
        payload = json.loads(fernet.decrypt(raw))
        return payload, fernet.extract_timestamp(raw)


crypto_engine = CryptoEngine()
