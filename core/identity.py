"""
core/identity.py — UMID Identifiers
=====================================
Printable UMID numbers (what goes on a card or under a QR code).
The opaque record id stays internal; the number is what a scanner or a
clinician types in.
"""

import re
import secrets
import time
from core.crypto import crypto_engine

UMID_NUMBER_PATTERN = re.compile(r"^UMID-[A-F0-9]{12}$")


def generate_umid_number(patient_id: str) -> str:
    """
    Format: UMID-<12 upper-case hex chars>
    Salted with time and randomness, so reissuing for the same patient never
    repeats a number.
    """
    seed = f"{patient_id}-{time.time_ns()}-{secrets.token_hex(8)}"
    return f"UMID-{crypto_engine.hash_sha256(seed)[:12].upper()}"


def is_umid_number(value: str) -> bool:
    return bool(value) and bool(UMID_NUMBER_PATTERN.match(value))


# Marker inside every rotating QR payload
QR_TOKEN_TYPE = "UMID_QR"
