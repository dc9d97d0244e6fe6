from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass

PIN_LENGTH = 6
QR_TOKEN_BYTES = 16
SESSION_TOKEN_BYTES = 32


@dataclass(frozen=True, slots=True)
class MintedSecret:
    secret: str
    digest: str


def generate_pin(length: int = PIN_LENGTH) -> str:
    """Uniform numeric PIN, leading zeros included."""
    return f"{secrets.randbelow(10**length):0{length}d}"


def generate_opaque_token(byte_length: int = QR_TOKEN_BYTES) -> str:
    return secrets.token_hex(byte_length)


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def verify_secret(secret: str, digest: str | None) -> bool:
    if not digest:
        return False
    return hmac.compare_digest(hash_secret(secret).encode("ascii"), digest.strip().lower().encode("ascii", "ignore"))


def mint_pin() -> MintedSecret:
    pin = generate_pin()
    return MintedSecret(secret=pin, digest=hash_secret(pin))


def mint_token(byte_length: int = QR_TOKEN_BYTES) -> MintedSecret:
    token = generate_opaque_token(byte_length)
    return MintedSecret(secret=token, digest=hash_secret(token))


def normalize_pin(value: str | None) -> str:
    return "".join((value or "").strip().split())


@dataclass(frozen=True, slots=True)
class BookingSecrets:
    pin: MintedSecret
    qr_token: MintedSecret


def mint_booking_credentials() -> BookingSecrets:
    """Plain PIN and QR token for a new booking, with the digests that get stored."""
    return BookingSecrets(pin=mint_pin(), qr_token=mint_token())
