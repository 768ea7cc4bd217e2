"""
Secrets, hash commitments and timelock arithmetic.

SHA-256 is the commitment hash: Bitcoin script (OP_SHA256), the EVM
(precompile 0x02) and the Soroban host all compute it natively, so the same
commitment can guard a lock on any of them.

Everything here is pure apart from the RNG call in generate_secret().
"""

import base64
import binascii
import hashlib
import hmac
import math
import re
import secrets
from typing import Callable, Tuple, Union

from .errors import EntropyError, InvalidParameters, InvalidSecret, MalformedCommitment

SECRET_LENGTH = 32
COMMITMENT_LENGTH = 32

BytesLike = Union[bytes, bytearray, str]

_HEX_32 = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def _as_bytes(value: BytesLike, length: int, error: type) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        try:
            raw = bytes.fromhex(value[2:] if value.startswith("0x") else value)
        except ValueError as e:
            raise error(f"not a hex string: {e}") from e
    else:
        raise error(f"unsupported type {type(value).__name__}")
    if len(raw) != length:
        raise error(f"expected {length} bytes, got {len(raw)}")
    return raw


def to_hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


def generate_secret(source: Callable[[int], bytes] = secrets.token_bytes) -> bytes:
    """Draw a 32-byte secret from a CSPRNG.

    Raises EntropyError when the source fails or hands back something that is
    obviously not random (wrong size, or every byte identical).
    """
    try:
        secret = source(SECRET_LENGTH)
    except (OSError, NotImplementedError) as e:
        raise EntropyError(f"random source unavailable: {e}") from e
    if not isinstance(secret, (bytes, bytearray)) or len(secret) != SECRET_LENGTH:
        raise EntropyError("random source returned the wrong number of bytes")
    if len(set(secret)) == 1:
        raise EntropyError("random source returned a degenerate value")
    return bytes(secret)


def commit(secret: BytesLike) -> bytes:
    return hashlib.sha256(_as_bytes(secret, SECRET_LENGTH, InvalidSecret)).digest()


def verify(secret: BytesLike, commitment: BytesLike) -> bool:
    """True iff sha256(secret) == commitment, compared in constant time."""
    try:
        expected = _as_bytes(commitment, COMMITMENT_LENGTH, MalformedCommitment)
        actual = commit(secret)
    except InvalidParameters:
        return False
    return hmac.compare_digest(actual, expected)


def generate_pair() -> Tuple[bytes, bytes]:
    secret = generate_secret()
    return secret, commit(secret)


def parse_commitment(commitment: BytesLike) -> bytes:
    return _as_bytes(commitment, COMMITMENT_LENGTH, MalformedCommitment)


def parse_secret(secret: BytesLike) -> bytes:
    return _as_bytes(secret, SECRET_LENGTH, InvalidSecret)


def is_valid_secret(secret: str) -> bool:
    return isinstance(secret, str) and bool(_HEX_32.match(secret))


def encode_secret(secret: BytesLike) -> str:
    """Base64 form used when a secret has to travel over a text channel."""
    return base64.b64encode(parse_secret(secret)).decode("ascii")


def decode_secret(encoded: str) -> bytes:
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidSecret(f"failed to decode secret: {e}") from e
    return parse_secret(raw)


# =============================================================================
# Timelocks
# =============================================================================

class TimestampTimelock:
    """Timelocks expressed as unix timestamps (EVM block.timestamp)."""

    unit = "timestamp"

    def now(self, height: int, timestamp: int) -> int:
        return timestamp

    def after(self, now: int, seconds: int) -> int:
        return now + seconds

    def seconds_until(self, now: int, timelock: int) -> int:
        return timelock - now

    def is_expired(self, now: int, timelock: int) -> bool:
        return now >= timelock


class BlockHeightTimelock:
    """Timelocks expressed as block heights / ledger sequences.

    block_seconds is the expected block interval; durations are rounded up to
    whole blocks so a lock never expires earlier than requested.
    """

    unit = "height"

    def __init__(self, block_seconds: float):
        if block_seconds <= 0:
            raise InvalidParameters("block_seconds must be positive")
        self.block_seconds = block_seconds

    def now(self, height: int, timestamp: int) -> int:
        return height

    def after(self, now: int, seconds: int) -> int:
        return now + math.ceil(seconds / self.block_seconds)

    def seconds_until(self, now: int, timelock: int) -> int:
        return int((timelock - now) * self.block_seconds)

    def is_expired(self, now: int, timelock: int) -> bool:
        return now >= timelock


TimelockPolicy = Union[TimestampTimelock, BlockHeightTimelock]


def compute_timelock(policy: TimelockPolicy, now: int, duration_seconds: int) -> int:
    if duration_seconds <= 0:
        raise InvalidParameters("timelock duration must be positive")
    return policy.after(now, duration_seconds)


def timelock_remaining(policy: TimelockPolicy, now: int, timelock: int) -> int:
    return max(0, policy.seconds_until(now, timelock))
