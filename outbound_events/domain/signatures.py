from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Literal


SignatureEncoding = Literal["hex", "base64"]

_ALGORITHMS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}
_FUTURE_SKEW_SECONDS = 60


def constant_time_equals(received: str | bytes | None, expected: str | bytes | None) -> bool:
    """Compare two secrets without leaking where they differ.

    Lengths are checked up front so mismatched inputs return False instead of
    reaching the digest comparison; the content comparison itself is
    constant time.
    """
    if received is None or expected is None:
        return False
    try:
        left = received.encode("utf-8") if isinstance(received, str) else bytes(received)
        right = expected.encode("utf-8") if isinstance(expected, str) else bytes(expected)
    except (TypeError, UnicodeEncodeError):
        return False
    if len(left) != len(right) or not right:
        return False
    return hmac.compare_digest(left, right)


def compute_signature(
    raw_body: bytes,
    secret: str,
    *,
    algorithm: str = "sha256",
    encoding: SignatureEncoding = "hex",
) -> str:
    digestmod = _ALGORITHMS.get(algorithm.lower())
    if digestmod is None:
        raise ValueError(f"Unsupported signature algorithm: {algorithm}")
    digest = hmac.new(secret.encode("utf-8"), raw_body, digestmod).digest()
    if encoding == "base64":
        return base64.b64encode(digest).decode("ascii")
    return digest.hex()


def strip_signature_prefix(header_signature: str, prefix: str | None) -> str | None:
    value = header_signature.strip()
    if not prefix:
        return value
    if not value.lower().startswith(prefix.lower()):
        return None
    return value[len(prefix):]


def verify_signature(
    raw_body: bytes,
    header_signature: str | None,
    secret: str,
    *,
    algorithm: str = "sha256",
    encoding: SignatureEncoding = "hex",
    prefix: str | None = None,
) -> bool:
    if not header_signature or not secret:
        return False
    candidate = strip_signature_prefix(header_signature, prefix)
    if not candidate:
        return False
    expected = compute_signature(raw_body, secret, algorithm=algorithm, encoding=encoding)
    if encoding == "hex":
        candidate = candidate.lower()
    return constant_time_equals(candidate, expected)


def verify_shared_token(header_token: str | None, secret: str) -> bool:
    if not header_token or not secret:
        return False
    return constant_time_equals(header_token.strip(), secret)


def parse_signature_timestamp(raw_timestamp: str | None) -> datetime | None:
    text = str(raw_timestamp or "").strip()
    if not text:
        return None
    if text.isdigit():
        value = int(text)
        # Millisecond epochs are 13 digits.
        if value > 10_000_000_000:
            value = value // 1000
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (ValueError, OSError, OverflowError):
            return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamp_within_tolerance(
    raw_timestamp: str | None,
    tolerance_seconds: int,
    *,
    now: datetime | None = None,
) -> bool:
    if tolerance_seconds <= 0:
        return True
    parsed = parse_signature_timestamp(raw_timestamp)
    if parsed is None:
        return False
    current = now or datetime.now(timezone.utc)
    age_seconds = (current - parsed).total_seconds()
    if age_seconds > tolerance_seconds:
        return False
    return age_seconds >= -_FUTURE_SKEW_SECONDS
