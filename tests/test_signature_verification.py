import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone

import pytest

from outbound_events.domain.ingestion_errors import SignatureVerificationError
from outbound_events.domain.signatures import (
    compute_signature,
    constant_time_equals,
    parse_signature_timestamp,
    timestamp_within_tolerance,
    verify_shared_token,
    verify_signature,
)
from outbound_events.providers.generic.webhook import GenericWebhookProvider
from outbound_events.providers.lemlist.webhook import LemlistWebhookProvider
from outbound_events.providers.phantombuster.webhook import PhantombusterWebhookProvider
from outbound_events.providers.postmark.webhook import PostmarkWebhookProvider


BODY = b'{"_id":"act-1","type":"emailsOpened"}'


def _hex(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def test_constant_time_equals_rejects_length_mismatch_without_raising():
    assert constant_time_equals("abc", "abcd") is False
    assert constant_time_equals("abcd", "abc") is False


def test_constant_time_equals_handles_missing_and_empty_values():
    assert constant_time_equals(None, "abc") is False
    assert constant_time_equals("abc", None) is False
    assert constant_time_equals("", "") is False
    assert constant_time_equals("same", "same") is True
    assert constant_time_equals(b"same", "same") is True


def test_compute_signature_matches_hmac_in_hex_and_base64():
    digest = hmac.new(b"k", BODY, hashlib.sha256).digest()
    assert compute_signature(BODY, "k") == digest.hex()
    assert compute_signature(BODY, "k", encoding="base64") == base64.b64encode(digest).decode()


def test_compute_signature_rejects_unknown_algorithm():
    with pytest.raises(ValueError):
        compute_signature(BODY, "k", algorithm="md5")


def test_verify_signature_accepts_prefixed_and_uppercase_hex():
    signature = _hex(BODY, "secret")
    assert verify_signature(BODY, f"sha256={signature}", "secret", prefix="sha256=") is True
    assert verify_signature(BODY, f"sha256={signature.upper()}", "secret", prefix="sha256=") is True


def test_verify_signature_rejects_tampered_body_and_wrong_secret():
    signature = _hex(BODY, "secret")
    assert verify_signature(BODY + b" ", signature, "secret") is False
    assert verify_signature(BODY, signature, "other") is False
    assert verify_signature(BODY, "", "secret") is False
    assert verify_signature(BODY, signature[:10], "secret") is False


def test_verify_signature_requires_expected_prefix():
    signature = _hex(BODY, "secret")
    assert verify_signature(BODY, f"sha1={signature}", "secret", prefix="sha256=") is False


def test_verify_shared_token():
    assert verify_shared_token(" tok-123 ", "tok-123") is True
    assert verify_shared_token("tok-12", "tok-123") is False
    assert verify_shared_token(None, "tok-123") is False


def test_parse_signature_timestamp_formats():
    expected = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    epoch = int(expected.timestamp())
    assert parse_signature_timestamp(str(epoch)) == expected
    assert parse_signature_timestamp(str(epoch * 1000)) == expected
    assert parse_signature_timestamp("2024-05-01T12:00:00Z") == expected
    assert parse_signature_timestamp("not-a-time") is None
    assert parse_signature_timestamp("") is None


def test_timestamp_within_tolerance_window():
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    fresh = str(int((now - timedelta(seconds=30)).timestamp()))
    stale = str(int((now - timedelta(seconds=600)).timestamp()))
    future = str(int((now + timedelta(seconds=600)).timestamp()))
    assert timestamp_within_tolerance(fresh, 300, now=now) is True
    assert timestamp_within_tolerance(stale, 300, now=now) is False
    assert timestamp_within_tolerance(future, 300, now=now) is False
    assert timestamp_within_tolerance(None, 300, now=now) is False
    assert timestamp_within_tolerance(None, 0, now=now) is True


def test_lemlist_provider_verification():
    provider = LemlistWebhookProvider()
    provider.verify(BODY, {"X-Lemlist-Signature": f"sha256={_hex(BODY, 's')}"}, "s")

    with pytest.raises(SignatureVerificationError) as missing:
        provider.verify(BODY, {}, "s")
    assert missing.value.reason == "missing_signature"

    with pytest.raises(SignatureVerificationError) as algorithm:
        provider.verify(BODY, {"X-Lemlist-Signature": f"sha1={_hex(BODY, 's')}"}, "s")
    assert algorithm.value.reason == "unsupported_algorithm"

    with pytest.raises(SignatureVerificationError) as invalid:
        provider.verify(BODY, {"X-Lemlist-Signature": f"sha256={_hex(b'other', 's')}"}, "s")
    assert invalid.value.reason == "invalid_signature"


def test_postmark_provider_uses_base64_signature():
    provider = PostmarkWebhookProvider()
    signature = compute_signature(BODY, "pm", encoding="base64")
    provider.verify(BODY, {"X-Postmark-Signature": signature}, "pm")
    with pytest.raises(SignatureVerificationError):
        provider.verify(BODY, {"X-Postmark-Signature": _hex(BODY, "pm")}, "pm")


def test_phantombuster_provider_uses_shared_token():
    provider = PhantombusterWebhookProvider()
    provider.verify(BODY, {"X-Phantombuster-Token": "pb-token"}, "pb-token")
    with pytest.raises(SignatureVerificationError) as exc:
        provider.verify(BODY, {"X-Phantombuster-Token": "pb-toke"}, "pb-token")
    assert exc.value.reason == "invalid_token"


def test_generic_provider_rejects_stale_timestamp_header():
    provider = GenericWebhookProvider()
    headers = {
        "X-Webhook-Signature": _hex(BODY, "g"),
        "X-Webhook-Timestamp": str(int((datetime.now(timezone.utc) - timedelta(hours=1)).timestamp())),
    }
    with pytest.raises(SignatureVerificationError) as exc:
        provider.verify(BODY, headers, "g", tolerance_seconds=300)
    assert exc.value.reason == "stale_timestamp"

    headers["X-Webhook-Timestamp"] = str(int(datetime.now(timezone.utc).timestamp()))
    provider.verify(BODY, headers, "g", tolerance_seconds=300)
