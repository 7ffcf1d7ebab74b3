"""Tests for webhook HMAC signing and verification."""

import json

import pytest

from backlog_agent.webhooks.signature import (
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    extract_webhook_headers,
    generate_webhook_headers,
    sign_payload,
    verify_signature,
)

SECRET = "whsec"
BODY = b'{"event":"task.assigned","task":{"id":"t1"}}'
NOW_MS = 1_750_000_000_000


def _signed(body=BODY, timestamp=NOW_MS):
    return sign_payload(body, SECRET, timestamp)


class TestSignPayload:
    def test_deterministic_hex_digest(self):
        sig = _signed()
        assert sig == _signed()
        assert len(sig) == 64
        int(sig, 16)

    def test_str_and_bytes_payloads_agree(self):
        assert sign_payload(BODY.decode(), SECRET, NOW_MS) == sign_payload(BODY, SECRET, NOW_MS)

    def test_timestamp_is_part_of_message(self):
        assert _signed(timestamp=NOW_MS) != _signed(timestamp=NOW_MS + 1)


class TestVerifySignature:
    """Ordered checks: presence, format, age, skew, digest."""

    def test_valid_signature(self):
        result = verify_signature(BODY, _signed(), SECRET, str(NOW_MS), now_ms=NOW_MS)
        assert result.valid is True
        assert result.error is None

    def test_prefixed_signature_is_accepted(self):
        result = verify_signature(BODY, f"sha256={_signed()}", SECRET, str(NOW_MS), now_ms=NOW_MS)
        assert result.valid is True

    def test_mutated_body_is_rejected(self):
        """Changing a single byte of the body invalidates the signature."""
        tampered = BODY.replace(b"t1", b"t2")
        result = verify_signature(tampered, _signed(), SECRET, str(NOW_MS), now_ms=NOW_MS)
        assert result.valid is False
        assert result.error == "Invalid signature"

    def test_wrong_secret_is_rejected(self):
        result = verify_signature(BODY, _signed(), "other", str(NOW_MS), now_ms=NOW_MS)
        assert result.error == "Invalid signature"

    def test_length_mismatch_is_rejected(self):
        result = verify_signature(BODY, _signed()[:-2], SECRET, str(NOW_MS), now_ms=NOW_MS)
        assert result.error == "Invalid signature"

    def test_expired_timestamp(self):
        old = NOW_MS - 301_000
        result = verify_signature(BODY, _signed(timestamp=old), SECRET, str(old), now_ms=NOW_MS)
        assert result.error == "Timestamp expired"

    def test_timestamp_at_max_age_is_accepted(self):
        edge = NOW_MS - 300_000
        result = verify_signature(BODY, _signed(timestamp=edge), SECRET, str(edge), now_ms=NOW_MS)
        assert result.valid is True

    def test_future_timestamp(self):
        future = NOW_MS + 61_000
        result = verify_signature(BODY, _signed(timestamp=future), SECRET, str(future), now_ms=NOW_MS)
        assert result.error == "Timestamp too far in future"

    def test_small_future_skew_is_accepted(self):
        future = NOW_MS + 30_000
        result = verify_signature(BODY, _signed(timestamp=future), SECRET, str(future), now_ms=NOW_MS)
        assert result.valid is True

    def test_custom_max_age(self):
        old = NOW_MS - 120_000
        result = verify_signature(
            BODY, _signed(timestamp=old), SECRET, str(old), max_age_seconds=60, now_ms=NOW_MS,
        )
        assert result.error == "Timestamp expired"

    def test_non_numeric_timestamp(self):
        result = verify_signature(BODY, _signed(), SECRET, "yesterday", now_ms=NOW_MS)
        assert result.error == "Invalid timestamp format"

    @pytest.mark.parametrize("field", ["payload", "signature", "secret", "timestamp"])
    def test_missing_parameter(self, field):
        args = {"payload": BODY, "signature": _signed(), "secret": SECRET, "timestamp": str(NOW_MS)}
        args[field] = ""
        result = verify_signature(now_ms=NOW_MS, **args)
        assert result.valid is False
        assert result.error == "Missing required parameters"


class TestWebhookHeaders:
    def test_generated_headers_verify(self):
        payload = {"event": "comment.created", "task": {"id": "t1"}}
        headers = generate_webhook_headers(payload, SECRET, event="comment.created", timestamp_ms=NOW_MS)

        assert headers[TIMESTAMP_HEADER] == str(NOW_MS)
        assert headers[EVENT_HEADER] == "comment.created"
        assert headers[SIGNATURE_HEADER].startswith("sha256=")

        result = verify_signature(
            json.dumps(payload), headers[SIGNATURE_HEADER], SECRET, headers[TIMESTAMP_HEADER], now_ms=NOW_MS,
        )
        assert result.valid is True

    def test_extract_is_case_insensitive(self):
        extracted = extract_webhook_headers({
            "x-astrid-signature": "sha256=abc",
            "X-ASTRID-TIMESTAMP": "123",
        })
        assert extracted.signature == "sha256=abc"
        assert extracted.timestamp == "123"
        assert extracted.event == "unknown"

    def test_extract_requires_signature_and_timestamp(self):
        assert extract_webhook_headers({TIMESTAMP_HEADER: "123"}) is None
        assert extract_webhook_headers({SIGNATURE_HEADER: "sha256=abc"}) is None
