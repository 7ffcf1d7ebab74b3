"""HMAC-SHA256 signing and verification of webhook requests.

The signed message is ``f"{timestamp}.{raw_body}"`` where ``timestamp`` is
milliseconds since the epoch, sent alongside the signature in headers.
Verification must run against the exact bytes received, never a
re-serialized copy of the parsed JSON.
"""

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

SIGNATURE_HEADER = "X-Astrid-Signature"
TIMESTAMP_HEADER = "X-Astrid-Timestamp"
EVENT_HEADER = "X-Astrid-Event"
USER_AGENT = "Astrid-Webhooks/1.0"
SIGNATURE_PREFIX = "sha256="

DEFAULT_MAX_AGE_SECONDS = 300
MAX_FUTURE_SKEW_SECONDS = 60

Payload = Union[str, bytes]


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class WebhookHeaders:
    signature: str
    timestamp: str
    event: str


def _as_bytes(payload: Payload) -> bytes:
    return payload.encode("utf-8") if isinstance(payload, str) else payload


def sign_payload(payload: Payload, secret: str, timestamp: Union[str, int]) -> str:
    """Return the hex HMAC-SHA256 of ``timestamp + "." + payload``."""
    message = f"{timestamp}.".encode("utf-8") + _as_bytes(payload)
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(
    payload: Payload,
    signature: Optional[str],
    secret: Optional[str],
    timestamp: Optional[str],
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    now_ms: Optional[int] = None,
) -> VerificationResult:
    """
    Verify a webhook signature.

    Checks run in order: all parameters present, numeric timestamp, not
    older than ``max_age_seconds``, not more than 60 seconds ahead, then a
    constant-time comparison of equal-length digests.

    Args:
        payload: Raw request body
        signature: Hex digest, with or without the ``sha256=`` prefix
        secret: Shared secret
        timestamp: Milliseconds since the epoch, as sent
        max_age_seconds: Oldest accepted timestamp
        now_ms: Current time override for tests
    """
    if not payload or not signature or not secret or not timestamp:
        return VerificationResult(False, "Missing required parameters")

    try:
        timestamp_ms = int(timestamp)
    except (TypeError, ValueError):
        return VerificationResult(False, "Invalid timestamp format")

    current_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    age_ms = current_ms - timestamp_ms
    if age_ms > max_age_seconds * 1000:
        return VerificationResult(False, "Timestamp expired")
    if age_ms < -MAX_FUTURE_SKEW_SECONDS * 1000:
        return VerificationResult(False, "Timestamp too far in future")

    provided = signature[len(SIGNATURE_PREFIX):] if signature.startswith(SIGNATURE_PREFIX) else signature
    expected = sign_payload(payload, secret, timestamp)

    provided_bytes = provided.encode("utf-8")
    expected_bytes = expected.encode("utf-8")
    # compare_digest needs equal lengths to stay constant-time
    if len(provided_bytes) != len(expected_bytes):
        return VerificationResult(False, "Invalid signature")
    if not hmac.compare_digest(provided_bytes, expected_bytes):
        return VerificationResult(False, "Invalid signature")

    return VerificationResult(True)


def generate_webhook_headers(
    payload: Union[Payload, Dict[str, Any]],
    secret: str,
    event: str = "task.assigned",
    timestamp_ms: Optional[int] = None,
) -> Dict[str, str]:
    """Build the headers for an outbound signed webhook request."""
    if isinstance(payload, dict):
        payload = json.dumps(payload)
    timestamp = str(timestamp_ms if timestamp_ms is not None else int(time.time() * 1000))
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: f"{SIGNATURE_PREFIX}{sign_payload(payload, secret, timestamp)}",
        TIMESTAMP_HEADER: timestamp,
        EVENT_HEADER: event,
        "User-Agent": USER_AGENT,
    }


def extract_webhook_headers(headers: Mapping[str, str]) -> Optional[WebhookHeaders]:
    """Pull signature, timestamp and event from request headers.

    Returns None when signature or timestamp is absent. Lookup is
    case-insensitive for plain dicts as well as Starlette header maps.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    signature = lowered.get(SIGNATURE_HEADER.lower())
    timestamp = lowered.get(TIMESTAMP_HEADER.lower())
    if not signature or not timestamp:
        return None
    return WebhookHeaders(
        signature=signature,
        timestamp=timestamp,
        event=lowered.get(EVENT_HEADER.lower()) or "unknown",
    )
