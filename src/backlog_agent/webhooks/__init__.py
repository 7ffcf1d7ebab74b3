"""Signed webhook intake."""

from .signature import (
    VerificationResult,
    extract_webhook_headers,
    generate_webhook_headers,
    sign_payload,
    verify_signature,
)

__all__ = [
    "VerificationResult",
    "extract_webhook_headers",
    "generate_webhook_headers",
    "sign_payload",
    "verify_signature",
]
