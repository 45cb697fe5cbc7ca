"""Webhook payload signing and verification."""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass

from csva.errors import SignatureError

SIGNATURE_HEADER = "X-Csva-Signature"


@dataclass(frozen=True)
class SignatureComponents:
    timestamp: int
    signature: str


class WebhookSigner:
    """Signs and verifies job payloads with HMAC-SHA256.

    Header format: ``t=<timestamp>,v1=<hex digest>`` where the digest is
    ``HMAC-SHA256(secret, "<timestamp>.<body>")``.
    """

    SIGNATURE_VERSION = "v1"
    DEFAULT_TOLERANCE_SECONDS = 300

    def __init__(self, secret: str) -> None:
        self.secret = secret.encode("utf-8")

    @property
    def configured(self) -> bool:
        return bool(self.secret)

    def sign(self, body: str, timestamp: int | None = None) -> str:
        if not self.configured:
            raise SignatureError("webhook secret is not configured")
        if timestamp is None:
            timestamp = int(time.time())
        return f"t={timestamp},{self.SIGNATURE_VERSION}={self._compute(body, timestamp)}"

    def verify(self, body: str, header: str | None, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS) -> None:
        """Check a signature header against a raw body.

        Raises:
            SignatureError: If no secret is configured, or the header is missing,
                malformed, stale or does not match
        """
        if not self.configured:
            raise SignatureError("webhook secret is not configured")
        if not header:
            raise SignatureError("missing signature")
        components = self._parse(header)
        if components is None:
            raise SignatureError("invalid signature format")
        if abs(int(time.time()) - components.timestamp) > tolerance_seconds:
            raise SignatureError("signature timestamp out of tolerance")
        expected = self._compute(body, components.timestamp)
        if not hmac.compare_digest(components.signature, expected):
            raise SignatureError("signature mismatch")

    def _compute(self, body: str, timestamp: int) -> str:
        return hmac.new(self.secret, f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()

    def _parse(self, header: str) -> SignatureComponents | None:
        parts: dict[str, str] = {}
        for item in header.split(","):
            key, sep, value = item.strip().partition("=")
            if not sep:
                return None
            parts[key] = value
        if "t" not in parts or self.SIGNATURE_VERSION not in parts:
            return None
        try:
            timestamp = int(parts["t"])
        except ValueError:
            return None
        return SignatureComponents(timestamp=timestamp, signature=parts[self.SIGNATURE_VERSION])
