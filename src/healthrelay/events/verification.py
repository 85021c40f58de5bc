"""
Webhook Signature Verification

Standard Webhooks scheme: the sender signs ``"{id}.{timestamp}.{body}"``
with HMAC-SHA256 and sends ``webhook-id``, ``webhook-timestamp`` and
``webhook-signature`` (space-separated ``v1,<base64>`` entries).
Secrets may be given as ``whsec_<base64>``.
"""

from typing import Callable, Mapping
import base64
import binascii
import hashlib
import hmac
import time

import structlog

from healthrelay.errors import WebhookVerificationError

logger = structlog.get_logger(__name__)

SECRET_PREFIX = "whsec_"
DEFAULT_TOLERANCE_SECONDS = 5 * 60


def decode_secret(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        try:
            return base64.b64decode(secret[len(SECRET_PREFIX):], validate=True)
        except binascii.Error as e:
            raise ValueError("Webhook secret is not valid base64") from e
    return secret.encode("utf-8")


class WebhookVerifier:
    """
    Verifies inbound webhook signatures.

    With no secret configured verification is disabled and every request
    passes.
    """

    def __init__(
        self,
        secret: str | None = None,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._key = decode_secret(secret) if secret else None
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._key is not None

    def sign(self, message_id: str, timestamp: int, body: bytes) -> str:
        """The ``v1,<base64>`` signature for a message."""
        if self._key is None:
            raise WebhookVerificationError("No webhook secret configured")
        signed = f"{message_id}.{timestamp}.".encode("utf-8") + body
        digest = hmac.new(self._key, signed, hashlib.sha256).digest()
        return "v1," + base64.b64encode(digest).decode("ascii")

    def verify(self, headers: Mapping[str, str], body: bytes) -> None:
        """
        Raises:
            WebhookVerificationError: headers missing, timestamp outside the
                tolerance window, or no signature matches.
        """
        if self._key is None:
            return

        lowered = {k.lower(): v for k, v in headers.items()}
        message_id = lowered.get("webhook-id")
        raw_timestamp = lowered.get("webhook-timestamp")
        signatures = lowered.get("webhook-signature")
        if not message_id or not raw_timestamp or not signatures:
            raise WebhookVerificationError("Missing webhook signature headers")

        try:
            timestamp = int(raw_timestamp)
        except ValueError:
            raise WebhookVerificationError("Invalid webhook timestamp")

        if abs(self._clock() - timestamp) > self.tolerance_seconds:
            raise WebhookVerificationError("Webhook timestamp outside tolerance")

        expected = self.sign(message_id, timestamp, body).split(",", 1)[1]
        for entry in signatures.split():
            version, _, value = entry.partition(",")
            if version == "v1" and hmac.compare_digest(value, expected):
                return

        logger.warning("Webhook signature mismatch", webhook_id=message_id)
        raise WebhookVerificationError("Invalid webhook signature")
