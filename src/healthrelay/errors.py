"""
Relay Exceptions

Expected conditions (missing credentials, duplicate events, unknown
connections) are reported through return values; these exceptions cover
the faults that cross component boundaries.
"""

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class RelayError(Exception):
    """Base class for relay errors."""


class ProviderNotConfiguredError(RelayError):
    """The provider credential pair is absent."""

    def __init__(self, message: str | None = None):
        super().__init__(
            message
            or "Provider credentials are not configured. Set FASTEN_PUBLIC_KEY and FASTEN_PRIVATE_KEY."
        )


class ProviderRequestError(RelayError):
    """A provider API call returned a non-success status."""

    def __init__(self, url: str, status_code: int, body: str = ""):
        super().__init__(f"Provider request to {url} failed with status {status_code}")
        self.url = url
        self.status_code = status_code
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.status_code in RETRYABLE_STATUS_CODES


class DownloadError(RelayError):
    """A bulk export download could not be fetched."""

    def __init__(self, reference: str, status_code: int | None = None, message: str | None = None):
        detail = message or (
            f"status {status_code}" if status_code is not None else "transport failure"
        )
        super().__init__(f"Failed to download export {reference}: {detail}")
        self.reference = reference
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code in RETRYABLE_STATUS_CODES


class WebhookVerificationError(RelayError):
    """Inbound webhook signature did not verify."""


class MalformedEventError(RelayError):
    """Inbound webhook body could not be validated."""
