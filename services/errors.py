from __future__ import annotations


class IngestionError(Exception):
    """Base class for failures surfaced by the ingestion pipeline."""

    kind: str = "ingestion_error"


class UnsupportedFormat(IngestionError):
    kind = "unsupported_format"

    def __init__(self, mime_type: str | None, filename: str | None = None) -> None:
        self.mime_type = mime_type
        self.filename = filename
        super().__init__(f"Unsupported file type: {mime_type or 'unknown'} ({filename or 'no filename'})")


class UnreadableDocument(IngestionError):
    kind = "unreadable_document"


class FallbackServiceError(IngestionError):
    kind = "fallback_service_error"


class RateLookupError(IngestionError):
    kind = "rate_lookup_error"


class ProviderError(IngestionError):
    kind = "provider_error"

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")


class ProviderAuthError(ProviderError):
    kind = "provider_auth_error"

    def __init__(self, provider: str, status_code: int | None = None) -> None:
        super().__init__(provider, "reconnect required", status_code)
