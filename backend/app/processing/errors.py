"""
Processing error taxonomy.

Every error carries a `reason` that is safe to store on the Document row and
show to the uploader. `retryable` tells the pipeline whether another attempt
can help; it never retries anything else.
"""

from __future__ import annotations


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class ExtractionError(Exception):
    """Base class for everything the Extraction Engine raises."""

    error_code: str  = "EXTRACTION_FAILED"
    retryable:  bool = False

    def __init__(self, reason: str, *, status_code: int | None = None) -> None:
        super().__init__(reason)
        self.reason      = reason
        self.status_code = status_code


class UnsupportedFileTypeError(ExtractionError):
    """Rejected before the provider is called."""
    error_code = "UNSUPPORTED_FILE_TYPE"


class PayloadTooLargeError(ExtractionError):
    error_code = "PAYLOAD_TOO_LARGE"


class TransientExtractionError(ExtractionError):
    """Rate limiting, 5xx or timeouts. The caller may retry."""
    error_code = "EXTRACTION_UNAVAILABLE"
    retryable  = True


class TerminalExtractionError(ExtractionError):
    """Auth or format rejection by the provider. Retrying will not help."""
    error_code = "EXTRACTION_REJECTED"


class NoContentExtractedError(ExtractionError):
    """The provider answered but the document holds no usable text."""
    error_code = "NO_CONTENT"


# ---------------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------------

class EmbeddingError(Exception):
    retryable: bool = False


class EmbeddingValidationError(EmbeddingError):
    """Input rejected locally; no network call was made."""


class EmbeddingUpstreamError(EmbeddingError):
    """
    Wraps a provider failure with enough context to diagnose it.
    Only the input length and a short preview are kept.
    """

    def __init__(
        self,
        message: str,
        *,
        input_length: int,
        input_preview: str,
        retryable: bool = False,
    ) -> None:
        super().__init__(
            f"{message} (input_length={input_length} preview={input_preview!r})"
        )
        self.input_length  = input_length
        self.input_preview = input_preview
        self.retryable     = retryable
