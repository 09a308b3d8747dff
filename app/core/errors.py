"""Domain error taxonomy shared by the API, the pipeline and the chat engine.

Every error carries the HTTP status it maps to and a stable ``code`` that
clients can switch on. Messages are written for end users: they end up in
``Source.error_message`` and in SSE ``error`` events.
"""

from __future__ import annotations


class SourcebotError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(SourcebotError):
    """Bad input rejected before anything is created."""
    status_code = 422
    code = "validation_error"


class QuotaExceeded(SourcebotError):
    status_code = 403
    code = "quota_exceeded"


class ExtractionError(SourcebotError):
    status_code = 422
    code = "extraction_failed"


class UnsupportedFormat(ExtractionError):
    code = "unsupported_format"


class CorruptFile(ExtractionError):
    code = "corrupt_file"


class EmptyContent(ExtractionError):
    code = "empty_content"


class FetchError(ExtractionError):
    """A page or sitemap could not be downloaded."""
    code = "fetch_failed"


class EmbeddingError(SourcebotError):
    status_code = 502
    code = "embedding_failed"


class SessionNotFound(SourcebotError):
    status_code = 404
    code = "session_not_found"


class SessionExpired(SourcebotError):
    status_code = 401
    code = "session_expired"


class StreamInterrupted(SourcebotError):
    status_code = 502
    code = "stream_interrupted"


class ContextOverflow(StreamInterrupted):
    code = "context_overflow"


def bounded_error_message(
    exc: BaseException,
    limit: int = 2000,
    fallback: str = "Unexpected error while processing source",
) -> str:
    """Return a client-safe, length-bounded message for *exc*.

    Domain errors keep their own message; anything else collapses to
    *fallback* so driver errors and tracebacks never reach users.
    """
    if isinstance(exc, SourcebotError):
        message = exc.message.strip() or fallback
    else:
        message = fallback
    if len(message) > limit:
        message = message[: max(limit - 3, 0)] + "..."
    return message
