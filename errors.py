"""
Error taxonomy for loan-file processing.

Every error carries enough context (loan id, document id, stage) for a caller
to retry or alert a human. Extraction failures are recovered locally; the
others are surfaced to the caller.
"""
from typing import Optional


class LoanFileError(Exception):
    """Base class for loan-file processing errors."""

    def __init__(
        self,
        message: str,
        loan_id: Optional[str] = None,
        document_id: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        self.message = message
        self.loan_id = loan_id
        self.document_id = document_id
        self.stage = stage
        super().__init__(self._format())

    def _format(self) -> str:
        context = []
        if self.loan_id:
            context.append(f"loan={self.loan_id}")
        if self.document_id:
            context.append(f"document={self.document_id}")
        if self.stage:
            context.append(f"stage={self.stage}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ExtractionFailure(LoanFileError):
    """Text could not be obtained from a document. Recovered as empty text."""


class RateLimitExhausted(LoanFileError):
    """The backoff budget ran out while the remote service kept rate limiting."""

    def __init__(self, message: str, attempts: int = 0, **context):
        self.attempts = attempts
        super().__init__(message, **context)


class AnalysisServiceError(LoanFileError):
    """Non-retryable failure from the language-model service."""


class PersistenceError(LoanFileError):
    """A read or write against the persistence layer failed."""


class RemoteSyncFailure(LoanFileError):
    """A call against the remote mirror failed. Logged, retried on next pass."""


class CatalogError(Exception):
    """The requirement catalog is malformed (duplicate ids or names)."""
