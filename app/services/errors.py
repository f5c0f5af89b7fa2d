"""
Exception hierarchy for the diagnosis coding service.

Exception Tree::

    DiagCodeError (base)
    ├── RetryExhaustedError          transient failures outlasted the schedule
    ├── ClinicalInputError           form input rejected before any call
    ├── DocumentIngestionError       upload could not become clinical text
    │   ├── UnsupportedFileTypeError
    │   └── FileReadError
    ├── SuggestionError              one orchestrated operation failed
    │   └── CombinedSuggestionError  both operations failed
    ├── SummaryError
    ├── DiagnosisNotFoundError
    ├── NothingToSaveError
    └── HistoryStoreError            local storage failure
        ├── HistoryRecordNotFoundError
        └── HistoryImportError       import payload failed validation
"""

from __future__ import annotations


class DiagCodeError(Exception):
    """Base exception for all domain errors.

    Attributes:
        message: Human-readable error description, safe to show to the user.
        details: Optional dict with structured error context.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message: str = message
        self.details: dict = details or {}
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, details={self.details!r})"


class RetryExhaustedError(DiagCodeError):
    """Raised when every attempt failed with a retryable error.

    Attributes:
        attempts: Number of attempts performed.
        last_error: The error raised by the final attempt.
    """

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts: int = attempts
        self.last_error: BaseException = last_error
        super().__init__(
            message=f"Service still unavailable after {attempts} attempts: {last_error}",
            details={"attempts": attempts},
        )


class ClinicalInputError(DiagCodeError):
    """Raised when clinical text or coding system input is invalid."""


class DocumentIngestionError(DiagCodeError):
    """Raised when an uploaded file could not be turned into clinical text.

    ``kind`` is one of ``overloaded``, ``communication``, ``unsupported`` or
    ``read`` so callers can pick the right remedy.
    """

    def __init__(self, message: str, kind: str, details: dict | None = None) -> None:
        self.kind: str = kind
        super().__init__(message, details={"kind": kind, **(details or {})})


class UnsupportedFileTypeError(DocumentIngestionError):
    def __init__(self, mime_type: str) -> None:
        self.mime_type: str = mime_type
        super().__init__(
            f"Unsupported file type: {mime_type or 'unknown'}. "
            "Upload a plain text, image or PDF file.",
            kind="unsupported",
            details={"mime_type": mime_type},
        )


class FileReadError(DocumentIngestionError):
    def __init__(self, file_name: str | None, reason: str) -> None:
        label = f"file {file_name}" if file_name else "the file"
        super().__init__(
            f"Could not read {label}: {reason}. Try another file or enter the text manually.",
            kind="read",
            details={"file_name": file_name},
        )


class SuggestionError(DiagCodeError):
    """Raised when concept extraction or diagnosis suggestion failed.

    Attributes:
        operation: ``concepts`` or ``diagnoses``.
        exhausted: True when the attempt ceiling was reached on transient errors.
    """

    def __init__(self, operation: str, message: str, exhausted: bool = False) -> None:
        self.operation: str = operation
        self.exhausted: bool = exhausted
        super().__init__(message, details={"operation": operation, "exhausted": exhausted})


class CombinedSuggestionError(SuggestionError):
    """Raised when both orchestrated operations failed."""

    def __init__(self, errors: list[SuggestionError]) -> None:
        self.errors: list[SuggestionError] = errors
        exhausted = all(err.exhausted for err in errors)
        message = "Both concept extraction and diagnosis suggestion failed. " + " ".join(
            err.message for err in errors
        )
        super().__init__("all", message, exhausted=exhausted)


class SummaryError(DiagCodeError):
    """Raised when the clinical summary could not be generated."""


class DiagnosisNotFoundError(DiagCodeError):
    def __init__(self, diagnosis_id: str) -> None:
        self.diagnosis_id: str = diagnosis_id
        super().__init__(
            f"Diagnosis {diagnosis_id} not found in the current list.",
            details={"diagnosis_id": diagnosis_id},
        )


class NothingToSaveError(DiagCodeError):
    """Raised when saving a case with neither diagnoses nor a summary."""


class HistoryStoreError(DiagCodeError):
    """Raised when the local history store could not complete an operation."""


class HistoryRecordNotFoundError(HistoryStoreError):
    def __init__(self, record_id: int) -> None:
        self.record_id: int = record_id
        super().__init__(
            f"History entry {record_id} does not exist.",
            details={"record_id": record_id},
        )


class HistoryImportError(HistoryStoreError):
    """Raised when an import payload fails validation. The store is untouched."""
