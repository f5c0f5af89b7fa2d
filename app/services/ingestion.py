"""Turn an uploaded file into clinical text.

Plain text is decoded locally. Images and PDFs go to the AI service as a
base64 data URI, either for verbatim extraction or for condensation of long
documents, under the ingestion retry schedule.
"""

import asyncio
import base64
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum

from app.config import INGESTION_RETRY_DELAYS
from app.models.clinical import DocumentStrategy
from app.services import documents
from app.services.errors import (
    DocumentIngestionError,
    FileReadError,
    RetryExhaustedError,
    UnsupportedFileTypeError,
)
from app.services.retry import RetryObserver, run_with_retry

logger = logging.getLogger(__name__)

DocumentOperation = Callable[[str, str], Awaitable[str]]


class IngestionState(str, Enum):
    IDLE = "idle"
    READING = "reading"
    DONE = "done"
    FAILED = "failed"


@dataclass
class DocumentUpload:
    file_name: str | None
    mime_type: str
    content: bytes


@dataclass
class IngestionResult:
    state: IngestionState
    clinical_text: str
    attempts: int = 0
    strategy: DocumentStrategy | None = None
    error: DocumentIngestionError | None = None


def normalize_mime(mime_type: str | None) -> tuple[str, dict[str, str]]:
    """Split ``text/plain; charset=latin-1`` into ("text/plain", {"charset": "latin-1"})."""
    if not mime_type:
        return "", {}
    base, *raw_params = mime_type.split(";")
    params: dict[str, str] = {}
    for raw in raw_params:
        key, _, value = raw.partition("=")
        if key.strip():
            params[key.strip().lower()] = value.strip().strip('"')
    return base.strip().lower(), params


def is_text(mime: str) -> bool:
    return mime == "text/plain"


def is_document(mime: str) -> bool:
    return mime.startswith("image/") or mime == "application/pdf"


def to_data_uri(content: bytes, mime: str) -> str:
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def empty_extraction_placeholder(mime: str) -> str:
    return (
        f"Could not extract text from the document ({mime}). "
        "Please check the file or enter the text manually."
    )


def failure_placeholder(reason: str) -> str:
    return f"[Text extraction failed: {reason}. Please enter the clinical text manually.]"


class DocumentIngestionPipeline:
    def __init__(
        self,
        *,
        extract: DocumentOperation | None = None,
        condense: DocumentOperation | None = None,
        delays: Sequence[float] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._extract = extract
        self._condense = condense
        self.delays = list(INGESTION_RETRY_DELAYS if delays is None else delays)
        self._sleep = sleep
        self.state = IngestionState.IDLE

    @property
    def max_attempts(self) -> int:
        return len(self.delays) + 1

    def _operation_for(self, strategy: DocumentStrategy) -> DocumentOperation:
        if strategy == DocumentStrategy.CONDENSE:
            return self._condense or documents.condense_extensive_document
        return self._extract or documents.extract_text_from_document

    async def ingest(
        self,
        upload: DocumentUpload,
        strategy: DocumentStrategy = DocumentStrategy.STANDARD,
        *,
        on_retry: RetryObserver | None = None,
    ) -> IngestionResult:
        """Read ``upload`` into clinical text; failures come back in the result."""
        mime, params = normalize_mime(upload.mime_type)

        if not (is_text(mime) or is_document(mime)):
            logger.warning("Rejected upload %s with unsupported type %r", upload.file_name, mime)
            self.state = IngestionState.FAILED
            return IngestionResult(
                state=self.state,
                clinical_text="",
                error=UnsupportedFileTypeError(upload.mime_type),
            )

        self.state = IngestionState.READING

        if is_text(mime):
            return self._read_text(upload, params.get("charset") or "utf-8-sig")

        return await self._read_document(upload, mime, strategy, on_retry)

    def _read_text(self, upload: DocumentUpload, charset: str) -> IngestionResult:
        try:
            text = upload.content.decode(charset)
        except (UnicodeDecodeError, LookupError) as exc:
            logger.error("Failed to read text file %s: %s", upload.file_name, exc)
            self.state = IngestionState.FAILED
            return IngestionResult(
                state=self.state,
                clinical_text="",
                error=FileReadError(upload.file_name, str(exc)),
            )
        self.state = IngestionState.DONE
        logger.info("Read %d characters from %s", len(text), upload.file_name)
        return IngestionResult(state=self.state, clinical_text=text)

    async def _read_document(
        self,
        upload: DocumentUpload,
        mime: str,
        strategy: DocumentStrategy,
        on_retry: RetryObserver | None,
    ) -> IngestionResult:
        data_uri = to_data_uri(upload.content, mime)
        operation = self._operation_for(strategy)
        attempts = 0

        async def attempt() -> str:
            nonlocal attempts
            attempts += 1
            return await operation(data_uri, mime)

        try:
            text = await run_with_retry(
                attempt,
                self.delays,
                on_retry=on_retry,
                sleep=self._sleep,
                label=f"Document ingestion ({strategy.value})",
            )
        except RetryExhaustedError as exc:
            self.state = IngestionState.FAILED
            reason = str(exc.last_error)
            return IngestionResult(
                state=self.state,
                clinical_text=failure_placeholder(reason),
                attempts=attempts,
                strategy=strategy,
                error=DocumentIngestionError(
                    f"The AI service is overloaded: no text could be extracted after "
                    f"{exc.attempts} attempts. Wait a moment and try again, or enter the text manually.",
                    kind="overloaded",
                    details={"attempts": exc.attempts},
                ),
            )
        except Exception as exc:
            self.state = IngestionState.FAILED
            return IngestionResult(
                state=self.state,
                clinical_text=failure_placeholder(str(exc)),
                attempts=attempts,
                strategy=strategy,
                error=DocumentIngestionError(
                    f"Could not communicate with the AI service to process the document ({exc}). "
                    "Try another file or enter the text manually.",
                    kind="communication",
                    details={"attempts": attempts},
                ),
            )

        if not text or not text.strip():
            logger.warning("Empty extraction result for %s (%s)", upload.file_name, mime)
            text = empty_extraction_placeholder(mime)

        self.state = IngestionState.DONE
        return IngestionResult(
            state=self.state,
            clinical_text=text,
            attempts=attempts,
            strategy=strategy,
        )
