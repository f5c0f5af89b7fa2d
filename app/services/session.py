"""The active diagnosis session: one clinician's working copy of a case.

A session owns the clinical case, the extracted concepts, the curated diagnosis
list and the optional summary. History records are loaded into it by value and
only written back through an explicit ``save``.
"""

import logging
import time
import uuid
from collections.abc import Awaitable, Callable

from app.config import MIN_CLINICAL_TEXT_LENGTH, SESSION_IDLE_TIMEOUT
from app.models.clinical import ClinicalCase, CodingSystem, DocumentStrategy
from app.models.history import HistoryRecord, HistoryRecordCreate
from app.models.session import OrchestrationStatus, SessionSnapshot
from app.services import summary as summary_service
from app.services.curation import DiagnosisCuration
from app.services.errors import (
    ClinicalInputError,
    NothingToSaveError,
    SummaryError,
)
from app.services.event_bus import SessionEventBus, event_bus
from app.services.history import HistoryStore
from app.services.ingestion import DocumentIngestionPipeline, DocumentUpload, IngestionResult
from app.services.orchestrator import OrchestrationState, SuggestionOrchestrator, SuggestionOutcome
from app.services.retry import RetryNotice

logger = logging.getLogger(__name__)


class DiagnosisSession:
    def __init__(
        self,
        session_id: str | None = None,
        *,
        orchestrator: SuggestionOrchestrator | None = None,
        ingestion: DocumentIngestionPipeline | None = None,
        summarize: Callable[[str], Awaitable[str]] | None = None,
        bus: SessionEventBus | None = None,
    ) -> None:
        self.id = session_id or str(uuid.uuid4())
        self.case = ClinicalCase()
        self.concepts: list[str] = []
        self.curation = DiagnosisCuration()
        self.summary: str | None = None
        self.ingestion_error: str | None = None
        self.suggestion_error: str | None = None
        self.summary_error: str | None = None

        self._bus = bus or event_bus
        self.orchestrator = orchestrator or SuggestionOrchestrator(listener=self._on_state)
        self.ingestion = ingestion or DocumentIngestionPipeline()
        self._summarize = summarize
        # Bumped whenever the case is replaced wholesale (new file, history load)
        self._case_epoch = 0

    # --- Events ---

    async def _publish(self, event: dict) -> None:
        await self._bus.publish(self.id, event)

    async def _on_state(self, state: OrchestrationState) -> None:
        await self._publish(state.as_event())

    def _retry_observer(self, event_type: str, operation: str):
        async def _observer(notice: RetryNotice) -> None:
            await self._publish({
                "type": event_type,
                "attempt": notice.attempt,
                "next_attempt": notice.next_attempt,
                "max_attempts": notice.max_attempts,
                "delay": notice.delay,
                "message": (
                    f"{operation}: AI service busy, retrying "
                    f"(attempt {notice.next_attempt} of {notice.max_attempts}) in {notice.delay:g}s"
                ),
            })

        return _observer

    # --- Document ingestion ---

    async def load_file(
        self,
        upload: DocumentUpload,
        strategy: DocumentStrategy = DocumentStrategy.STANDARD,
    ) -> IngestionResult:
        """Replace the clinical text with the contents of ``upload``.

        Raises ``DocumentIngestionError`` after the session has been updated
        (blank text, or a placeholder describing the failure).
        """
        self._case_epoch += 1
        self.orchestrator.supersede()
        epoch = self._case_epoch
        self.case = ClinicalCase(
            clinical_text="",
            coding_system=self.case.coding_system,
            source_file_name=upload.file_name,
        )
        self.ingestion_error = None
        await self._publish({
            "type": "ingestion_started",
            "file_name": upload.file_name,
            "strategy": strategy.value,
        })

        result = await self.ingestion.ingest(
            upload,
            strategy,
            on_retry=self._retry_observer("ingestion_retry", "Document extraction"),
        )
        if epoch != self._case_epoch:
            logger.info("Discarding ingestion of %s: case replaced meanwhile", upload.file_name)
            return result

        self.case = self.case.model_copy(update={"clinical_text": result.clinical_text})
        if result.error is not None:
            self.ingestion_error = result.error.message
            await self._publish({
                "type": "ingestion_failed",
                "kind": result.error.kind,
                "message": result.error.message,
            })
            raise result.error

        await self._publish({
            "type": "ingestion_complete",
            "file_name": upload.file_name,
            "attempts": result.attempts,
        })
        return result

    # --- Suggestions ---

    async def submit(self, clinical_text: str, coding_system: CodingSystem | str | None) -> SuggestionOutcome:
        """Run the suggestion orchestrator and commit what succeeded.

        Raises the operation-scoped ``SuggestionError`` (or a combined one)
        after committing any partial success.
        """
        if coding_system is None or coding_system == "":
            raise ClinicalInputError("Please select a coding system.")
        try:
            coding_system = CodingSystem(coding_system)
        except ValueError as exc:
            raise ClinicalInputError(f"Unknown coding system: {coding_system}.") from exc
        if len((clinical_text or "").strip()) < MIN_CLINICAL_TEXT_LENGTH:
            raise ClinicalInputError(
                f"Clinical text must be at least {MIN_CLINICAL_TEXT_LENGTH} characters."
            )

        self.case = self.case.model_copy(
            update={"clinical_text": clinical_text, "coding_system": coding_system}
        )
        # Fresh submission: prior results go, the summary stays
        self.concepts = []
        self.curation.clear()
        self.suggestion_error = None

        outcome = await self.orchestrator.run(
            clinical_text,
            coding_system,
            on_retry=self._retry_observer("suggestion_retry", "Suggestions"),
        )
        if outcome.superseded:
            return outcome

        if outcome.concepts is not None:
            self.concepts = outcome.concepts
        if outcome.diagnoses is not None:
            self.curation.load(outcome.diagnoses)

        errors = outcome.errors
        if errors:
            self.suggestion_error = " ".join(err.message for err in errors)
        await self._publish({
            "type": "suggestions_settled",
            "attempts": outcome.attempts,
            "concepts": len(self.concepts),
            "diagnoses": len(self.curation),
            "errors": [err.message for err in errors],
        })
        outcome.raise_for_errors()
        return outcome

    # --- Summary ---

    async def summarize(self) -> str:
        text = self.case.clinical_text.strip()
        if not text:
            raise ClinicalInputError("Enter or upload clinical text before summarizing.")

        epoch = self._case_epoch
        summarize = self._summarize or summary_service.summarize_clinical_notes
        self.summary_error = None
        try:
            summary = await summarize(text)
        except Exception as exc:
            logger.error("Summary generation failed for session %s: %s", self.id, exc)
            self.summary_error = f"Summary generation failed: {exc}. Try again later."
            raise SummaryError(self.summary_error) from exc

        if epoch != self._case_epoch:
            logger.info("Discarding summary for session %s: case replaced meanwhile", self.id)
            return summary
        if not summary:
            self.summary_error = "The AI service returned an empty summary. Try again later."
            raise SummaryError(self.summary_error)

        self.summary = summary
        await self._publish({"type": "summary_ready"})
        return summary

    # --- History ---

    async def save(self, store: HistoryStore) -> HistoryRecord:
        """Persist a snapshot of the current case as a new history record."""
        diagnoses = self.curation.items
        if not diagnoses and not self.summary:
            raise NothingToSaveError(
                "Nothing to save: generate diagnoses or a clinical summary first."
            )
        if self.case.coding_system is None:
            raise ClinicalInputError("Please select a coding system before saving.")

        record = await store.add(
            HistoryRecordCreate(
                clinical_text=self.case.clinical_text,
                coding_system=self.case.coding_system,
                extracted_concepts=list(self.concepts),
                suggested_diagnoses=diagnoses,
                source_file_name=self.case.source_file_name,
                clinical_summary=self.summary,
            )
        )
        logger.info("Session %s saved as history entry %d", self.id, record.id)
        return record

    def load_record(self, record: HistoryRecord) -> None:
        """Replace the session with a copy of ``record``; in-flight work is dropped."""
        self._case_epoch += 1
        self.orchestrator.supersede()
        self.case = ClinicalCase(
            clinical_text=record.clinical_text,
            coding_system=record.coding_system,
            source_file_name=record.source_file_name,
        )
        self.concepts = list(record.extracted_concepts)
        self.curation.load(record.suggested_diagnoses)
        self.summary = record.clinical_summary
        self.ingestion_error = None
        self.suggestion_error = None
        self.summary_error = None
        logger.info("Session %s loaded history entry %d", self.id, record.id)

    # --- Read model ---

    def snapshot(self, warnings: list[str] | None = None) -> SessionSnapshot:
        state = self.orchestrator.state
        return SessionSnapshot(
            id=self.id,
            clinical_text=self.case.clinical_text,
            coding_system=self.case.coding_system,
            source_file_name=self.case.source_file_name,
            extracted_concepts=list(self.concepts),
            suggested_diagnoses=self.curation.items,
            clinical_summary=self.summary,
            ingestion_error=self.ingestion_error,
            suggestion_error=self.suggestion_error,
            summary_error=self.summary_error,
            orchestration=OrchestrationStatus(
                phase=state.phase.value,
                generation=state.generation,
                attempt=state.attempt,
                max_attempts=state.max_attempts,
            ),
            warnings=warnings or [],
        )


class SessionRegistry:
    """In-memory sessions keyed by id, expired after ``idle_timeout`` seconds unused."""

    def __init__(
        self,
        idle_timeout: float = SESSION_IDLE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._sessions: dict[str, DiagnosisSession] = {}
        self._last_used: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self) -> DiagnosisSession:
        self.sweep()
        session = DiagnosisSession()
        self._sessions[session.id] = session
        self._last_used[session.id] = self._clock()
        logger.info("Created session %s", session.id)
        return session

    def get(self, session_id: str) -> DiagnosisSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        now = self._clock()
        if now - self._last_used[session_id] > self.idle_timeout:
            self.remove(session_id)
            logger.info("Session %s expired", session_id)
            return None
        self._last_used[session_id] = now
        return session

    def sweep(self) -> int:
        """Drop every session idle longer than the timeout; returns how many went."""
        cutoff = self._clock() - self.idle_timeout
        expired = [sid for sid, used in self._last_used.items() if used < cutoff]
        for session_id in expired:
            self.remove(session_id)
        if expired:
            logger.info("Expired %d idle sessions", len(expired))
        return len(expired)

    def remove(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        self._last_used.pop(session_id, None)
        if session is not None:
            session.orchestrator.supersede()

    def clear(self) -> None:
        self._sessions.clear()
        self._last_used.clear()


sessions = SessionRegistry()
