"""Tests for the diagnosis session (case state, save/load and stale results)."""

import asyncio

import pytest

from app.models.clinical import CodingSystem, DiagnosisCandidate, DocumentStrategy
from app.models.history import HistoryRecordCreate
from app.services.errors import (
    ClinicalInputError,
    CombinedSuggestionError,
    DocumentIngestionError,
    NothingToSaveError,
    SuggestionError,
    SummaryError,
    UnsupportedFileTypeError,
)
from app.services.event_bus import SessionEventBus
from app.services.ingestion import DocumentIngestionPipeline, DocumentUpload
from app.services.orchestrator import SuggestionOrchestrator
from app.services.session import DiagnosisSession, SessionRegistry

CLINICAL_TEXT = "Fever and cough for three days."
PNEUMONIA = DiagnosisCandidate(code="J18.9", description="Pneumonia", confidence=0.82)
BRONCHITIS = DiagnosisCandidate(code="J20.9", description="Acute bronchitis", confidence=0.4)


@pytest.fixture
def bus():
    return SessionEventBus()


@pytest.fixture
def make_session(script, sleep_recorder, bus):
    def _make(
        concepts=(["fever", "cough"],),
        diagnoses=([PNEUMONIA, BRONCHITIS],),
        document="Scanned clinical notes",
        summary="Patient with fever.",
    ):
        orchestrator = SuggestionOrchestrator(
            extract_concepts=script(*concepts),
            suggest_diagnoses=script(*diagnoses),
            delays=[1, 2, 3],
            sleep=sleep_recorder,
        )
        ingestion = DocumentIngestionPipeline(
            extract=script(document),
            condense=script(f"condensed: {document}"),
            delays=[1, 2, 3],
            sleep=sleep_recorder,
        )
        return DiagnosisSession(
            orchestrator=orchestrator,
            ingestion=ingestion,
            summarize=script(summary),
            bus=bus,
        )

    return _make


class TestSubmit:
    async def test_success_commits_results(self, make_session):
        session = make_session()
        await session.submit(CLINICAL_TEXT, "CIE-10")

        assert session.case.coding_system == CodingSystem.CIE_10
        assert session.concepts == ["fever", "cough"]
        assert [d.code for d in session.curation.items] == ["J18.9", "J20.9"]
        assert session.suggestion_error is None

    async def test_short_text_rejected_before_any_call(self, make_session):
        session = make_session()
        with pytest.raises(ClinicalInputError):
            await session.submit("too short", CodingSystem.CIE_10)
        assert session.orchestrator.state.generation == 0

    @pytest.mark.parametrize("coding_system", [None, "", "ICD-9"])
    async def test_coding_system_required(self, make_session, coding_system):
        with pytest.raises(ClinicalInputError):
            await make_session().submit(CLINICAL_TEXT, coding_system)

    async def test_resubmit_clears_results_but_keeps_summary(self, make_session):
        session = make_session(diagnoses=([PNEUMONIA], ValueError("malformed")))
        await session.submit(CLINICAL_TEXT, CodingSystem.CIE_10)
        await session.summarize()

        with pytest.raises(SuggestionError):
            await session.submit(CLINICAL_TEXT + " Worse today.", CodingSystem.CIE_10)

        assert session.curation.items == []
        assert session.concepts == ["fever", "cough"]
        assert session.summary == "Patient with fever."
        assert "malformed" in session.suggestion_error

    async def test_partial_success_is_committed(self, make_session):
        session = make_session(concepts=(ValueError("bad schema"),))
        with pytest.raises(SuggestionError) as exc_info:
            await session.submit(CLINICAL_TEXT, CodingSystem.CIE_10)

        assert exc_info.value.operation == "concepts"
        assert session.concepts == []
        assert len(session.curation) == 2

    async def test_both_failed(self, make_session):
        session = make_session(
            concepts=(ValueError("bad schema"),), diagnoses=(ValueError("bad schema"),)
        )
        with pytest.raises(CombinedSuggestionError):
            await session.submit(CLINICAL_TEXT, CodingSystem.CIE_10)
        assert session.snapshot().suggestion_error

    async def test_events_published(self, make_session, bus):
        session = make_session(diagnoses=(Exception("overloaded"), [PNEUMONIA]))
        queue = bus.subscribe(session.id)
        await session.submit(CLINICAL_TEXT, CodingSystem.CIE_10)

        events = []
        while not queue.empty():
            events.append(queue.get_nowait())
        types = [e["type"] for e in events]
        assert types == ["suggestion_retry", "suggestions_settled"]
        assert events[0]["next_attempt"] == 2
        assert events[0]["session_id"] == session.id

    async def test_events_reach_only_that_sessions_subscribers(self, make_session, bus):
        session = make_session()
        other = make_session()
        own_queue = bus.subscribe(session.id)
        other_queue = bus.subscribe(other.id)

        await session.submit(CLINICAL_TEXT, CodingSystem.CIE_10)

        assert own_queue.get_nowait()["type"] == "suggestions_settled"
        assert other_queue.empty()

        bus.unsubscribe(session.id, own_queue)
        await session.submit(CLINICAL_TEXT, CodingSystem.CIE_10)
        assert own_queue.empty()
        assert bus._subscribers.keys() == {other.id}


class TestLoadFile:
    async def test_document_replaces_text(self, make_session):
        session = make_session()
        session.case = session.case.model_copy(
            update={"clinical_text": "old text", "coding_system": CodingSystem.CIE_O}
        )
        await session.load_file(DocumentUpload("scan.png", "image/png", b"png"))

        assert session.case.clinical_text == "Scanned clinical notes"
        assert session.case.source_file_name == "scan.png"
        assert session.case.coding_system == CodingSystem.CIE_O
        assert session.ingestion_error is None

    async def test_condense_strategy(self, make_session):
        session = make_session()
        await session.load_file(
            DocumentUpload("chart.pdf", "application/pdf", b"%PDF"), DocumentStrategy.CONDENSE
        )
        assert session.case.clinical_text == "condensed: Scanned clinical notes"

    async def test_unsupported_file_blanks_text(self, make_session):
        session = make_session()
        session.case = session.case.model_copy(update={"clinical_text": "previous text"})
        with pytest.raises(UnsupportedFileTypeError):
            await session.load_file(DocumentUpload("notes.docx", "application/msword", b"doc"))

        assert session.case.clinical_text == ""
        assert "Unsupported file type" in session.ingestion_error

    async def test_overloaded_document_leaves_placeholder(self, make_session):
        session = make_session(document=Exception("overloaded"))
        with pytest.raises(DocumentIngestionError) as exc_info:
            await session.load_file(DocumentUpload("scan.png", "image/png", b"png"))

        assert exc_info.value.kind == "overloaded"
        assert session.case.clinical_text.startswith("[Text extraction failed:")

    async def test_new_file_discards_in_flight_suggestions(self, make_session):
        release = asyncio.Event()

        async def slow_extract(text):
            await release.wait()
            return ["late concept"]

        session = make_session()
        session.orchestrator._extract_concepts = slow_extract

        task = asyncio.create_task(session.submit(CLINICAL_TEXT, CodingSystem.CIE_10))
        await asyncio.sleep(0)

        await session.load_file(DocumentUpload("new.png", "image/png", b"png"))
        release.set()
        outcome = await task

        assert outcome.superseded is True
        assert session.concepts == []
        assert session.curation.items == []
        assert session.case.clinical_text == "Scanned clinical notes"
        assert session.case.source_file_name == "new.png"
        assert session.orchestrator.state.phase.value == "idle"


class TestSummary:
    async def test_summary_requires_text(self, make_session):
        with pytest.raises(ClinicalInputError):
            await make_session().summarize()

    async def test_summary_failure_keeps_previous(self, script, make_session):
        session = make_session()
        session.case = session.case.model_copy(update={"clinical_text": CLINICAL_TEXT})
        await session.summarize()

        session._summarize = script(RuntimeError("LLM provider unavailable"))
        with pytest.raises(SummaryError):
            await session.summarize()
        assert session.summary == "Patient with fever."
        assert "unavailable" in session.summary_error

    async def test_empty_summary_is_an_error(self, make_session):
        session = make_session(summary="")
        session.case = session.case.model_copy(update={"clinical_text": CLINICAL_TEXT})
        with pytest.raises(SummaryError):
            await session.summarize()
        assert session.summary is None


class TestSaveAndLoad:
    async def test_nothing_to_save(self, make_session, store):
        session = make_session()
        with pytest.raises(NothingToSaveError):
            await session.save(store)
        assert await store.list() == []

    async def test_summary_only_save(self, make_session, store):
        session = make_session()
        session.case = session.case.model_copy(
            update={"clinical_text": CLINICAL_TEXT, "coding_system": CodingSystem.CIE_10}
        )
        await session.summarize()
        record = await session.save(store)

        assert record.suggested_diagnoses == []
        assert record.clinical_summary == "Patient with fever."

    async def test_save_snapshots_curation(self, make_session, store):
        session = make_session()
        await session.submit(CLINICAL_TEXT, CodingSystem.CIE_10)
        second = session.curation.items[1]
        session.curation.set_principal(second.id)

        record = await session.save(store)
        assert record.suggested_diagnoses[0].id == second.id
        assert record.suggested_diagnoses[0].is_principal is True
        stored = await store.get(record.id)
        assert stored.suggested_diagnoses == record.suggested_diagnoses

    async def test_load_record_is_independent_copy(self, make_session, store):
        session = make_session()
        await session.submit(CLINICAL_TEXT, CodingSystem.CIE_10)
        record = await session.save(store)

        other = make_session()
        other.load_record(await store.get(record.id))
        first = other.curation.items[0]
        other.curation.toggle_selected(first.id)

        assert other.case.clinical_text == CLINICAL_TEXT
        assert other.concepts == ["fever", "cough"]
        stored = await store.get(record.id)
        assert stored.suggested_diagnoses[0].is_selected is False

    async def test_load_record_discards_in_flight_suggestions(self, make_session, store):
        release = asyncio.Event()

        async def slow_extract(text):
            await release.wait()
            return ["late concept"]

        session = make_session()
        session.orchestrator._extract_concepts = slow_extract

        task = asyncio.create_task(session.submit(CLINICAL_TEXT, CodingSystem.CIE_10))
        await asyncio.sleep(0)

        saved = await store.add(
            HistoryRecordCreate(
                clinical_text="Loaded case text from history",
                coding_system=CodingSystem.CIE_11,
                extracted_concepts=["loaded"],
            )
        )
        session.load_record(saved)
        release.set()
        outcome = await task

        assert outcome.superseded is True
        assert session.concepts == ["loaded"]
        assert session.case.coding_system == CodingSystem.CIE_11
        assert session.curation.items == []


class TestSnapshot:
    async def test_snapshot_serializes_camel_case(self, make_session):
        session = make_session()
        await session.submit(CLINICAL_TEXT, CodingSystem.CIE_10)
        data = session.snapshot(warnings=["note"]).model_dump(mode="json", by_alias=True)

        assert data["clinicalText"] == CLINICAL_TEXT
        assert data["codingSystem"] == "CIE-10"
        assert data["orchestration"]["phase"] == "settled"
        assert data["suggestedDiagnoses"][0]["isPrincipal"] is False
        assert data["warnings"] == ["note"]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestSessionRegistry:
    def test_get_refreshes_idle_time(self):
        clock = FakeClock()
        registry = SessionRegistry(idle_timeout=60, clock=clock)
        session = registry.create()

        clock.now += 50
        assert registry.get(session.id) is session
        clock.now += 50
        assert registry.get(session.id) is session

    def test_idle_session_expires_on_get(self):
        clock = FakeClock()
        registry = SessionRegistry(idle_timeout=60, clock=clock)
        session = registry.create()

        clock.now += 61
        assert registry.get(session.id) is None
        assert len(registry) == 0

    def test_create_sweeps_idle_sessions(self):
        clock = FakeClock()
        registry = SessionRegistry(idle_timeout=60, clock=clock)
        stale = registry.create()
        clock.now += 30
        recent = registry.create()

        clock.now += 40
        fresh = registry.create()

        assert len(registry) == 2
        assert registry.get(stale.id) is None
        assert registry.get(recent.id) is recent
        assert registry.get(fresh.id) is fresh
        assert stale.orchestrator.state.generation == 1
