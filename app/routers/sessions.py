import logging
import mimetypes

from fastapi import APIRouter, File, Form, HTTPException, UploadFile

from app.config import MAX_UPLOAD_BYTES
from app.database import get_db
from app.models.clinical import DocumentStrategy
from app.models.history import HistoryRecord
from app.models.session import ReorderRequest, SessionSnapshot, SuggestionRequest
from app.services.errors import (
    ClinicalInputError,
    DiagnosisNotFoundError,
    DocumentIngestionError,
    HistoryRecordNotFoundError,
    HistoryStoreError,
    NothingToSaveError,
    SuggestionError,
    SummaryError,
    UnsupportedFileTypeError,
)
from app.services.history import get_history_store
from app.services.ingestion import DocumentUpload
from app.services.preferences import get_document_strategy
from app.services.session import DiagnosisSession, sessions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _get_session(session_id: str) -> DiagnosisSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.post("", response_model=SessionSnapshot)
async def create_session():
    """Start a new, empty diagnosis session."""
    return sessions.create().snapshot()


@router.get("/{session_id}", response_model=SessionSnapshot)
async def get_session(session_id: str):
    return _get_session(session_id).snapshot()


@router.delete("/{session_id}")
async def delete_session(session_id: str):
    _get_session(session_id)
    sessions.remove(session_id)
    return {"id": session_id, "deleted": True}


@router.post("/{session_id}/document", response_model=SessionSnapshot)
async def upload_document(
    session_id: str,
    file: UploadFile = File(...),
    strategy: DocumentStrategy | None = Form(None),
):
    """Replace the clinical text with the text of an uploaded file."""
    session = _get_session(session_id)
    content = await file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File too large")

    mime_type = file.content_type or ""
    if not mime_type or mime_type == "application/octet-stream":
        mime_type = mimetypes.guess_type(file.filename or "")[0] or mime_type

    if strategy is None:
        strategy = await get_document_strategy(await get_db())

    upload = DocumentUpload(file_name=file.filename, mime_type=mime_type, content=content)
    try:
        await session.load_file(upload, strategy)
    except UnsupportedFileTypeError as e:
        raise HTTPException(status_code=415, detail=e.message)
    except DocumentIngestionError as e:
        if e.kind == "read":
            raise HTTPException(status_code=422, detail=e.message)
        return session.snapshot(warnings=[e.message])
    return session.snapshot()


@router.post("/{session_id}/suggestions", response_model=SessionSnapshot)
async def request_suggestions(session_id: str, body: SuggestionRequest):
    """Extract concepts and suggest diagnoses; partial success returns warnings."""
    session = _get_session(session_id)
    try:
        await session.submit(body.clinical_text, body.coding_system)
    except ClinicalInputError as e:
        raise HTTPException(status_code=422, detail=e.message)
    except SuggestionError as e:
        return session.snapshot(warnings=[e.message])
    return session.snapshot()


@router.post("/{session_id}/summary", response_model=SessionSnapshot)
async def request_summary(session_id: str):
    session = _get_session(session_id)
    try:
        await session.summarize()
    except ClinicalInputError as e:
        raise HTTPException(status_code=422, detail=e.message)
    except SummaryError as e:
        return session.snapshot(warnings=[e.message])
    return session.snapshot()


@router.post("/{session_id}/diagnoses/reorder", response_model=SessionSnapshot)
async def reorder_diagnoses(session_id: str, body: ReorderRequest):
    session = _get_session(session_id)
    try:
        session.curation.reorder(body.source_id, body.target_id)
    except DiagnosisNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return session.snapshot()


@router.post("/{session_id}/diagnoses/{diagnosis_id}/principal", response_model=SessionSnapshot)
async def set_principal_diagnosis(session_id: str, diagnosis_id: str):
    session = _get_session(session_id)
    try:
        session.curation.set_principal(diagnosis_id)
    except DiagnosisNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return session.snapshot()


@router.post("/{session_id}/diagnoses/{diagnosis_id}/selected", response_model=SessionSnapshot)
async def toggle_selected_diagnosis(session_id: str, diagnosis_id: str):
    session = _get_session(session_id)
    try:
        session.curation.toggle_selected(diagnosis_id)
    except DiagnosisNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return session.snapshot()


@router.delete("/{session_id}/diagnoses", response_model=SessionSnapshot)
async def clear_diagnoses(session_id: str):
    session = _get_session(session_id)
    session.curation.clear()
    return session.snapshot()


@router.post("/{session_id}/save", response_model=HistoryRecord)
async def save_session(session_id: str):
    """Persist the current case into the history."""
    session = _get_session(session_id)
    store = await get_history_store()
    try:
        return await session.save(store)
    except (NothingToSaveError, ClinicalInputError) as e:
        raise HTTPException(status_code=422, detail=e.message)
    except HistoryStoreError as e:
        raise HTTPException(status_code=500, detail=e.message)


@router.post("/{session_id}/load/{record_id}", response_model=SessionSnapshot)
async def load_history_entry(session_id: str, record_id: int):
    """Load a copy of a history entry into the session."""
    session = _get_session(session_id)
    store = await get_history_store()
    try:
        record = await store.get(record_id)
    except HistoryRecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    session.load_record(record)
    return session.snapshot()
