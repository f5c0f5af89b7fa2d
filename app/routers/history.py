import logging
from datetime import UTC, datetime

from fastapi import APIRouter, File, HTTPException, Response, UploadFile

from app.models.history import HistoryRecord
from app.models.session import ImportResult
from app.services.errors import HistoryImportError, HistoryRecordNotFoundError, HistoryStoreError
from app.services.history import get_history_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/history", tags=["history"])


@router.get("", response_model=list[HistoryRecord])
async def list_history():
    """All saved analyses, most recent first."""
    store = await get_history_store()
    return await store.list()


@router.get("/export")
async def export_history():
    """Download the whole history as a JSON array."""
    store = await get_history_store()
    payload = await store.export_all()
    filename = f"diagcode_history_{datetime.now(UTC).date().isoformat()}.json"
    return Response(
        content=payload,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/import", response_model=ImportResult)
async def import_history(file: UploadFile = File(...)):
    """Replace the whole history with the contents of an exported file."""
    store = await get_history_store()
    raw = await file.read()
    try:
        imported = await store.import_replace(raw)
    except HistoryImportError as e:
        raise HTTPException(
            status_code=422,
            detail={"message": e.message, "errors": e.details.get("errors", [])},
        )
    except HistoryStoreError as e:
        raise HTTPException(status_code=500, detail=e.message)
    return ImportResult(imported=imported)


@router.get("/{record_id}", response_model=HistoryRecord)
async def get_history_entry(record_id: int):
    store = await get_history_store()
    try:
        return await store.get(record_id)
    except HistoryRecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.delete("/{record_id}")
async def delete_history_entry(record_id: int):
    store = await get_history_store()
    try:
        await store.delete(record_id)
    except HistoryRecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except HistoryStoreError as e:
        raise HTTPException(status_code=500, detail=e.message)
    return {"id": record_id, "deleted": True}


@router.delete("")
async def clear_history():
    store = await get_history_store()
    try:
        deleted = await store.clear()
    except HistoryStoreError as e:
        raise HTTPException(status_code=500, detail=e.message)
    return {"deleted": deleted}
