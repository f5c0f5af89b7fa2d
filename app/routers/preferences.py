from fastapi import APIRouter

from app.database import get_db
from app.models.session import StrategyPreference
from app.services.preferences import get_document_strategy, set_document_strategy

router = APIRouter(prefix="/api/preferences", tags=["preferences"])


@router.get("/document-strategy", response_model=StrategyPreference)
async def read_document_strategy():
    db = await get_db()
    return StrategyPreference(strategy=await get_document_strategy(db))


@router.put("/document-strategy", response_model=StrategyPreference)
async def update_document_strategy(body: StrategyPreference):
    """Choose between verbatim extraction and condensation of long documents."""
    db = await get_db()
    return StrategyPreference(strategy=await set_document_strategy(db, body.strategy))
