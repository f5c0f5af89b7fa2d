import logging

from app.config import SUMMARY_LANGUAGE
from app.models.clinical import ClinicalSummary
from app.services.llm import get_llm_client

logger = logging.getLogger(__name__)

SUMMARY_PROMPT = """You are an expert medical summarizer.

Summarize the clinical notes {language_clause}, highlighting the most important
information about the patient's history and current condition. Be concise and accurate.

Return JSON with a single key "summary"."""


def _language_clause() -> str:
    return f"in {SUMMARY_LANGUAGE}" if SUMMARY_LANGUAGE else "in the language of the notes"


async def summarize_clinical_notes(clinical_notes: str) -> str:
    """Return a concise summary of ``clinical_notes``."""
    client = get_llm_client()
    result = await client.generate_json(
        system=SUMMARY_PROMPT.format(language_clause=_language_clause()),
        user=f"Clinical Notes:\n{clinical_notes}",
        response_model=ClinicalSummary,
        max_tokens=1024,
    )
    return result.summary.strip()
