import logging

from app.models.clinical import CondensedDocument, ExtractedText
from app.services.llm import get_llm_client

logger = logging.getLogger(__name__)

EXTRACT_PROMPT = """You are an advanced OCR and NLP system specialized in clinical documents.

Extract all relevant clinical text from the provided document (image or PDF), then
structure it clearly and concisely. Prioritize patient information, symptoms,
observations, medical history and any preliminary diagnosis.

Return JSON with a single key "extracted_text". If no meaningful text can be
extracted, return an empty string."""

CONDENSE_PROMPT = """You are a clinical documentation specialist processing an extensive document.

The document (image or PDF) may be long and contain repeated information across
visits or pages. Extract the clinically relevant content, merge duplicated
findings, drop administrative boilerplate and keep dates, results and diagnoses.

Return JSON with a single key "processed_clinical_notes"."""


async def extract_text_from_document(data_uri: str, mime_type: str) -> str:
    """Extract (OCR) the clinical text of an image or PDF data URI."""
    client = get_llm_client()
    result = await client.generate_json_from_document(
        system=EXTRACT_PROMPT,
        user=f"Document (MIME type: {mime_type}).",
        data_uri=data_uri,
        response_model=ExtractedText,
    )
    logger.info("Extracted %d characters from %s document", len(result.extracted_text), mime_type)
    return result.extracted_text


async def condense_extensive_document(data_uri: str, mime_type: str) -> str:
    """Condense a long, redundant document into de-duplicated clinical notes."""
    client = get_llm_client()
    result = await client.generate_json_from_document(
        system=CONDENSE_PROMPT,
        user=f"Extensive document (MIME type: {mime_type}).",
        data_uri=data_uri,
        response_model=CondensedDocument,
        max_tokens=8192,
    )
    logger.info(
        "Condensed %s document into %d characters", mime_type, len(result.processed_clinical_notes)
    )
    return result.processed_clinical_notes
