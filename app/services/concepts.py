import logging

from app.models.clinical import ConceptList
from app.services.llm import get_llm_client

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a medical expert extracting clinical concepts from documentation.

Extract the clinical concepts and symptoms mentioned in the document text, in the
order they appear. Return short labels only (e.g. "fever", "productive cough").

Return JSON with a single key "clinical_concepts" holding a list of strings."""


async def extract_concepts(document_text: str) -> list[str]:
    """Extract an ordered list of clinical concepts from ``document_text``."""
    client = get_llm_client()
    result = await client.generate_json(
        system=SYSTEM_PROMPT,
        user=f"Document Text:\n{document_text}",
        response_model=ConceptList,
        max_tokens=1024,
    )
    concepts = [c.strip() for c in result.clinical_concepts if c and c.strip()]
    logger.info("Extracted %d clinical concepts", len(concepts))
    return concepts
