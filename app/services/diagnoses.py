import logging

from app.models.clinical import CodingSystem, DiagnosisCandidate, DiagnosisList
from app.services.llm import get_llm_client

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an assistant specialized in suggesting diagnosis codes from clinical text.

Given the clinical text and the selected coding system, generate a prioritized list of
suggested diagnoses. Each item has:
- code: the diagnosis code in the selected coding system
- description: the description of the diagnosis
- confidence: confidence level of the suggestion between 0 and 1

Return JSON with a single key "diagnoses" holding the list, most likely first."""

_SYSTEM_LABELS = {
    CodingSystem.CIE_10: "CIE-10 (ICD-10)",
    CodingSystem.CIE_11: "CIE-11 (ICD-11)",
    CodingSystem.CIE_O: "CIE-O (ICD-O, oncology)",
}


async def suggest_diagnoses(
    clinical_text: str, coding_system: CodingSystem
) -> list[DiagnosisCandidate]:
    """Suggest prioritized diagnosis codes for ``clinical_text``."""
    client = get_llm_client()
    user_content = (
        f"Coding system: {_SYSTEM_LABELS[coding_system]}\n\n"
        f"Clinical text:\n{clinical_text}"
    )
    result = await client.generate_json(
        system=SYSTEM_PROMPT,
        user=user_content,
        response_model=DiagnosisList,
        tier="standard",
    )
    logger.info("Suggested %d diagnoses (%s)", len(result.diagnoses), coding_system.value)
    return result.diagnoses
