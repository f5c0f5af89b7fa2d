import re
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from app.models.base import CamelModel


class CodingSystem(str, Enum):
    CIE_10 = "CIE-10"
    CIE_11 = "CIE-11"
    CIE_O = "CIE-O"


class DocumentStrategy(str, Enum):
    """How an image/PDF upload is turned into clinical text."""

    STANDARD = "standard"
    CONDENSE = "condense"


class ClinicalCase(CamelModel):
    clinical_text: str = ""
    coding_system: CodingSystem | None = None
    source_file_name: str | None = None


class DiagnosisCandidate(CamelModel):
    """A diagnosis as returned by the suggestion model."""

    code: str
    description: str
    confidence: float = Field(0.0, ge=0.0, le=1.0)

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalize_confidence(cls, value: object) -> object:
        # Models occasionally answer "82%" or 82 instead of 0.82
        if isinstance(value, str):
            match = re.search(r"(\d+(?:\.\d+)?)", value)
            if not match:
                return 0.0
            value = float(match.group(1))
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if value > 1.0:
                value = value / 100.0
            return max(0.0, min(1.0, float(value)))
        return value


class DiagnosisSuggestion(DiagnosisCandidate):
    id: str
    is_principal: bool = False
    is_selected: bool = False


# --- Structured LLM responses ---


class ConceptList(BaseModel):
    clinical_concepts: list[str] = []


class DiagnosisList(BaseModel):
    diagnoses: list[DiagnosisCandidate] = []


class ExtractedText(BaseModel):
    extracted_text: str = ""


class CondensedDocument(BaseModel):
    processed_clinical_notes: str = ""


class ClinicalSummary(BaseModel):
    summary: str = ""
