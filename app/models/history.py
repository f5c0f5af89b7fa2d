from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.base import CamelModel
from app.models.clinical import CodingSystem, DiagnosisSuggestion


class HistoryRecordCreate(CamelModel):
    clinical_text: str
    coding_system: CodingSystem
    extracted_concepts: list[str] = []
    suggested_diagnoses: list[DiagnosisSuggestion] = []
    source_file_name: str | None = None
    clinical_summary: str | None = None


class HistoryRecord(HistoryRecordCreate):
    id: int
    timestamp: float


# --- Import payload (strict: no coercion of strings into numbers etc.) ---


class HistoryImportDiagnosis(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, strict=True, allow_inf_nan=False
    )

    code: str
    description: str
    confidence: float = Field(ge=0.0, le=1.0)
    id: str
    is_principal: bool = False
    is_selected: bool = False


class HistoryImportEntry(BaseModel):
    """One element of an imported history array. Any ``id`` is ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, strict=True, allow_inf_nan=False
    )

    timestamp: float
    clinical_text: str
    coding_system: CodingSystem = Field(strict=False)
    extracted_concepts: list[str]
    suggested_diagnoses: list[HistoryImportDiagnosis]
    source_file_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("sourceFileName", "fileName", "source_file_name"),
    )
    clinical_summary: str | None = None

    def to_record(self) -> HistoryRecordCreate:
        return HistoryRecordCreate(
            clinical_text=self.clinical_text,
            coding_system=self.coding_system,
            extracted_concepts=list(self.extracted_concepts),
            suggested_diagnoses=[
                DiagnosisSuggestion.model_validate(d.model_dump()) for d in self.suggested_diagnoses
            ],
            source_file_name=self.source_file_name,
            clinical_summary=self.clinical_summary,
        )
