from app.models.base import CamelModel
from app.models.clinical import CodingSystem, DiagnosisSuggestion, DocumentStrategy


class OrchestrationStatus(CamelModel):
    phase: str
    generation: int
    attempt: int
    max_attempts: int


class SessionSnapshot(CamelModel):
    """What the clinician currently sees: inputs, results and any warnings."""

    id: str
    clinical_text: str = ""
    coding_system: CodingSystem | None = None
    source_file_name: str | None = None
    extracted_concepts: list[str] = []
    suggested_diagnoses: list[DiagnosisSuggestion] = []
    clinical_summary: str | None = None
    ingestion_error: str | None = None
    suggestion_error: str | None = None
    summary_error: str | None = None
    orchestration: OrchestrationStatus
    warnings: list[str] = []


class SuggestionRequest(CamelModel):
    clinical_text: str
    coding_system: CodingSystem


class ReorderRequest(CamelModel):
    source_id: str
    target_id: str


class StrategyPreference(CamelModel):
    strategy: DocumentStrategy


class ImportResult(CamelModel):
    imported: int
