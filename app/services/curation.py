import logging
import uuid
from collections.abc import Iterable

from app.models.clinical import DiagnosisCandidate, DiagnosisSuggestion
from app.services.errors import DiagnosisNotFoundError

logger = logging.getLogger(__name__)


def mint_suggestion(candidate: DiagnosisCandidate) -> DiagnosisSuggestion:
    """Wrap a model candidate with a fresh surrogate id, unflagged."""
    return DiagnosisSuggestion(
        id=f"{candidate.code}-{uuid.uuid4().hex[:12]}",
        code=candidate.code,
        description=candidate.description,
        confidence=candidate.confidence,
        is_principal=False,
        is_selected=False,
    )


class DiagnosisCuration:
    """The clinician-editable list of suggested diagnoses.

    Every operation builds a new list and swaps it in whole, and at most one
    item is ever principal.
    """

    def __init__(self, items: Iterable[DiagnosisSuggestion] = ()) -> None:
        self._items: list[DiagnosisSuggestion] = [item.model_copy() for item in items]

    @property
    def items(self) -> list[DiagnosisSuggestion]:
        return [item.model_copy() for item in self._items]

    def __len__(self) -> int:
        return len(self._items)

    def _index_of(self, diagnosis_id: str) -> int:
        for index, item in enumerate(self._items):
            if item.id == diagnosis_id:
                return index
        raise DiagnosisNotFoundError(diagnosis_id)

    def replace(self, candidates: Iterable[DiagnosisCandidate]) -> list[DiagnosisSuggestion]:
        """Replace the list with freshly minted suggestions."""
        self._items = [mint_suggestion(candidate) for candidate in candidates]
        return self.items

    def load(self, suggestions: Iterable[DiagnosisSuggestion]) -> None:
        """Replace the list with existing suggestions, ids kept."""
        items = [item.model_copy() for item in suggestions]
        principal_seen = False
        for item in items:
            if item.is_principal:
                if principal_seen:
                    item.is_principal = False
                principal_seen = True
        self._items = items

    def set_principal(self, diagnosis_id: str) -> list[DiagnosisSuggestion]:
        index = self._index_of(diagnosis_id)
        updated = [
            item.model_copy(update={"is_principal": i == index})
            for i, item in enumerate(self._items)
        ]
        principal = updated.pop(index)
        self._items = [principal, *updated]
        logger.debug("Principal diagnosis set to %s", diagnosis_id)
        return self.items

    def toggle_selected(self, diagnosis_id: str) -> list[DiagnosisSuggestion]:
        index = self._index_of(diagnosis_id)
        updated = list(self._items)
        target = updated[index]
        updated[index] = target.model_copy(update={"is_selected": not target.is_selected})
        self._items = updated
        return self.items

    def reorder(self, source_id: str, target_id: str) -> list[DiagnosisSuggestion]:
        """Move ``source_id`` to the index currently held by ``target_id``."""
        if source_id == target_id:
            return self.items
        old_index = self._index_of(source_id)
        new_index = self._index_of(target_id)
        updated = list(self._items)
        moved = updated.pop(old_index)
        updated.insert(new_index, moved)
        self._items = updated
        return self.items

    def clear(self) -> None:
        self._items = []
