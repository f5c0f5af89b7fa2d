"""Concurrent concept extraction + diagnosis suggestion with joint retry.

Both operations run against the same input and settle independently. If either
failed with a transient error and attempts remain, both are re-run together
after the next scheduled delay. Partial success is a normal outcome.

The orchestrator is a small state machine (idle, running, retrying, settled).
Every ``run`` starts a new generation; a run whose generation is no longer
current stops at its next transition and reports itself as superseded, so its
late results are never committed.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from app.config import SUGGESTION_RETRY_DELAYS
from app.models.clinical import CodingSystem, DiagnosisCandidate, DiagnosisSuggestion
from app.services import concepts, diagnoses
from app.services.curation import mint_suggestion
from app.services.errors import CombinedSuggestionError, SuggestionError
from app.services.retry import RetryNotice, RetryObserver, is_retryable, notify

logger = logging.getLogger(__name__)

ConceptOperation = Callable[[str], Awaitable[list[str]]]
DiagnosisOperation = Callable[[str, CodingSystem], Awaitable[list[DiagnosisCandidate]]]

_OPERATION_LABELS = {
    "concepts": "Concept extraction",
    "diagnoses": "Diagnosis suggestion",
}


class OrchestrationPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    RETRYING = "retrying"
    SETTLED = "settled"


@dataclass(frozen=True)
class OrchestrationState:
    phase: OrchestrationPhase = OrchestrationPhase.IDLE
    generation: int = 0
    attempt: int = 0
    max_attempts: int = 0

    def as_event(self) -> dict:
        return {
            "type": "suggestion_state",
            "phase": self.phase.value,
            "generation": self.generation,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
        }


StateListener = Callable[[OrchestrationState], Awaitable[None] | None]


@dataclass
class Settled:
    value: Any = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def _settle(awaitable: Awaitable[Any]) -> Settled:
    try:
        return Settled(value=await awaitable)
    except Exception as exc:
        return Settled(error=exc)


@dataclass
class SuggestionOutcome:
    generation: int
    attempts: int
    superseded: bool = False
    concepts: list[str] | None = None
    diagnoses: list[DiagnosisSuggestion] | None = None
    concept_error: SuggestionError | None = None
    diagnosis_error: SuggestionError | None = None
    invocations: dict[str, int] = field(default_factory=dict)

    @property
    def errors(self) -> list[SuggestionError]:
        return [err for err in (self.concept_error, self.diagnosis_error) if err is not None]

    def raise_for_errors(self) -> None:
        """Raise the failed operation's error, or one combined error if both failed."""
        errors = self.errors
        if len(errors) == 2:
            raise CombinedSuggestionError(errors)
        if errors:
            raise errors[0]


def _operation_error(operation: str, error: Exception, attempts: int) -> SuggestionError:
    label = _OPERATION_LABELS[operation]
    if is_retryable(error):
        return SuggestionError(
            operation,
            f"{label} failed: the AI service is still overloaded after {attempts} attempts. "
            "Wait a moment and try again.",
            exhausted=True,
        )
    return SuggestionError(
        operation,
        f"{label} failed: {error}. Review the clinical text and try again.",
    )


class SuggestionOrchestrator:
    def __init__(
        self,
        *,
        extract_concepts: ConceptOperation | None = None,
        suggest_diagnoses: DiagnosisOperation | None = None,
        delays: Sequence[float] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        listener: StateListener | None = None,
    ) -> None:
        self._extract_concepts = extract_concepts
        self._suggest_diagnoses = suggest_diagnoses
        self.delays = list(SUGGESTION_RETRY_DELAYS if delays is None else delays)
        self._sleep = sleep
        self._listener = listener
        self._state = OrchestrationState(max_attempts=self.max_attempts)

    @property
    def max_attempts(self) -> int:
        return len(self.delays) + 1

    @property
    def state(self) -> OrchestrationState:
        return self._state

    def supersede(self) -> int:
        """Invalidate any in-flight run without starting a new one."""
        self._state = OrchestrationState(
            phase=OrchestrationPhase.IDLE,
            generation=self._state.generation + 1,
            max_attempts=self.max_attempts,
        )
        return self._state.generation

    def _is_current(self, generation: int) -> bool:
        return self._state.generation == generation

    async def _transition(self, state: OrchestrationState) -> None:
        self._state = state
        if self._listener is None:
            return
        try:
            result = self._listener(state)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Orchestration state listener failed")

    async def run(
        self,
        clinical_text: str,
        coding_system: CodingSystem,
        *,
        on_retry: RetryObserver | None = None,
    ) -> SuggestionOutcome:
        extract = self._extract_concepts or concepts.extract_concepts
        suggest = self._suggest_diagnoses or diagnoses.suggest_diagnoses
        max_attempts = self.max_attempts
        generation = self._state.generation + 1
        invocations = {"concepts": 0, "diagnoses": 0}

        attempt = 1
        await self._transition(
            OrchestrationState(OrchestrationPhase.RUNNING, generation, attempt, max_attempts)
        )
        while True:
            invocations["concepts"] += 1
            invocations["diagnoses"] += 1
            concept_result, diagnosis_result = await asyncio.gather(
                _settle(extract(clinical_text)),
                _settle(suggest(clinical_text, coding_system)),
            )
            if not self._is_current(generation):
                return self._superseded(generation, attempt, invocations)

            retryable = [
                result.error
                for result in (concept_result, diagnosis_result)
                if result.error is not None and is_retryable(result.error)
            ]
            if retryable and attempt < max_attempts:
                delay = self.delays[attempt - 1]
                logger.warning(
                    "Suggestion attempt %d/%d hit a transient error (%s); retrying both in %.1fs",
                    attempt, max_attempts, retryable[0], delay,
                )
                await self._transition(replace(self._state, phase=OrchestrationPhase.RETRYING))
                await notify(on_retry, RetryNotice(attempt, max_attempts, delay, retryable[0]))
                await self._sleep(delay)
                if not self._is_current(generation):
                    return self._superseded(generation, attempt, invocations)
                attempt += 1
                await self._transition(
                    OrchestrationState(OrchestrationPhase.RUNNING, generation, attempt, max_attempts)
                )
                continue

            outcome = self._finalize(generation, attempt, concept_result, diagnosis_result)
            outcome.invocations = invocations
            await self._transition(replace(self._state, phase=OrchestrationPhase.SETTLED))
            return outcome

    def _finalize(
        self,
        generation: int,
        attempts: int,
        concept_result: Settled,
        diagnosis_result: Settled,
    ) -> SuggestionOutcome:
        outcome = SuggestionOutcome(generation=generation, attempts=attempts)

        if concept_result.ok:
            outcome.concepts = list(concept_result.value or [])
        else:
            logger.error("Concept extraction failed: %s", concept_result.error)
            outcome.concept_error = _operation_error("concepts", concept_result.error, attempts)

        if diagnosis_result.ok:
            outcome.diagnoses = [mint_suggestion(c) for c in diagnosis_result.value or []]
        else:
            logger.error("Diagnosis suggestion failed: %s", diagnosis_result.error)
            outcome.diagnosis_error = _operation_error("diagnoses", diagnosis_result.error, attempts)

        logger.info(
            "Suggestions settled after %d attempt(s): concepts=%s diagnoses=%s",
            attempts,
            "ok" if concept_result.ok else "failed",
            "ok" if diagnosis_result.ok else "failed",
        )
        return outcome

    def _superseded(self, generation: int, attempt: int, invocations: dict[str, int]) -> SuggestionOutcome:
        logger.info("Discarding results of superseded suggestion run (generation %d)", generation)
        return SuggestionOutcome(
            generation=generation,
            attempts=attempt,
            superseded=True,
            invocations=invocations,
        )
