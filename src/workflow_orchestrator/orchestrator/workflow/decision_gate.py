"""Conditional knowledge-base consultation before delegation.

Policy:
  - simple/routine/low-risk work skips the lookup
  - complex/novel/high-risk work consults the knowledge source, then either
    proceeds (sufficient result) or escalates (insufficient result)
  - an ambiguous assessment is never guessed at; it asks for guidance

Escalation and guidance both suspend the task. The gate never proceeds on its own
once escalation is reached.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .definitions import GateConfig
from .knowledge import KnowledgeResult, KnowledgeSource

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    SKIP = "skip"
    CONSULT_THEN_PROCEED = "consult_then_proceed"
    CONSULT_THEN_ESCALATE = "consult_then_escalate"
    ASK_FOR_GUIDANCE = "ask_for_guidance"

    @property
    def suspends(self) -> bool:
        return self in (Decision.CONSULT_THEN_ESCALATE, Decision.ASK_FOR_GUIDANCE)


class Complexity(str, Enum):
    SIMPLE = "simple"
    COMPLEX = "complex"
    AMBIGUOUS = "ambiguous"


class SuggestedAction(str, Enum):
    EXTERNAL_SEARCH = "external_search"
    READ_FILE = "read_file"
    ASK_CLARIFICATION = "ask_clarification"
    PROCEED_FLAGGED_UNCERTAIN = "proceed_flagged_uncertain"


SIMPLE_LABELS = frozenset({"simple", "routine", "low-risk", "low_risk"})
COMPLEX_LABELS = frozenset({"complex", "novel", "high-risk", "high_risk"})


@dataclass(frozen=True, slots=True)
class EscalationRequest:
    missing_information: str
    question: str
    suggested_actions: tuple[SuggestedAction, ...]

    def __post_init__(self) -> None:
        if not self.suggested_actions:
            raise ValueError("An escalation must suggest at least one next action")

    def to_json(self) -> dict[str, object]:
        return {
            "missing_information": self.missing_information,
            "question": self.question,
            "suggested_actions": [a.value for a in self.suggested_actions],
        }


@dataclass(frozen=True, slots=True)
class ComplexityAssessment:
    estimate: Complexity
    confidence: float


@dataclass(frozen=True, slots=True)
class GateContext:
    """Everything one evaluation needs. Passed explicitly; there is no ambient task."""

    task_id: str
    step_id: str
    config: GateConfig
    metadata: Mapping[str, Any] = field(default_factory=dict)
    guidance: str | None = None

    @property
    def keywords(self) -> tuple[str, ...]:
        extra = self.metadata.get("keywords")
        from_metadata = tuple(str(k) for k in extra) if isinstance(extra, list | tuple) else ()
        return tuple(dict.fromkeys(self.config.keywords + from_metadata))


@dataclass(frozen=True, slots=True)
class DecisionContext:
    task_complexity_estimate: Complexity
    confidence: float
    kb_consulted: bool = False
    kb_sufficient: bool = False


@dataclass(frozen=True, slots=True)
class GateDecision:
    decision: Decision
    knowledge: str | None = None
    escalation: EscalationRequest | None = None


class ComplexityAssessor(Protocol):
    def assess(self, context: GateContext) -> ComplexityAssessment: ...


class MetadataComplexityAssessor:
    """Reads `complexity` and `complexity_confidence` from task metadata."""

    def assess(self, context: GateContext) -> ComplexityAssessment:
        label = str(context.metadata.get("complexity", "")).strip().lower()
        if label in SIMPLE_LABELS:
            estimate = Complexity.SIMPLE
        elif label in COMPLEX_LABELS:
            estimate = Complexity.COMPLEX
        else:
            return ComplexityAssessment(estimate=Complexity.AMBIGUOUS, confidence=0.0)

        raw_confidence = context.metadata.get("complexity_confidence", 1.0)
        try:
            confidence = float(raw_confidence)
        except (TypeError, ValueError):
            confidence = 0.0
        return ComplexityAssessment(estimate=estimate, confidence=confidence)


class DecisionGate:
    def __init__(
        self,
        knowledge: KnowledgeSource,
        assessor: ComplexityAssessor | None = None,
        *,
        default_min_confidence: float = 0.5,
    ) -> None:
        self._knowledge = knowledge
        self._assessor = assessor or MetadataComplexityAssessor()
        self._default_min_confidence = default_min_confidence

    def evaluate(self, context: GateContext) -> GateDecision:
        extra = {"task_id": context.task_id, "step_id": context.step_id}

        if context.guidance is not None:
            logger.info("Proceeding with supplied guidance", extra=extra)
            return GateDecision(decision=Decision.CONSULT_THEN_PROCEED, knowledge=context.guidance)

        assessment = self._assessor.assess(context)
        estimate = assessment.estimate
        threshold = context.config.min_confidence
        if threshold is None:
            threshold = self._default_min_confidence
        below_threshold = assessment.confidence < threshold
        if estimate != Complexity.AMBIGUOUS and below_threshold:
            estimate = Complexity.AMBIGUOUS
        state = DecisionContext(task_complexity_estimate=estimate, confidence=assessment.confidence)

        if state.task_complexity_estimate == Complexity.SIMPLE:
            logger.debug("Knowledge lookup skipped for simple task", extra=extra)
            return GateDecision(decision=Decision.SKIP)

        if state.task_complexity_estimate == Complexity.AMBIGUOUS:
            logger.info(
                "Complexity assessment ambiguous; asking for guidance",
                extra={**extra, "confidence": state.confidence},
            )
            return GateDecision(
                decision=Decision.ASK_FOR_GUIDANCE,
                escalation=EscalationRequest(
                    missing_information="Task complexity could not be assessed with confidence",
                    question=(
                        f"Is step {context.step_id!r} of task {context.task_id!r} routine, "
                        "or does it need reference material before it is delegated?"
                    ),
                    suggested_actions=(SuggestedAction.ASK_CLARIFICATION,),
                ),
            )

        result = self._consult(context)
        sufficient = (
            result.found and len(result.content.strip()) >= context.config.min_content_length
        )
        state = DecisionContext(
            task_complexity_estimate=state.task_complexity_estimate,
            confidence=state.confidence,
            kb_consulted=True,
            kb_sufficient=sufficient,
        )
        if state.kb_sufficient:
            logger.info(
                "Knowledge consulted; proceeding",
                extra={**extra, "sources": list(result.sources)},
            )
            return GateDecision(decision=Decision.CONSULT_THEN_PROCEED, knowledge=result.content)

        keywords = ", ".join(context.keywords) or "(none)"
        logger.warning("Knowledge insufficient; escalating", extra={**extra, "keywords": keywords})
        return GateDecision(
            decision=Decision.CONSULT_THEN_ESCALATE,
            escalation=EscalationRequest(
                missing_information=f"No sufficient reference material for keywords: {keywords}",
                question=(
                    f"Step {context.step_id!r} of task {context.task_id!r} is complex and the "
                    "knowledge base had nothing usable. How should it proceed?"
                ),
                suggested_actions=(
                    SuggestedAction.EXTERNAL_SEARCH,
                    SuggestedAction.READ_FILE,
                    SuggestedAction.ASK_CLARIFICATION,
                    SuggestedAction.PROCEED_FLAGGED_UNCERTAIN,
                ),
            ),
        )

    def _consult(self, context: GateContext) -> KnowledgeResult:
        try:
            return self._knowledge.lookup(list(context.keywords))
        except Exception:
            # A broken lookup counts as insufficient knowledge, which escalates.
            logger.exception(
                "Knowledge lookup failed",
                extra={"task_id": context.task_id, "step_id": context.step_id},
            )
            return KnowledgeResult.empty()
