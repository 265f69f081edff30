"""
Plan data model shared by the planner, the executor and the publishers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


CONFIDENCE_THRESHOLD = 0.7


class StepAction(str, Enum):
    READ = "read"
    WRITE = "write"
    EDIT = "edit"
    ANALYZE = "analyze"
    DELEGATE = "delegate"
    VALIDATE = "validate"
    EXECUTE = "execute"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)


class AgentName(str, Enum):
    CODEX = "codex"
    OPUS = "opus"
    GEMINI = "gemini"
    ANTIGRAVITY = "antigravity"


class RiskSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskCategory(str, Enum):
    BREAKING_CHANGE = "breaking-change"
    SECURITY = "security"
    PERFORMANCE = "performance"
    COMPATIBILITY = "compatibility"
    DATA_LOSS = "data-loss"
    OTHER = "other"


# Actions whose output changes artifacts and so goes through swarm review
REVIEWED_ACTIONS = frozenset([StepAction.WRITE, StepAction.EDIT, StepAction.EXECUTE])

_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.IN_PROGRESS, StepStatus.SKIPPED, StepStatus.FAILED},
    StepStatus.IN_PROGRESS: {StepStatus.COMPLETED, StepStatus.FAILED},
}


class InvalidTransitionError(Exception):
    """Raised when a step is moved to a status its current status cannot reach."""


@dataclass
class PlanStep:
    """
    One unit of work in a plan.

    Status only changes through start/complete/fail/skip; terminal
    statuses are final.
    """

    id: int
    action: StepAction
    target: str
    description: str
    assigned_agent: AgentName
    status: StepStatus = StepStatus.PENDING
    inputs: list[int] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    output: str | None = None
    error: str | None = None

    @property
    def requires_review(self) -> bool:
        return self.action in REVIEWED_ACTIONS

    def _transition(self, new_status: StepStatus) -> None:
        allowed = _TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidTransitionError(
                f"Step {self.id}: cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def start(self) -> None:
        self._transition(StepStatus.IN_PROGRESS)

    def complete(self, output: str | None = None) -> None:
        self._transition(StepStatus.COMPLETED)
        if output is not None:
            self.output = output

    def fail(self, error: str) -> None:
        self._transition(StepStatus.FAILED)
        self.error = error

    def skip(self, error: str) -> None:
        self._transition(StepStatus.SKIPPED)
        self.error = error

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "action": self.action.value,
            "target": self.target,
            "description": self.description,
            "assignedAgent": self.assigned_agent.value,
            "status": self.status.value,
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
        }
        if self.output is not None:
            data["output"] = self.output
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanStep":
        return cls(
            id=int(data["id"]),
            action=StepAction(data["action"]),
            target=data.get("target", ""),
            description=data.get("description", ""),
            assigned_agent=AgentName(data.get("assignedAgent", data.get("assigned_agent", "codex"))),
            status=StepStatus(data.get("status", "pending")),
            inputs=[int(i) for i in data.get("inputs", [])],
            outputs=list(data.get("outputs", [])),
            output=data.get("output"),
            error=data.get("error"),
        )


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


@dataclass(frozen=True)
class ConfidenceBreakdown:
    """Planner self-assessment; every score lies in [0, 1]."""

    task_clarity: float
    context_sufficiency: float
    approach_confidence: float
    execution_feasibility: float
    overall: float

    def __post_init__(self):
        for name in ("task_clarity", "context_sufficiency", "approach_confidence",
                     "execution_feasibility", "overall"):
            object.__setattr__(self, name, _clamp(getattr(self, name)))

    @classmethod
    def uniform(cls, score: float) -> "ConfidenceBreakdown":
        return cls(score, score, score, score, score)

    @classmethod
    def from_scores(
        cls,
        task_clarity: float,
        context_sufficiency: float,
        approach_confidence: float,
        execution_feasibility: float,
        overall: float | None = None,
    ) -> "ConfidenceBreakdown":
        """Build a breakdown, using the mean of the sub-scores when overall is missing."""
        if overall is None:
            overall = (task_clarity + context_sufficiency
                       + approach_confidence + execution_feasibility) / 4
        return cls(task_clarity, context_sufficiency, approach_confidence,
                   execution_feasibility, overall)

    def weak_areas(self, threshold: float = CONFIDENCE_THRESHOLD) -> list[str]:
        reasons = []
        if self.task_clarity < threshold:
            reasons.append("Task requirements are unclear")
        if self.context_sufficiency < threshold:
            reasons.append("Missing context or file information")
        if self.approach_confidence < threshold:
            reasons.append("Uncertain about the best approach")
        if self.execution_feasibility < threshold:
            reasons.append("Execution may encounter issues")
        return reasons

    def to_dict(self) -> dict[str, float]:
        return {
            "taskClarity": self.task_clarity,
            "contextSufficiency": self.context_sufficiency,
            "approachConfidence": self.approach_confidence,
            "executionFeasibility": self.execution_feasibility,
            "overall": self.overall,
        }


@dataclass(frozen=True)
class Risk:
    severity: RiskSeverity
    category: RiskCategory
    description: str
    mitigation: str = ""
    affected_steps: tuple[int, ...] = ()

    @property
    def is_severe(self) -> bool:
        return self.severity in (RiskSeverity.HIGH, RiskSeverity.CRITICAL)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "category": self.category.value,
            "description": self.description,
            "mitigation": self.mitigation,
            "affectedSteps": list(self.affected_steps),
        }


@dataclass(frozen=True)
class PlanAnalysis:
    understanding: str
    approach: str
    rationale: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "understanding": self.understanding,
            "approach": self.approach,
            "rationale": self.rationale,
        }


@dataclass(frozen=True)
class PlanResponse:
    """
    A complete plan as produced by the planner.

    The response is immutable. Executors copy the steps before advancing
    them, so the response always reflects the plan as proposed.
    """

    plan_id: str
    analysis: PlanAnalysis
    steps: tuple[PlanStep, ...]
    risks: tuple[Risk, ...]
    confidence: ConfidenceBreakdown
    estimated_tokens: int = 0

    @property
    def requires_approval(self) -> bool:
        return self.confidence.overall < CONFIDENCE_THRESHOLD

    @property
    def severe_risks(self) -> list[Risk]:
        return [r for r in self.risks if r.is_severe]

    def to_dict(self) -> dict[str, Any]:
        return {
            "planId": self.plan_id,
            "analysis": self.analysis.to_dict(),
            "steps": [s.to_dict() for s in self.steps],
            "risks": [r.to_dict() for r in self.risks],
            "confidence": self.confidence.to_dict(),
            "requiresApproval": self.requires_approval,
            "estimatedTokens": self.estimated_tokens,
        }
