"""
Planner: turns a task into a PlanResponse using the planner agent.

The planner agent is asked for a compact JSON plan. Its answer goes through
the structured-output parser chain; when nothing parses, a fixed
low-confidence fallback plan is returned so the executor always asks the
user before acting on it.
"""

import logging
import math
import time
from pathlib import Path
from typing import Any

from .adapter import ExternalAgentAdapter
from .models import (
    AgentName,
    ConfidenceBreakdown,
    PlanAnalysis,
    PlanResponse,
    PlanStep,
    Risk,
    RiskCategory,
    RiskSeverity,
    StepAction,
)
from .parsing import parse_structured

logger = logging.getLogger(__name__)

PLAN_PROMPT = """You are Opus, a planning agent. Create a plan for the following task.

Project: {project_name} ({project_type})
Key files:
{key_files}

TASK: {task}

Respond with ONLY a JSON object (no markdown, no extra text):
{{"understanding":"brief task summary","approach":"your approach","steps":[{{"id":1,"agent":"codex","type":"write","description":"what to do","target":"file.py","inputs":[]}}],"confidence":0.8,"risks":["potential risk"]}}

Agents: codex (code generation), opus (planning and reasoning), gemini (analysis), antigravity (interactive).
Step types: read, write, edit, analyze, delegate, validate, execute.
"inputs" lists the ids of steps whose output this step needs.

Keep it concise. Max 3-5 steps."""

PROJECT_INDICATORS = [
    ("pyproject.toml", "python"),
    ("setup.py", "python"),
    ("package.json", "node"),
    ("Cargo.toml", "rust"),
    ("go.mod", "go"),
]

SOURCE_SUFFIXES = (".py", ".ts", ".js")
MAX_KEY_MODULES = 5

FALLBACK_CONFIDENCE = 0.3
DEFAULT_CONFIDENCE = 0.5
DEFAULT_ESTIMATED_TOKENS = 500

_ACTION_VALUES = {a.value for a in StepAction}
_AGENT_VALUES = {a.value for a in AgentName}


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _as_score(value: Any, default: float | None) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value) if math.isfinite(value) else default


def guess_purpose(filename: str) -> str:
    name = filename.lower()
    if "orchestrat" in name:
        return "Agent orchestration"
    if "cli" in name:
        return "CLI management"
    if "config" in name:
        return "Configuration"
    if "model" in name or "type" in name:
        return "Type definitions"
    if name.startswith("__init__") or name.startswith("index") or name.startswith("main"):
        return "Entry point"
    return "Module"


def normalize_agent(agent: Any) -> AgentName:
    """Map a planner-supplied agent name to a known agent (default codex)."""
    normalized = str(agent or "codex").strip().lower()
    if normalized in _AGENT_VALUES:
        return AgentName(normalized)
    return AgentName.CODEX


def normalize_action(action: Any) -> StepAction:
    """Map a planner-supplied step type to a StepAction (default execute)."""
    normalized = str(action or "").strip().lower()
    if normalized in _ACTION_VALUES:
        return StepAction(normalized)
    return StepAction.EXECUTE


def _new_plan_id() -> str:
    return f"plan-{int(time.time() * 1000)}"


class PlannerError(Exception):
    """Raised when a plan cannot be requested from the planner agent."""


class Planner:
    """
    Produces plans by prompting the planner agent through the adapter.

    Adapter failures (spawn errors, timeouts) propagate; unparseable
    answers produce the fallback plan.
    """

    def __init__(
        self,
        adapter: ExternalAgentAdapter,
        agent_name: str = "opus",
        workspace_dir: str | Path | None = None,
    ):
        self.adapter = adapter
        self.agent_name = agent_name
        self.workspace_dir = Path(workspace_dir) if workspace_dir else Path.cwd()

    def generate_plan(self, task: str) -> PlanResponse:
        """Ask the planner agent for a plan and convert it to a PlanResponse."""
        if not task or not task.strip():
            raise PlannerError("Task cannot be empty")

        prompt = self.build_prompt(task)
        logger.info("Requesting plan from %s", self.agent_name)
        response = self.adapter.send_prompt(self.agent_name, prompt)

        plan = self.parse_response(response)
        logger.info(
            "Plan generated with %.2f confidence (%d steps)",
            plan.confidence.overall, len(plan.steps),
        )
        if plan.requires_approval:
            logger.info("Low confidence - plan requires user approval")
        return plan

    def project_info(self) -> tuple[str, str]:
        """Return (project name, project type) for the workspace."""
        project_type = "unknown"
        for filename, kind in PROJECT_INDICATORS:
            if (self.workspace_dir / filename).exists():
                project_type = kind
                break
        return self.workspace_dir.name, project_type

    def key_modules(self) -> list[tuple[str, str]]:
        """Up to five source files with a guessed purpose, src/ first."""
        modules = []
        for directory in (self.workspace_dir / "src", self.workspace_dir):
            if not directory.is_dir():
                continue
            for path in sorted(directory.iterdir()):
                if path.is_file() and path.suffix in SOURCE_SUFFIXES:
                    relative = path.relative_to(self.workspace_dir).as_posix()
                    modules.append((relative, guess_purpose(path.name)))
                if len(modules) >= MAX_KEY_MODULES:
                    return modules
            if modules:
                break
        return modules

    def build_prompt(self, task: str) -> str:
        name, project_type = self.project_info()
        key_files = "\n".join(f"- {path}: {purpose}" for path, purpose in self.key_modules())
        return PLAN_PROMPT.format(
            project_name=name,
            project_type=project_type,
            key_files=key_files or "- Standard project structure",
            task=task,
        )

    def parse_response(self, text: str) -> PlanResponse:
        result = parse_structured(text, accept=lambda d: isinstance(d.get("steps"), list))
        if not result.ok:
            logger.error("All plan parsing strategies failed: %s", result.error)
            logger.debug("Raw planner response (first 300 chars): %s", text.strip()[:300])
            return self.fallback_plan()

        logger.debug("Plan parsed with %s", result.strategy)
        try:
            return self._convert(result.value)
        except (TypeError, ValueError) as e:
            logger.error("Plan conversion failed: %s", e)
            return self.fallback_plan()

    def fallback_plan(self) -> PlanResponse:
        return self._convert({
            "understanding": "Unable to parse plan response",
            "approach": "Manual review required",
            "steps": [{
                "id": 1,
                "agent": "opus",
                "description": "Review request and create plan manually",
                "target": "task",
            }],
            "confidence": FALLBACK_CONFIDENCE,
            "risks": ["Response parsing failed"],
        })

    def _parse_step(self, data: dict[str, Any], index: int) -> PlanStep:
        raw_action = data.get("type", data.get("action"))
        # The compact format uses "action" for the step's free-text description
        action_is_text = "type" not in data and str(raw_action or "").lower() not in _ACTION_VALUES
        description = data.get("description") or (raw_action if action_is_text else None)

        # Non-numeric ids such as "step-1" fall back to the position
        step_id = _as_int(data.get("id") or index + 1, index + 1)

        inputs = []
        for value in _as_list(data.get("inputs")):
            try:
                inputs.append(int(value))
            except (TypeError, ValueError, OverflowError):
                logger.warning("Ignoring non-numeric input %r on step %s", value, step_id)

        return PlanStep(
            id=step_id,
            action=normalize_action(raw_action),
            target=str(data.get("target") or "unknown"),
            description=str(description or "No description"),
            assigned_agent=normalize_agent(data.get("agent", data.get("assignedAgent"))),
            inputs=inputs,
            outputs=[str(o) for o in _as_list(data.get("outputs"))],
        )

    def _parse_confidence(self, value: Any) -> ConfidenceBreakdown:
        if isinstance(value, dict):
            def score(camel: str, snake: str) -> float:
                return _as_score(value.get(camel, value.get(snake)), DEFAULT_CONFIDENCE)

            overall = _as_score(value.get("overall"), None)
            return ConfidenceBreakdown.from_scores(
                task_clarity=score("taskClarity", "task_clarity"),
                context_sufficiency=score("contextSufficiency", "context_sufficiency"),
                approach_confidence=score("approachConfidence", "approach_confidence"),
                execution_feasibility=score("executionFeasibility", "execution_feasibility"),
                overall=overall,
            )
        return ConfidenceBreakdown.uniform(_as_score(value, DEFAULT_CONFIDENCE))

    def _parse_risk(self, data: Any, step_ids: tuple[int, ...]) -> Risk:
        if not isinstance(data, dict):
            return Risk(
                severity=RiskSeverity.MEDIUM,
                category=RiskCategory.OTHER,
                description=data if isinstance(data, str) else "Unknown risk",
                mitigation="Review before execution",
                affected_steps=step_ids,
            )

        try:
            severity = RiskSeverity(str(data.get("severity", "medium")).lower())
        except ValueError:
            severity = RiskSeverity.MEDIUM
        try:
            category = RiskCategory(str(data.get("category", "other")).lower())
        except ValueError:
            category = RiskCategory.OTHER

        affected = [
            _as_int(s, -1) for s in _as_list(data.get("affectedSteps", data.get("affected_steps")))
        ]
        # Values such as "all" leave nothing numeric, which means every step
        affected = [s for s in affected if s >= 0]
        return Risk(
            severity=severity,
            category=category,
            description=str(data.get("description", "Unknown risk")),
            mitigation=str(data.get("mitigation", "Review before execution")),
            affected_steps=tuple(affected) if affected else step_ids,
        )

    def _convert(self, data: dict[str, Any]) -> PlanResponse:
        steps = tuple(
            self._parse_step(step, i)
            for i, step in enumerate(data.get("steps") or [])
            if isinstance(step, dict)
        )
        step_ids = tuple(s.id for s in steps)
        risks = tuple(self._parse_risk(r, step_ids) for r in _as_list(data.get("risks")))

        return PlanResponse(
            plan_id=_new_plan_id(),
            analysis=PlanAnalysis(
                understanding=str(data.get("understanding") or "Unknown"),
                approach=str(data.get("approach") or "Default approach"),
                rationale=str(data.get("rationale") or "Based on task analysis"),
            ),
            steps=steps,
            risks=risks,
            confidence=self._parse_confidence(data.get("confidence")),
            estimated_tokens=_as_int(data.get("estimatedTokens"), DEFAULT_ESTIMATED_TOKENS),
        )
