"""
Plan executor: coordinates planning, approval, step dispatch and review.

1. Ask the planner for a plan annotated with confidence
2. Below the confidence threshold, wait for the user to approve
3. Run the steps in declaration order, skipping steps whose inputs did
   not complete
4. Send artifact-changing output through the review swarm
5. Publish state after every transition
"""

import copy
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .adapter import ExternalAgentAdapter
from .backends.base import ModelClient
from .backends.llm import AnthropicModelClient
from .config import CollabConfig
from .models import PlanResponse, PlanStep, StepStatus
from .planner import Planner
from .publisher import ControlMessage, ControlType, MessageType, NullPublisher, StateMessage, StatePublisher
from .rate_limiter import TokenBucket
from .swarm import SwarmReviewer

logger = logging.getLogger(__name__)

HISTORY_LINES = 10

STEP_PROMPT_TEMPLATE = """
# Shared Context
```AI-JSON
{context_json}
```

## TASK
You are the {agent} agent.
Execute Step {step_id}: {description}
Target: {target}
Action: {action}

Previous steps have produced:
{previous_outputs}
"""


class SessionState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting-approval"
    EXECUTING = "executing"
    COMPLETE = "complete"


@dataclass
class SessionContext:
    """Mutable state of one session; only the executor writes to it."""

    user_request: str = ""
    plan: list[PlanStep] = field(default_factory=list)
    plan_response: PlanResponse | None = None
    current_step_id: int = 0
    execution_log: list[str] = field(default_factory=list)

    def log(self, line: str) -> None:
        self.execution_log.append(line)

    def advance_to(self, step_id: int) -> None:
        self.current_step_id = max(self.current_step_id, step_id)

    def get_step(self, step_id: int) -> PlanStep | None:
        for step in self.plan:
            if step.id == step_id:
                return step
        return None


@dataclass
class ExecutionResult:
    """Result of running a single step."""

    success: bool
    step_id: int
    output: str | None = None
    error: str | None = None
    duration_ms: int = 0


@dataclass
class ExecutionSummary:
    """Outcome counts for a whole plan run."""

    plan_id: str
    total_steps: int
    completed: int
    failed: int
    skipped: int
    results: list[ExecutionResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "planId": self.plan_id,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "totalSteps": self.total_steps,
        }


def approval_reason(plan_response: PlanResponse) -> str:
    """Human-readable explanation of why a plan needs approval."""
    reasons = plan_response.confidence.weak_areas()
    severe = plan_response.severe_risks
    if severe:
        reasons.append(f"{len(severe)} high/critical risk(s) identified")
    return "; ".join(reasons) if reasons else "Overall confidence below threshold"


class PlanExecutor:
    """
    Runs one session at a time: plan, approve, execute, publish.

    Collaborators not passed in are built from the config.
    """

    def __init__(
        self,
        config: CollabConfig | None = None,
        adapter: ExternalAgentAdapter | None = None,
        planner: Planner | None = None,
        reviewer: SwarmReviewer | None = None,
        publisher: StatePublisher | None = None,
        model_client: ModelClient | None = None,
        rate_limiter: TokenBucket | None = None,
    ):
        self.config = config or CollabConfig()
        self.rate_limiter = rate_limiter or TokenBucket(
            capacity=self.config.rate_limit_capacity,
            refill_rate=self.config.rate_limit_refill_rate,
        )
        self.adapter = adapter or ExternalAgentAdapter.from_config(
            self.config, rate_limiter=self.rate_limiter
        )
        self.planner = planner or Planner(
            self.adapter,
            agent_name=self.config.planner_agent,
            workspace_dir=self.config.workspace_dir,
        )
        self.reviewer = reviewer or SwarmReviewer.from_config(
            self.config,
            model_client or AnthropicModelClient(timeout=self.config.llm_timeout),
            rate_limiter=self.rate_limiter,
        )
        self.publisher = publisher or NullPublisher()

        self.context = SessionContext()
        self._state = SessionState.IDLE
        self._lock = threading.Lock()
        self._approval_event: threading.Event | None = None
        self._approval_result = False
        self._busy = False

    # ------------------------------------------------------------------
    # State and publishing
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pending_approval(self) -> bool:
        with self._lock:
            event = self._approval_event
            return event is not None and not event.is_set()

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.debug("Session state %s -> %s", self._state.value, state.value)
        self._state = state

    def _publish(self, message_type: MessageType, payload: dict[str, Any]) -> None:
        try:
            self.publisher.publish(StateMessage(message_type, payload))
        except Exception:
            # Publisher failures never reach the session
            logger.exception("Publisher failed on %s", message_type.value)

    def publish_state(self) -> None:
        ctx = self.context
        self._publish(MessageType.STATE_UPDATE, {
            "plan": [step.to_dict() for step in ctx.plan],
            "planResponse": ctx.plan_response.to_dict() if ctx.plan_response else None,
            "logs": list(ctx.execution_log),
            "currentStep": ctx.current_step_id,
            "pendingApproval": self.pending_approval,
        })

    # ------------------------------------------------------------------
    # Session phases
    # ------------------------------------------------------------------

    def initialize(self, task: str) -> None:
        """Reset the session context for a new request."""
        self.context = SessionContext(user_request=task)
        self._set_state(SessionState.IDLE)
        logger.info("Initialized with request: %s", task)
        self.context.log(f'Request received: "{task}"')
        self.publish_state()

    def generate_plan(self, task: str | None = None) -> PlanResponse:
        """Ask the planner for a plan and make a copy of its steps the session plan."""
        task = task if task is not None else self.context.user_request
        self._set_state(SessionState.PLANNING)
        self.context.log(f"Requesting plan from {self.planner.agent_name}...")
        self.publish_state()

        plan_response = self.planner.generate_plan(task)

        self.context.plan_response = plan_response
        self.context.plan = copy.deepcopy(list(plan_response.steps))

        self.context.log(
            f"Plan generated: {len(plan_response.steps)} steps, "
            f"{plan_response.confidence.overall * 100:.0f}% confidence"
        )
        if plan_response.risks:
            risk_summary = "; ".join(
                f"{risk.severity.value}: {risk.description}" for risk in plan_response.risks
            )
            self.context.log(f"Risks identified: {risk_summary}")

        logger.info(
            "Plan generated: %d steps, confidence %.2f, requires approval: %s",
            len(plan_response.steps),
            plan_response.confidence.overall,
            plan_response.requires_approval,
        )
        self.publish_state()
        return plan_response

    def request_approval(self, plan_response: PlanResponse) -> bool:
        """
        Block until the plan is approved, rejected, cancelled or times out.

        Returns:
            True if approved (or approval not required), False otherwise

        Raises:
            RuntimeError: If another approval is already pending
        """
        if not plan_response.requires_approval:
            return True

        with self._lock:
            if self._approval_event is not None:
                raise RuntimeError("An approval request is already pending")
            event = threading.Event()
            self._approval_event = event
            self._approval_result = False

        try:
            self._set_state(SessionState.AWAITING_APPROVAL)
            reason = approval_reason(plan_response)
            self.context.log(f"Approval required: {reason}")
            self._publish(MessageType.PLAN_APPROVAL_REQUIRED, {
                "planResponse": plan_response.to_dict(),
                "reason": reason,
                "confidenceBreakdown": plan_response.confidence.to_dict(),
                "risks": [risk.to_dict() for risk in plan_response.risks],
            })
            self.publish_state()

            event.wait(self.config.approval_timeout)
        finally:
            with self._lock:
                self._approval_event = None
                # An answer set after the wait returned still counts
                answered = event.is_set()
                approved = answered and self._approval_result

        if not answered:
            logger.warning("Approval timeout - auto-rejecting")
            self.context.log(f"Approval timed out after {self.config.approval_timeout:g}s")
        self.publish_state()
        return approved

    def _resolve_approval(self, approved: bool) -> bool:
        with self._lock:
            event = self._approval_event
            if event is None or event.is_set():
                return False
            self._approval_result = approved
            event.set()
        return True

    def approve(self) -> bool:
        """Approve the pending plan. Returns False when nothing was pending."""
        resolved = self._resolve_approval(True)
        if resolved:
            logger.info("Plan approved by user")
        return resolved

    def reject(self) -> bool:
        """Reject the pending plan. Returns False when nothing was pending."""
        resolved = self._resolve_approval(False)
        if resolved:
            logger.info("Plan rejected by user")
        return resolved

    def cancel(self) -> bool:
        """Cancel the session's pending approval; running steps are not interrupted."""
        logger.info("Operation cancelled by user")
        return self._resolve_approval(False)

    def unmet_dependencies(self, step: PlanStep) -> list[int]:
        """Input ids whose step is missing from the plan or not completed."""
        unmet = []
        for dep_id in step.inputs:
            dep = self.context.get_step(dep_id)
            if dep is None or dep.status is not StepStatus.COMPLETED:
                unmet.append(dep_id)
        return unmet

    def build_step_prompt(self, step: PlanStep) -> str:
        ctx = self.context
        shared = {
            "sessionId": ctx.plan_response.plan_id if ctx.plan_response else "session-unknown",
            "currentStep": step.to_dict(),
            "allSteps": [s.to_dict() for s in ctx.plan],
            "history": ctx.execution_log[-HISTORY_LINES:],
        }

        previous = []
        for dep_id in step.inputs:
            dep = ctx.get_step(dep_id)
            if dep is not None:
                previous.append(f"Step {dep_id}: {dep.output or 'no output'}")

        return STEP_PROMPT_TEMPLATE.format(
            context_json=json.dumps(shared, indent=2),
            agent=step.assigned_agent.value,
            step_id=step.id,
            description=step.description,
            target=step.target,
            action=step.action.value,
            previous_outputs="\n".join(previous),
        )

    def dispatch_step(self, step: PlanStep) -> str:
        """Send a step to its assigned agent and return the output."""
        agent = step.assigned_agent.value
        response = self.adapter.send_prompt(agent, self.build_step_prompt(step))
        if not response or not response.strip():
            return f"[{agent.capitalize()}] No output received for step {step.id}"
        return response

    def _execute_step(self, step: PlanStep) -> ExecutionResult:
        start = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        self.context.advance_to(step.id)

        unmet = self.unmet_dependencies(step)
        if unmet:
            step.skip(f"Unmet dependencies: {', '.join(str(i) for i in unmet)}")
            self.context.log(f"Step {step.id}: Skipped (unmet deps)")
            logger.info("Step %d skipped: %s", step.id, step.error)
            return ExecutionResult(False, step.id, error=step.error, duration_ms=elapsed_ms())

        step.start()
        self.context.log(f"Step {step.id}: {step.description} [started]")
        logger.info("Executing step %d: %s", step.id, step.description)
        self.publish_state()

        try:
            output = self.dispatch_step(step)
            step.output = output

            if step.requires_review:
                passed = self.reviewer.review_step(output, step.description, target=step.target)
                if not passed:
                    step.output = None
                    step.fail("Failed review")
                    self.context.log(f"Step {step.id}: Failed review")
                    return ExecutionResult(False, step.id, error=step.error, duration_ms=elapsed_ms())

            step.complete()
            self.context.log(f"Step {step.id}: Completed")
            return ExecutionResult(True, step.id, output=output, duration_ms=elapsed_ms())

        except Exception as e:
            logger.error("Step %d failed: %s", step.id, e)
            step.fail(str(e))
            self.context.log(f"Step {step.id}: Failed - {e}")
            return ExecutionResult(False, step.id, error=str(e), duration_ms=elapsed_ms())

    def execute_plan(self) -> ExecutionSummary:
        """Run every step in declaration order and summarize the outcome."""
        if self.context.plan_response is None:
            raise RuntimeError("No plan to execute; call generate_plan() first")

        self._set_state(SessionState.EXECUTING)
        self.context.log("Starting plan execution...")
        self.publish_state()

        results = []
        for step in self.context.plan:
            results.append(self._execute_step(step))
            self.publish_state()

        self.context.log("Plan execution complete")
        self._set_state(SessionState.COMPLETE)
        self.publish_state()
        return self.summarize(results)

    def summarize(self, results: list[ExecutionResult] | None = None) -> ExecutionSummary:
        plan = self.context.plan
        return ExecutionSummary(
            plan_id=self.context.plan_response.plan_id if self.context.plan_response else "",
            total_steps=len(plan),
            completed=sum(1 for s in plan if s.status is StepStatus.COMPLETED),
            failed=sum(1 for s in plan if s.status is StepStatus.FAILED),
            skipped=sum(1 for s in plan if s.status is StepStatus.SKIPPED),
            results=list(results or []),
        )

    # ------------------------------------------------------------------
    # Request and control entry points
    # ------------------------------------------------------------------

    def handle_request(self, task: str) -> ExecutionSummary | None:
        """
        Run a full session for one task.

        Returns:
            The execution summary, or None when the plan was rejected or
            the session failed
        """
        with self._lock:
            if self._busy:
                busy = True
            else:
                busy = False
                self._busy = True
        if busy:
            logger.warning("Rejecting request while another is in progress")
            self._publish(MessageType.ERROR, {"message": "A request is already in progress"})
            return None

        try:
            self.initialize(task)
            plan_response = self.generate_plan(task)

            if plan_response.requires_approval and not self.request_approval(plan_response):
                self.context.log("Plan rejected by user")
                self._set_state(SessionState.IDLE)
                self.publish_state()
                return None

            summary = self.execute_plan()
            self._publish(MessageType.EXECUTION_COMPLETE, {
                "success": True,
                "summary": summary.to_dict(),
            })
            return summary

        except Exception as e:
            logger.exception("Session failed")
            self.context.log(f"Error: {e}")
            self._set_state(SessionState.IDLE)
            self.publish_state()
            self._publish(MessageType.ERROR, {"message": str(e)})
            return None
        finally:
            with self._lock:
                self._busy = False

    def handle_message(self, message: ControlMessage | dict[str, Any]) -> threading.Thread | None:
        """
        Apply one inbound control message.

        REQUEST starts a session on a worker thread and returns it; the
        other types resolve the pending approval and return None.
        """
        if isinstance(message, dict):
            try:
                message = ControlMessage.from_dict(message)
            except ValueError:
                logger.warning("Ignoring unknown control message: %r", message.get("type"))
                return None

        if message.type is ControlType.REQUEST:
            thread = threading.Thread(
                target=self.handle_request,
                args=(str(message.payload or ""),),
                name="collab-session",
                daemon=True,
            )
            thread.start()
            return thread
        if message.type is ControlType.APPROVE_PLAN:
            self.approve()
        elif message.type is ControlType.REJECT_PLAN:
            self.reject()
        elif message.type is ControlType.CANCEL:
            self.cancel()
        return None

    def shutdown(self) -> None:
        """Stop every persistent agent process."""
        self.adapter.stop_all()
