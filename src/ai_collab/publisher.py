"""
State-publish and control protocols.

The executor reports progress as StateMessages through a StatePublisher and
receives control messages (REQUEST, APPROVE_PLAN, REJECT_PLAN, CANCEL) from
whatever front end drives it. Publishers only observe; they never mutate
session state.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .models import PlanResponse, PlanStep, StepStatus

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    STATE_UPDATE = "STATE_UPDATE"
    PLAN_APPROVAL_REQUIRED = "PLAN_APPROVAL_REQUIRED"
    EXECUTION_COMPLETE = "EXECUTION_COMPLETE"
    ERROR = "ERROR"


class ControlType(str, Enum):
    REQUEST = "REQUEST"
    APPROVE_PLAN = "APPROVE_PLAN"
    REJECT_PLAN = "REJECT_PLAN"
    CANCEL = "CANCEL"


@dataclass
class StateMessage:
    """One outbound message: a type plus a JSON-ready payload."""

    type: MessageType
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "payload": self.payload}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class ControlMessage:
    """One inbound control message."""

    type: ControlType
    payload: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ControlMessage":
        """Parse a control message; raises ValueError for unknown types."""
        return cls(type=ControlType(data.get("type")), payload=data.get("payload"))


class StatePublisher(ABC):
    """Receives every outbound StateMessage from an executor."""

    @abstractmethod
    def publish(self, message: StateMessage) -> None:
        pass


class NullPublisher(StatePublisher):
    """Discards every message."""

    def publish(self, message: StateMessage) -> None:
        pass


STATUS_STYLES = {
    StepStatus.PENDING: "dim",
    StepStatus.IN_PROGRESS: "yellow",
    StepStatus.COMPLETED: "green",
    StepStatus.FAILED: "red",
    StepStatus.SKIPPED: "magenta",
}


def render_plan_table(steps: list[PlanStep] | tuple[PlanStep, ...], current_step: int | None = None) -> Table:
    """Render plan steps as a Rich table."""
    table = Table(show_header=True, header_style="bold cyan", expand=True)
    table.add_column("", width=2)
    table.add_column("#", justify="right")
    table.add_column("Agent", style="cyan")
    table.add_column("Action")
    table.add_column("Target", style="dim")
    table.add_column("Description")
    table.add_column("Status")

    if not steps:
        table.add_row("", "", "", "", "", Text("No steps", style="dim"), "")
        return table

    for step in steps:
        indicator = "→" if step.id == current_step else ""
        deps = f" (needs {', '.join(str(i) for i in step.inputs)})" if step.inputs else ""
        table.add_row(
            Text(indicator, style="bold cyan"),
            str(step.id),
            step.assigned_agent.value,
            step.action.value,
            step.target,
            step.description + deps,
            Text(step.status.value, style=STATUS_STYLES.get(step.status, "white")),
        )
    return table


def render_plan_summary(plan: PlanResponse) -> Panel:
    """Render analysis, confidence and risks of a plan."""
    confidence = plan.confidence
    lines = [
        f"[bold]Understanding:[/bold] {plan.analysis.understanding}",
        f"[bold]Approach:[/bold] {plan.analysis.approach}",
        "",
        f"[bold]Confidence:[/bold] {confidence.overall:.0%} "
        f"(clarity {confidence.task_clarity:.0%}, context {confidence.context_sufficiency:.0%}, "
        f"approach {confidence.approach_confidence:.0%}, feasibility {confidence.execution_feasibility:.0%})",
    ]
    if plan.risks:
        lines.append("")
        lines.append("[bold]Risks:[/bold]")
        for risk in plan.risks:
            style = "red" if risk.is_severe else "yellow"
            lines.append(f"  [{style}]{risk.severity.value}[/{style}] {risk.description}")

    border = "yellow" if plan.requires_approval else "green"
    return Panel("\n".join(lines), title=f"Plan {plan.plan_id}", border_style=border)


class ConsolePublisher(StatePublisher):
    """
    Renders session progress to a Rich console.

    New execution-log lines are printed as they appear. Approval requests
    render the plan and set approval_requested so an interactive front end
    can prompt the user from its own thread.
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        self.approval_requested = threading.Event()
        self.last_message: StateMessage | None = None
        self._logs_seen = 0
        self._lock = threading.Lock()

    def publish(self, message: StateMessage) -> None:
        with self._lock:
            self.last_message = message
            handler = {
                MessageType.STATE_UPDATE: self._on_state_update,
                MessageType.PLAN_APPROVAL_REQUIRED: self._on_approval_required,
                MessageType.EXECUTION_COMPLETE: self._on_complete,
                MessageType.ERROR: self._on_error,
            }.get(message.type)
            if handler is None:
                logger.debug("Ignoring message type %s", message.type)
                return
            handler(message.payload)

    def _on_state_update(self, payload: dict[str, Any]) -> None:
        logs = payload.get("logs", [])
        if len(logs) < self._logs_seen:
            # New session
            self._logs_seen = 0
        for line in logs[self._logs_seen:]:
            self.console.print(f"[dim]•[/dim] {line}")
        self._logs_seen = len(logs)

    def _on_approval_required(self, payload: dict[str, Any]) -> None:
        plan = payload.get("planResponse", {})
        steps = [PlanStep.from_dict(s) for s in plan.get("steps", [])]
        confidence = payload.get("confidenceBreakdown", {}).get("overall", 0.0)

        self.console.print(render_plan_table(steps))
        self.console.print(Panel(
            f"[bold]Reason:[/bold] {payload.get('reason', '')}\n"
            f"[bold]Confidence:[/bold] {confidence:.0%}",
            title="Approval required",
            border_style="yellow",
        ))
        self.approval_requested.set()

    def _on_complete(self, payload: dict[str, Any]) -> None:
        summary = payload.get("summary", {})
        self.console.print(Panel(
            f"Completed: [green]{summary.get('completed', 0)}[/green]  "
            f"Failed: [red]{summary.get('failed', 0)}[/red]  "
            f"Skipped: [magenta]{summary.get('skipped', 0)}[/magenta]  "
            f"Total: {summary.get('totalSteps', 0)}",
            title=f"Execution complete ({summary.get('planId', '')})",
            border_style="green" if not summary.get("failed") else "red",
        ))

    def _on_error(self, payload: dict[str, Any]) -> None:
        self.console.print(f"[red]Error:[/red] {payload.get('message', 'Unknown error')}")
