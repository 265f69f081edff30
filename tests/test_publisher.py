"""
Tests for state messages, control messages and the console publisher.
"""

import io
import json

import pytest
from rich.console import Console

from ai_collab.models import StepStatus
from ai_collab.publisher import (
    ConsolePublisher,
    ControlMessage,
    ControlType,
    MessageType,
    NullPublisher,
    StateMessage,
    render_plan_summary,
    render_plan_table,
)

from conftest import make_plan, make_step


def make_console():
    return Console(file=io.StringIO(), width=120, force_terminal=False, color_system=None)


def output_of(console):
    return console.file.getvalue()


class TestMessages:
    """Tests for StateMessage and ControlMessage."""

    def test_state_message_json(self):
        message = StateMessage(MessageType.ERROR, {"message": "boom"})

        assert json.loads(message.to_json()) == {"type": "ERROR", "payload": {"message": "boom"}}

    def test_control_message_from_dict(self):
        message = ControlMessage.from_dict({"type": "REQUEST", "payload": "Add tests"})

        assert message.type is ControlType.REQUEST
        assert message.payload == "Add tests"

    def test_control_message_without_payload(self):
        assert ControlMessage.from_dict({"type": "CANCEL"}).payload is None

    def test_unknown_control_type(self):
        with pytest.raises(ValueError):
            ControlMessage.from_dict({"type": "REBOOT"})

    def test_null_publisher(self):
        NullPublisher().publish(StateMessage(MessageType.STATE_UPDATE))


class TestRendering:
    """Tests for Rich renderables."""

    def test_plan_table_lists_steps(self):
        console = make_console()
        steps = [make_step(1, description="Write handler"), make_step(2, inputs=[1], description="Check it")]
        steps[0].start()
        console.print(render_plan_table(steps, current_step=1))

        out = output_of(console)
        assert "Write handler" in out
        assert "needs 1" in out
        assert StepStatus.IN_PROGRESS.value in out
        assert "→" in out

    def test_empty_plan_table(self):
        console = make_console()
        console.print(render_plan_table([]))

        assert "No steps" in output_of(console)

    def test_plan_summary(self):
        console = make_console()
        console.print(render_plan_summary(make_plan(confidence=0.5)))

        out = output_of(console)
        assert "Plan plan-test" in out
        assert "Confidence: 50%" in out


class TestConsolePublisher:
    """Tests for ConsolePublisher."""

    def test_prints_only_new_log_lines(self):
        console = make_console()
        publisher = ConsolePublisher(console)

        publisher.publish(StateMessage(MessageType.STATE_UPDATE, {"logs": ["first"]}))
        publisher.publish(StateMessage(MessageType.STATE_UPDATE, {"logs": ["first", "second"]}))

        out = output_of(console)
        assert out.count("first") == 1
        assert out.count("second") == 1

    def test_shorter_log_starts_over(self):
        console = make_console()
        publisher = ConsolePublisher(console)

        publisher.publish(StateMessage(MessageType.STATE_UPDATE, {"logs": ["a-line", "b-line"]}))
        publisher.publish(StateMessage(MessageType.STATE_UPDATE, {"logs": ["new-session"]}))

        assert "new-session" in output_of(console)

    def test_approval_required_sets_event(self):
        console = make_console()
        publisher = ConsolePublisher(console)
        plan = make_plan(confidence=0.4)

        publisher.publish(StateMessage(MessageType.PLAN_APPROVAL_REQUIRED, {
            "planResponse": plan.to_dict(),
            "reason": "Low confidence (40%)",
            "confidenceBreakdown": plan.confidence.to_dict(),
            "risks": [],
        }))

        assert publisher.approval_requested.is_set()
        out = output_of(console)
        assert "Approval required" in out
        assert "Low confidence (40%)" in out

    def test_execution_complete(self):
        console = make_console()
        publisher = ConsolePublisher(console)

        publisher.publish(StateMessage(MessageType.EXECUTION_COMPLETE, {
            "success": True,
            "summary": {"planId": "plan-1", "completed": 2, "failed": 1, "skipped": 0, "totalSteps": 3},
        }))

        out = output_of(console)
        assert "Execution complete (plan-1)" in out
        assert "Completed: 2" in out

    def test_error(self):
        console = make_console()
        publisher = ConsolePublisher(console)
        message = StateMessage(MessageType.ERROR, {"message": "A request is already in progress"})

        publisher.publish(message)

        assert "A request is already in progress" in output_of(console)
        assert publisher.last_message is message
