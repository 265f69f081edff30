"""
Tests for the plan executor.

The adapter, planner and reviewer are mocks; approvals are driven from a
second thread the way a front end would drive them.
"""

import threading
import time

import pytest
from unittest.mock import MagicMock, patch

from ai_collab.config import CollabConfig
from ai_collab.models import AgentName, Risk, RiskCategory, RiskSeverity, StepAction, StepStatus
from ai_collab.orchestrator import (
    PlanExecutor,
    SessionState,
    approval_reason,
)
from ai_collab.publisher import MessageType

from conftest import make_plan, make_step


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.01)


def wait_for_approval(executor):
    wait_for(lambda: executor.pending_approval and executor.state is SessionState.AWAITING_APPROVAL)


def make_executor(publisher, plan=None, outputs=None, review=True, approval_timeout=5.0):
    adapter = MagicMock()
    if isinstance(outputs, Exception) or callable(outputs):
        adapter.send_prompt.side_effect = outputs
    else:
        adapter.send_prompt.return_value = "done" if outputs is None else outputs

    planner = MagicMock()
    planner.agent_name = "opus"
    planner.generate_plan.return_value = plan or make_plan()

    reviewer = MagicMock()
    reviewer.review_step.return_value = review

    return PlanExecutor(
        config=CollabConfig(approval_timeout=approval_timeout),
        adapter=adapter,
        planner=planner,
        reviewer=reviewer,
        publisher=publisher,
    )


def run_plan(executor):
    executor.initialize("Build it")
    executor.generate_plan()
    return executor.execute_plan()


class TestApprovalReason:
    """Tests for approval_reason()."""

    def test_lists_weak_areas(self):
        reason = approval_reason(make_plan(confidence=0.5))

        assert "Task requirements are unclear" in reason
        assert "Execution may encounter issues" in reason

    def test_counts_severe_risks(self):
        risks = [Risk(RiskSeverity.CRITICAL, RiskCategory.DATA_LOSS, "drops table")]

        assert "1 high/critical risk(s) identified" in approval_reason(make_plan(confidence=0.9, risks=risks))

    def test_default_reason(self):
        assert approval_reason(make_plan(confidence=0.9)) == "Overall confidence below threshold"


class TestGeneratePlan:
    """Tests for PlanExecutor.generate_plan()."""

    def test_session_plan_is_a_copy(self, publisher):
        plan = make_plan([make_step(1)])
        executor = make_executor(publisher, plan)
        executor.initialize("task")
        executor.generate_plan()

        executor.context.plan[0].start()

        assert plan.steps[0].status is StepStatus.PENDING

    def test_logs_plan_and_risks(self, publisher):
        risks = [Risk(RiskSeverity.HIGH, RiskCategory.SECURITY, "token leak")]
        executor = make_executor(publisher, make_plan([make_step(1), make_step(2)], confidence=0.8, risks=risks))
        executor.initialize("task")
        executor.generate_plan()

        log = executor.context.execution_log
        assert log[0] == 'Request received: "task"'
        assert "Requesting plan from opus..." in log
        assert "Plan generated: 2 steps, 80% confidence" in log
        assert "Risks identified: high: token leak" in log


class TestDependencyGating:
    """Tests for step dependencies."""

    def test_completed_inputs_unblock_step(self, publisher):
        plan = make_plan([make_step(1), make_step(2, inputs=[1])])
        executor = make_executor(publisher, plan)

        summary = run_plan(executor)

        assert summary.completed == 2
        assert executor.adapter.send_prompt.call_count == 2

    def test_failed_input_skips_dependents(self, publisher):
        """A step whose input failed is skipped without dispatch."""
        def outputs(agent, prompt):
            if "Execute Step 1:" in prompt:
                raise RuntimeError("agent crashed")
            return "ok"

        plan = make_plan([make_step(1), make_step(2, inputs=[1]), make_step(3)])
        executor = make_executor(publisher, plan, outputs=outputs)

        summary = run_plan(executor)
        steps = executor.context.plan

        assert steps[0].status is StepStatus.FAILED
        assert steps[0].error == "agent crashed"
        assert steps[1].status is StepStatus.SKIPPED
        assert steps[1].error == "Unmet dependencies: 1"
        assert steps[2].status is StepStatus.COMPLETED
        assert (summary.completed, summary.failed, summary.skipped) == (1, 1, 1)
        assert "Step 2: Skipped (unmet deps)" in executor.context.execution_log

    def test_missing_input_is_unmet(self, publisher):
        plan = make_plan([make_step(1, inputs=[9])])
        executor = make_executor(publisher, plan)

        run_plan(executor)

        assert executor.context.plan[0].status is StepStatus.SKIPPED
        executor.adapter.send_prompt.assert_not_called()

    def test_forward_reference_is_unmet(self, publisher):
        """Steps run in declaration order, so a later input is never complete yet."""
        plan = make_plan([make_step(1, inputs=[2]), make_step(2)])
        executor = make_executor(publisher, plan)

        run_plan(executor)

        assert executor.context.plan[0].status is StepStatus.SKIPPED
        assert executor.context.plan[1].status is StepStatus.COMPLETED

    def test_current_step_advances(self, publisher):
        executor = make_executor(publisher, make_plan([make_step(1), make_step(2)]))
        run_plan(executor)

        assert executor.context.current_step_id == 2
        assert executor.state is SessionState.COMPLETE


class TestStepDispatch:
    """Tests for prompt building and dispatch."""

    def test_prompt_contains_context_and_previous_outputs(self, publisher):
        plan = make_plan([make_step(1, description="Write parser"), make_step(2, inputs=[1], description="Test parser")])
        executor = make_executor(publisher, plan, outputs="parser code")

        run_plan(executor)

        prompt = executor.adapter.send_prompt.call_args_list[1].args[1]
        assert "```AI-JSON" in prompt
        assert "Execute Step 2: Test parser" in prompt
        assert "Step 1: parser code" in prompt
        assert '"sessionId": "plan-test"' in prompt

    def test_routes_to_assigned_agent(self, publisher):
        executor = make_executor(publisher, make_plan([make_step(1, agent=AgentName.GEMINI)]))

        run_plan(executor)

        assert executor.adapter.send_prompt.call_args.args[0] == "gemini"

    def test_empty_output_placeholder(self, publisher):
        executor = make_executor(publisher, make_plan([make_step(1)]), outputs="  ")

        run_plan(executor)

        assert executor.context.plan[0].output == "[Codex] No output received for step 1"


class TestReview:
    """Tests for swarm review of step output."""

    def test_reviewed_actions_go_to_swarm(self, publisher):
        plan = make_plan([make_step(1, action=StepAction.WRITE), make_step(2, action=StepAction.READ)])
        executor = make_executor(publisher, plan, outputs="code")

        run_plan(executor)

        executor.reviewer.review_step.assert_called_once_with("code", "Step 1 work", target="src/app.py")

    def test_failed_review_fails_step(self, publisher):
        plan = make_plan([make_step(1, action=StepAction.EDIT), make_step(2, inputs=[1])])
        executor = make_executor(publisher, plan, outputs="bad code", review=False)

        summary = run_plan(executor)
        step = executor.context.plan[0]

        assert step.status is StepStatus.FAILED
        assert step.error == "Failed review"
        assert step.output is None
        assert executor.context.plan[1].status is StepStatus.SKIPPED
        assert summary.failed == 1
        assert "Step 1: Failed review" in executor.context.execution_log

    def test_review_error_fails_step(self, publisher):
        executor = make_executor(publisher, make_plan([make_step(1, action=StepAction.WRITE)]))
        executor.reviewer.review_step.side_effect = RuntimeError("swarm down")

        run_plan(executor)

        assert executor.context.plan[0].error == "swarm down"


class TestApproval:
    """Tests for the approval gate."""

    def _request_in_thread(self, executor, plan):
        results = []
        thread = threading.Thread(target=lambda: results.append(executor.request_approval(plan)))
        thread.start()
        wait_for_approval(executor)
        return thread, results

    def test_not_required_above_threshold(self, publisher):
        executor = make_executor(publisher)

        assert executor.request_approval(make_plan(confidence=0.9)) is True
        assert publisher.of_type(MessageType.PLAN_APPROVAL_REQUIRED) == []

    def test_approve(self, publisher):
        executor = make_executor(publisher)
        plan = make_plan(confidence=0.4)
        thread, results = self._request_in_thread(executor, plan)

        assert executor.state is SessionState.AWAITING_APPROVAL
        assert executor.approve() is True
        thread.join(5)

        assert results == [True]
        assert not executor.pending_approval
        payload = publisher.of_type(MessageType.PLAN_APPROVAL_REQUIRED)[0].payload
        assert payload["planResponse"]["planId"] == "plan-test"
        assert payload["confidenceBreakdown"]["overall"] == 0.4
        assert "Task requirements are unclear" in payload["reason"]

    def test_reject(self, publisher):
        executor = make_executor(publisher)
        thread, results = self._request_in_thread(executor, make_plan(confidence=0.4))

        assert executor.reject() is True
        thread.join(5)

        assert results == [False]

    def test_cancel_rejects_pending_approval(self, publisher):
        executor = make_executor(publisher)
        thread, results = self._request_in_thread(executor, make_plan(confidence=0.4))

        assert executor.cancel() is True
        thread.join(5)

        assert results == [False]

    def test_timeout_rejects(self, publisher):
        executor = make_executor(publisher, approval_timeout=0.1)

        assert executor.request_approval(make_plan(confidence=0.4)) is False
        assert executor.context.execution_log[-1] == "Approval timed out after 0.1s"
        assert not executor.pending_approval
        assert publisher.of_type(MessageType.STATE_UPDATE)[-1].payload["pendingApproval"] is False
        assert executor.approve() is False

    def test_answer_racing_the_timeout_is_honoured(self, publisher):
        """An approve() that succeeds is what request_approval returns."""
        executor = make_executor(publisher, approval_timeout=0.1)
        approvals = []

        class LateAnswerEvent(threading.Event):
            def wait(self, timeout=None):
                approvals.append(executor.approve())
                return False

        with patch("ai_collab.orchestrator.threading.Event", LateAnswerEvent):
            result = executor.request_approval(make_plan(confidence=0.4))

        assert approvals == [True]
        assert result is True
        assert not any("timed out" in line for line in executor.context.execution_log)

    def test_second_pending_request_raises(self, publisher):
        executor = make_executor(publisher)
        thread, _ = self._request_in_thread(executor, make_plan(confidence=0.4))
        try:
            with pytest.raises(RuntimeError, match="already pending"):
                executor.request_approval(make_plan(confidence=0.4))
        finally:
            executor.reject()
            thread.join(5)

    def test_resolving_without_pending_request(self, publisher):
        executor = make_executor(publisher)

        assert executor.approve() is False
        assert executor.reject() is False
        assert executor.cancel() is False


class TestHandleRequest:
    """Tests for full sessions."""

    def test_high_confidence_runs_without_approval(self, publisher):
        executor = make_executor(publisher, make_plan([make_step(1)], confidence=0.9))

        summary = executor.handle_request("Build it")

        assert summary.completed == 1
        complete = publisher.of_type(MessageType.EXECUTION_COMPLETE)
        assert len(complete) == 1
        assert complete[0].payload == {
            "success": True,
            "summary": {"planId": "plan-test", "completed": 1, "failed": 0, "skipped": 0, "totalSteps": 1},
        }

    def test_state_updates_carry_logs(self, publisher):
        executor = make_executor(publisher)
        executor.handle_request("Build it")

        last = publisher.of_type(MessageType.STATE_UPDATE)[-1].payload
        assert last["logs"][0] == 'Request received: "Build it"'
        assert last["logs"][-1] == "Plan execution complete"
        assert last["pendingApproval"] is False
        assert last["plan"][0]["status"] == "completed"

    def test_rejected_plan_is_not_executed(self, publisher):
        executor = make_executor(publisher, make_plan(confidence=0.3))

        thread = executor.handle_message({"type": "REQUEST", "payload": "Risky change"})
        wait_for_approval(executor)
        executor.handle_message({"type": "REJECT_PLAN"})
        thread.join(5)

        executor.adapter.send_prompt.assert_not_called()
        assert publisher.of_type(MessageType.EXECUTION_COMPLETE) == []
        assert "Plan rejected by user" in executor.context.execution_log
        assert executor.state is SessionState.IDLE

    def test_approved_plan_is_executed(self, publisher):
        executor = make_executor(publisher, make_plan(confidence=0.3))

        thread = executor.handle_message({"type": "REQUEST", "payload": "Risky change"})
        wait_for_approval(executor)
        executor.handle_message({"type": "APPROVE_PLAN"})
        thread.join(5)

        assert not thread.is_alive()
        assert len(publisher.of_type(MessageType.EXECUTION_COMPLETE)) == 1

    def test_planner_error_publishes_error(self, publisher):
        executor = make_executor(publisher)
        executor.planner.generate_plan.side_effect = RuntimeError("opus agent not found")

        assert executor.handle_request("Build it") is None
        errors = publisher.of_type(MessageType.ERROR)
        assert errors[-1].payload == {"message": "opus agent not found"}
        assert "Error: opus agent not found" in executor.context.execution_log
        assert executor.state is SessionState.IDLE

    def test_concurrent_request_is_refused(self, publisher):
        executor = make_executor(publisher, make_plan(confidence=0.3))

        thread = executor.handle_message({"type": "REQUEST", "payload": "first"})
        wait_for_approval(executor)
        try:
            assert executor.handle_request("second") is None
            assert publisher.of_type(MessageType.ERROR)[-1].payload == {
                "message": "A request is already in progress"
            }
            assert executor.context.user_request == "first"
        finally:
            executor.handle_message({"type": "CANCEL"})
            thread.join(5)

    def test_publisher_failure_does_not_stop_session(self):
        broken = MagicMock()
        broken.publish.side_effect = RuntimeError("socket closed")
        executor = make_executor(broken)

        summary = executor.handle_request("Build it")

        assert summary.completed == 1


class TestHandleMessage:
    """Tests for control message dispatch."""

    def test_unknown_type_is_ignored(self, publisher):
        executor = make_executor(publisher)

        assert executor.handle_message({"type": "REBOOT"}) is None

    def test_request_returns_worker_thread(self, publisher):
        executor = make_executor(publisher)

        thread = executor.handle_message({"type": "REQUEST", "payload": "Build it"})
        thread.join(5)

        assert thread.name == "collab-session"
        assert executor.state is SessionState.COMPLETE

    def test_execute_without_plan(self, publisher):
        with pytest.raises(RuntimeError, match="No plan"):
            make_executor(publisher).execute_plan()

    def test_shutdown_stops_agents(self, publisher):
        executor = make_executor(publisher)
        executor.shutdown()

        executor.adapter.stop_all.assert_called_once()
