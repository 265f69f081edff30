"""
Shared pytest fixtures for ai_collab tests.
"""

import sys
import threading

import pytest

from ai_collab.backends.base import ModelClient
from ai_collab.config import AgentConfig
from ai_collab.models import (
    AgentName,
    ConfidenceBreakdown,
    PlanAnalysis,
    PlanResponse,
    PlanStep,
    Risk,
    StepAction,
)
from ai_collab.publisher import StatePublisher


class FakeClock:
    """Manually advanced monotonic clock; sleep() advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class CollectingPublisher(StatePublisher):
    """Records every published message."""

    def __init__(self):
        self.messages = []
        self._lock = threading.Lock()

    def publish(self, message) -> None:
        with self._lock:
            self.messages.append(message)

    def of_type(self, message_type):
        with self._lock:
            return [m for m in self.messages if m.type == message_type]


class ScriptedModelClient(ModelClient):
    """
    Model client answering by review phase.

    vote may be a string or a callable(model, agent_id) -> str, so tests can
    give different agents different votes.
    """

    def __init__(self, generate="ISSUES: None", correct="FINAL_ISSUES: None", vote="VOTE: APPROVE\nCONFIDENCE: 80%\nREASON: fine"):
        self.generate = generate
        self.correct = correct
        self.vote = vote
        self.calls = []
        self._lock = threading.Lock()

    def complete(self, model, prompt, *, temperature, max_tokens, seed=None):
        with self._lock:
            self.calls.append({
                "model": model,
                "prompt": prompt,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "seed": seed,
            })
        agent_id = int(prompt.split("Agent #", 1)[1].split(".", 1)[0].split(" ", 1)[0]) if "Agent #" in prompt else -1
        if "Cast your FINAL VOTE" in prompt:
            answer = self.vote
        elif "CORRECT your initial assessment" in prompt:
            answer = self.correct
        else:
            answer = self.generate
        if callable(answer):
            return answer(model, agent_id)
        return answer


def make_step(
    id: int = 1,
    action: StepAction = StepAction.ANALYZE,
    agent: AgentName = AgentName.CODEX,
    inputs: list[int] = None,
    target: str = "src/app.py",
    description: str = None,
) -> PlanStep:
    """Helper to create plan steps with defaults."""
    return PlanStep(
        id=id,
        action=action,
        target=target,
        description=description or f"Step {id} work",
        assigned_agent=agent,
        inputs=inputs or [],
    )


def make_plan(
    steps: list[PlanStep] = None,
    confidence: float = 0.9,
    risks: list[Risk] = None,
    plan_id: str = "plan-test",
) -> PlanResponse:
    """Helper to create a plan response with defaults."""
    return PlanResponse(
        plan_id=plan_id,
        analysis=PlanAnalysis(understanding="Test task", approach="Direct"),
        steps=tuple(steps if steps is not None else [make_step()]),
        risks=tuple(risks or []),
        confidence=ConfidenceBreakdown.uniform(confidence),
    )


def python_agent(name: str, script: str, mode: str = "oneshot", timeout_ms: int = 5000, **kwargs) -> AgentConfig:
    """Agent record that runs a small Python program."""
    return AgentConfig(
        name=name,
        command=sys.executable,
        args=["-c", script],
        interaction_mode=mode,
        timeout_ms=timeout_ms,
        **kwargs,
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def publisher():
    return CollectingPublisher()


@pytest.fixture
def model_client():
    return ScriptedModelClient()
