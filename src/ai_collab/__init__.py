"""
AI Collab - multi-agent planning, execution and swarm review.

A planner agent turns a task into a dependency-annotated plan with a
confidence self-assessment. Low-confidence plans wait for user approval.
Steps are dispatched to external agent CLIs, and artifact-changing output
is checked by a self-correcting review swarm (Generate, Correct, Vote)
before a step counts as completed.
"""

__version__ = "0.1.0"

from .config import AgentConfig, CollabConfig, SwarmConfig, load_config, save_config
from .models import (
    CONFIDENCE_THRESHOLD,
    ConfidenceBreakdown,
    PlanResponse,
    PlanStep,
    Risk,
)
from .rate_limiter import TokenBucket
from .adapter import ExternalAgentAdapter
from .swarm import SwarmReviewer, SwarmReview
from .review_tool import review_code
from .planner import Planner
from .orchestrator import (
    PlanExecutor,
    SessionState,
    ExecutionResult,
    ExecutionSummary,
)

__all__ = [
    # Version
    "__version__",
    # Config
    "AgentConfig",
    "CollabConfig",
    "SwarmConfig",
    "load_config",
    "save_config",
    # Models
    "CONFIDENCE_THRESHOLD",
    "ConfidenceBreakdown",
    "PlanResponse",
    "PlanStep",
    "Risk",
    # Infrastructure
    "TokenBucket",
    "ExternalAgentAdapter",
    # Review
    "SwarmReviewer",
    "SwarmReview",
    "review_code",
    # Planning and execution
    "Planner",
    "PlanExecutor",
    "SessionState",
    "ExecutionResult",
    "ExecutionSummary",
]
