"""
Code review tool: runs the swarm over a code snippet and returns a
JSON-ready report.
"""

from typing import Any

from .swarm import SwarmReviewer

REVIEW_FOCUS_AREAS = ("correctness", "security", "performance", "quality", "all")

MAX_CODE_CHARS = 3000
CODE_TRUNCATION_MARKER = "\n...[truncated]"


def review_code(
    reviewer: SwarmReviewer,
    code: str,
    task: str,
    focus: str | None = None,
) -> dict[str, Any]:
    """
    Review code with the self-correcting swarm.

    Args:
        reviewer: Configured swarm reviewer
        code: The code to review
        task: What the code is supposed to do
        focus: One of REVIEW_FOCUS_AREAS (default: "all")

    Returns:
        Report dict: verdict, score, threshold, summary and per-agent votes

    Raises:
        ValueError: If code or task is missing, or focus is unknown
    """
    if not code or not code.strip():
        raise ValueError("code is required")
    if not task or not task.strip():
        raise ValueError("task is required")
    focus = focus or "all"
    if focus not in REVIEW_FOCUS_AREAS:
        raise ValueError(
            f"Invalid focus: {focus}. Valid options: {', '.join(REVIEW_FOCUS_AREAS)}"
        )

    result = reviewer.review(
        code,
        task,
        focus=focus,
        max_chars=MAX_CODE_CHARS,
        truncation_marker=CODE_TRUNCATION_MARKER,
    )
    consensus = result.consensus

    return {
        "verdict": "APPROVED" if consensus.approved else "REJECTED",
        "score": f"{consensus.approval_ratio * 100:.1f}%",
        "threshold": f"{consensus.threshold * 100:g}%",
        "summary": consensus.issues_summary,
        "agents": [
            {
                "agent": f"#{vote.agent_id}",
                "model": vote.model_name,
                "vote": vote.vote.value,
                "confidence": f"{vote.confidence}%",
                "issues": list(vote.issues),
            }
            for vote in result.votes
        ],
    }
