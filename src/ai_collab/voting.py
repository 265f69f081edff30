"""
Voting and consensus logic for swarm review votes.

Each swarm agent casts APPROVE or REJECT with a confidence in [0, 100].
Consensus is the confidence-weighted share of approvals compared against
a threshold.
"""

from dataclasses import dataclass, field
from enum import Enum


FAIL_OPEN_CONFIDENCE = 30
DEFAULT_VOTE_CONFIDENCE = 50

_MAX_ISSUES_IN_SUMMARY = 3


class Vote(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


@dataclass(frozen=True)
class AgentVoteResult:
    """One agent's final vote."""

    agent_id: int
    model_name: str
    vote: Vote
    confidence: int  # capped at 100 by the vote parser
    issues: tuple[str, ...] = ()
    reasoning: str = ""

    @property
    def approved(self) -> bool:
        return self.vote is Vote.APPROVE

    @classmethod
    def fail_open(cls, agent_id: int, model_name: str, error: Exception | str) -> "AgentVoteResult":
        """Vote recorded when an agent workflow errors out: approve at low confidence."""
        return cls(
            agent_id=agent_id,
            model_name=model_name,
            vote=Vote.APPROVE,
            confidence=FAIL_OPEN_CONFIDENCE,
            issues=(),
            reasoning=f"API error: {str(error)[:50]}",
        )


@dataclass
class ConsensusResult:
    """Result of reducing swarm votes to one decision."""

    approved: bool
    approval_ratio: float  # 0.0 to 1.0, confidence weighted
    threshold: float
    approve_count: int
    reject_count: int
    approve_weight: int
    reject_weight: int
    issues: list[str] = field(default_factory=list)

    @property
    def total_votes(self) -> int:
        return self.approve_count + self.reject_count

    @property
    def simple_ratio(self) -> float:
        return self.approve_count / self.total_votes if self.total_votes else 0.0

    @property
    def issues_summary(self) -> str:
        return summarize_issues(self.issues)


def collect_issues(votes: list[AgentVoteResult]) -> list[str]:
    """Unique issues across all votes, in first-seen order."""
    seen: dict[str, None] = {}
    for vote in votes:
        for issue in vote.issues:
            issue = issue.strip()
            if issue and issue not in seen:
                seen[issue] = None
    return list(seen)


def summarize_issues(issues: list[str]) -> str:
    if not issues:
        return "No significant issues found"
    summary = ", ".join(issues[:_MAX_ISSUES_IN_SUMMARY])
    if len(issues) > _MAX_ISSUES_IN_SUMMARY:
        summary += "..."
    return f"Issues found: {summary}"


def compute_consensus(votes: list[AgentVoteResult], threshold: float) -> ConsensusResult:
    """
    Determine the confidence-weighted consensus of a set of votes.

    Args:
        votes: Final votes of every swarm agent
        threshold: Minimum weighted approval ratio to approve (0.0-1.0)

    Returns:
        ConsensusResult; with zero total weight the ratio is 0.5
    """
    approvals = [v for v in votes if v.approved]
    rejections = [v for v in votes if not v.approved]

    approve_weight = sum(v.confidence for v in approvals)
    reject_weight = sum(v.confidence for v in rejections)
    total_weight = approve_weight + reject_weight

    ratio = approve_weight / total_weight if total_weight > 0 else 0.5

    return ConsensusResult(
        approved=ratio >= threshold,
        approval_ratio=ratio,
        threshold=threshold,
        approve_count=len(approvals),
        reject_count=len(rejections),
        approve_weight=approve_weight,
        reject_weight=reject_weight,
        issues=collect_issues(votes),
    )


def format_vote_summary(votes: list[AgentVoteResult], result: ConsensusResult) -> str:
    """Format swarm votes and consensus as a human-readable report."""
    lines = []
    lines.append(f"Total votes: {result.total_votes}")
    lines.append(f"Simple vote: {result.approve_count} APPROVE vs {result.reject_count} REJECT")
    lines.append(f"Weighted score: {result.approval_ratio:.1%} approval")
    lines.append(f"Threshold: {result.threshold:.0%}")
    lines.append(f"Consensus: {'APPROVED' if result.approved else 'REJECTED'}")
    lines.append("")
    lines.append("Votes:")

    for vote in sorted(votes, key=lambda v: v.agent_id):
        marker = "+" if vote.approved else "-"
        reason = vote.reasoning[:40]
        lines.append(
            f"  {marker} #{vote.agent_id} {vote.model_name}: "
            f"{vote.vote.value} ({vote.confidence}%) {reason}"
        )

    lines.append("")
    lines.append(result.issues_summary)
    return "\n".join(lines)
