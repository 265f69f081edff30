"""
Self-correcting review swarm.

Each swarm agent runs three sequential phases against the same artifact:

1. Generate: an initial critique at high temperature, for diversity
2. Correct: the agent re-reads its own critique against a fixed checklist
   at low temperature
3. Vote: APPROVE or REJECT with a confidence, at temperature 0

Agents run in parallel and every workflow finishes before the votes are
reduced to one decision by confidence-weighted consensus. An agent whose
workflow fails votes APPROVE at low confidence so a flaky model never blocks
progress on its own.
"""

import logging
import math
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from .backends.base import ModelClient
from .config import CollabConfig, SwarmConfig
from .parsing import parse_structured
from .rate_limiter import RateLimitExceeded, TokenBucket
from .voting import (
    DEFAULT_VOTE_CONFIDENCE,
    AgentVoteResult,
    ConsensusResult,
    Vote,
    compute_consensus,
    format_vote_summary,
)

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "...[truncated]"
SEED_BASE = 1000

GENERATE_MAX_TOKENS = 300
CORRECT_MAX_TOKENS = 300
VOTE_MAX_TOKENS = 100
QUICK_MAX_TOKENS = 50
QUICK_REVIEW_CHARS = 1000

GENERATE_PROMPT = """You are Agent #{agent_id} reviewing code output.
Focus: {focus}

Task: {task}
{target_line}
Output to review:
```
{artifact}
```

Give your INITIAL assessment. Be thorough but concise.
Consider: correctness, error handling, type safety, edge cases, code quality.

Format:
ISSUES: [list any problems found, or "None"]
QUALITY: [1-10 score]
NOTES: [any observations]"""

CORRECT_PROMPT = """You are Agent #{agent_id}. Review and CORRECT your initial assessment.

Your initial assessment was:
{initial}

Self-critique checklist:
1. Did I miss any edge cases?
2. Was I too harsh or too lenient?
3. Did I consider the task requirements fully?
4. Are my quality scores justified?

Provide your CORRECTED assessment. Be precise and fair.

Format:
CORRECTIONS: [what you're changing and why, or "None needed"]
FINAL_ISSUES: [updated list of real problems]
FINAL_QUALITY: [1-10 score, justified]"""

VOTE_PROMPT = """You are Agent #{agent_id}. Cast your FINAL VOTE.

Your corrected assessment:
{corrected}

Task requirement: {task}

Based on your analysis, does this code PASS or FAIL the requirements?

You must respond in EXACTLY this format:
VOTE: APPROVE or REJECT
CONFIDENCE: [0-100]%
REASON: [one sentence explanation]"""

QUICK_REVIEW_PROMPT = """Does this output correctly complete the task?
Task: {task}
Output: {output}

Answer YES or NO with a brief reason."""

_INTEGER = re.compile(r"(\d+)")
_REASON = re.compile(r"REASON:\s*(.+)", re.IGNORECASE)
_FINAL_ISSUES = re.compile(
    r"FINAL_ISSUES:\s*([^\n]+(?:\n(?!FINAL_QUALITY)[^\n]+)*)", re.IGNORECASE
)


def short_model_name(model: str) -> str:
    return model.rstrip("/").split("/")[-1] or model


def truncate(text: str, max_chars: int, marker: str = TRUNCATION_MARKER) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + marker


def _confidence_from(value) -> int:
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return DEFAULT_VOTE_CONFIDENCE
        return min(100, max(0, int(value)))
    match = _INTEGER.search(str(value))
    return min(100, int(match.group(1))) if match else DEFAULT_VOTE_CONFIDENCE


def parse_vote(content: str) -> tuple[Vote, int, str]:
    """
    Parse a Phase-3 vote response.

    A JSON object with a "vote" key is used when present. Otherwise the
    text form is read: REJECT anywhere means reject, the first integer is
    the confidence (capped at 100, default 50), and the reason comes from
    a REASON: line.

    Returns:
        (vote, confidence, reasoning)
    """
    result = parse_structured(content, accept=lambda d: "vote" in d)
    if result.ok:
        data = result.value
        vote = Vote.REJECT if "REJECT" in str(data["vote"]).upper() else Vote.APPROVE
        confidence = _confidence_from(data.get("confidence", DEFAULT_VOTE_CONFIDENCE))
        reasoning = str(data.get("reason") or data.get("reasoning") or "No reason provided")
        return vote, confidence, reasoning

    vote = Vote.REJECT if "REJECT" in content.upper() else Vote.APPROVE
    match = _INTEGER.search(content)
    confidence = min(100, int(match.group(1))) if match else DEFAULT_VOTE_CONFIDENCE
    reason_match = _REASON.search(content)
    reasoning = reason_match.group(1).strip() if reason_match else "No reason provided"
    return vote, confidence, reasoning


def extract_issues(corrected: str) -> list[str]:
    """Issues listed under FINAL_ISSUES in a Phase-2 assessment."""
    match = _FINAL_ISSUES.search(corrected)
    if not match:
        return []
    issues = []
    for part in re.split(r"[,\n]", match.group(1)):
        part = part.strip().strip("[]").strip("-* ").strip()
        if part and part.lower() not in ("none", "none needed"):
            issues.append(part)
    return issues


@dataclass
class SwarmReview:
    """All votes of one swarm review plus their consensus."""

    votes: list[AgentVoteResult]
    consensus: ConsensusResult

    @property
    def approved(self) -> bool:
        return self.consensus.approved

    @property
    def summary(self) -> str:
        return self.consensus.issues_summary


class SwarmReviewer:
    """
    Runs the Generate, Correct, Vote workflow across a swarm of model agents.

    Usage:
        reviewer = SwarmReviewer(AnthropicModelClient(), SwarmConfig(swarm_size=4), models)
        if reviewer.review_step(output, "Add input validation"):
            ...
    """

    def __init__(
        self,
        model_client: ModelClient,
        config: SwarmConfig | None = None,
        models: list[str] | None = None,
        rate_limiter: TokenBucket | None = None,
        rate_limit_timeout: float | None = 30.0,
    ):
        """
        Initialize the reviewer.

        Args:
            model_client: Backend used for every model call
            config: Swarm size, temperatures and consensus threshold
            models: Model roster; agent i uses models[i % len(models)]
            rate_limiter: Optional bucket; one token is taken per model call
            rate_limit_timeout: Seconds to wait for a token before the call fails
        """
        self.model_client = model_client
        self.config = config or SwarmConfig()
        self.models = list(models) if models else list(CollabConfig().swarm_models)
        self.rate_limiter = rate_limiter
        self.rate_limit_timeout = rate_limit_timeout

    @classmethod
    def from_config(
        cls,
        config: CollabConfig,
        model_client: ModelClient,
        rate_limiter: TokenBucket | None = None,
    ) -> "SwarmReviewer":
        return cls(
            model_client=model_client,
            config=config.swarm,
            models=config.swarm_models,
            rate_limiter=rate_limiter,
        )

    def model_for(self, agent_id: int) -> str:
        return self.models[agent_id % len(self.models)]

    def review_step(self, artifact: str, task_description: str, target: str | None = None) -> bool:
        """Review a step's output; True when the swarm approves it."""
        return self.review(artifact, task_description, target=target).approved

    def review(
        self,
        artifact: str,
        task_description: str,
        focus: str = "all",
        target: str | None = None,
        max_chars: int = 2000,
        truncation_marker: str = TRUNCATION_MARKER,
    ) -> SwarmReview:
        """
        Run the full swarm against an artifact.

        Args:
            artifact: Code or output under review
            task_description: What the artifact is supposed to accomplish
            focus: Review focus area shown to every agent
            target: File or component the artifact belongs to
            max_chars: Artifacts longer than this are truncated
            truncation_marker: Appended to truncated artifacts

        Returns:
            SwarmReview with every vote and the consensus
        """
        context = truncate(artifact, max_chars, truncation_marker)
        size = self.config.swarm_size

        logger.info(
            "Deploying self-correcting swarm (%d agents): Generate(T=%s) -> Correct(T=%s) -> Vote",
            size, self.config.generate_temp, self.config.correct_temp,
        )

        with ThreadPoolExecutor(max_workers=size) as pool:
            futures = [
                pool.submit(
                    self._run_agent, i, self.model_for(i), task_description, target, context, focus
                )
                for i in range(size)
            ]
            votes = [future.result() for future in futures]

        consensus = compute_consensus(votes, self.config.consensus_threshold)
        logger.info("Swarm consensus report:\n%s", format_vote_summary(votes, consensus))
        return SwarmReview(votes=votes, consensus=consensus)

    def quick_review(self, task: str, output: str) -> bool:
        """Single-agent YES/NO review. Approves when the call fails."""
        prompt = QUICK_REVIEW_PROMPT.format(task=task, output=output[:QUICK_REVIEW_CHARS])
        try:
            content = self._call(self.models[0], prompt, 0.1, QUICK_MAX_TOKENS) or "YES"
        except Exception as e:
            logger.warning("Quick review failed, approving: %s", e)
            return True

        approved = "YES" in content.upper()
        logger.info("Quick review: %s - %s", "YES" if approved else "NO", content[:50])
        return approved

    def _call(
        self,
        model: str,
        prompt: str,
        temperature: float,
        max_tokens: int,
        seed: int | None = None,
    ) -> str:
        if self.rate_limiter is not None:
            if not self.rate_limiter.acquire(1, timeout=self.rate_limit_timeout):
                raise RateLimitExceeded(f"Rate limit wait exceeded for model {model}")
        return self.model_client.complete(
            model,
            prompt,
            temperature=temperature,
            max_tokens=max_tokens,
            seed=seed,
        )

    def _run_agent(
        self,
        agent_id: int,
        model: str,
        task: str,
        target: str | None,
        artifact: str,
        focus: str,
    ) -> AgentVoteResult:
        short_model = short_model_name(model)
        logger.debug("[Agent #%d] Starting workflow with %s", agent_id, short_model)

        try:
            target_line = f"Target: {target}\n" if target else ""
            initial = self._call(
                model,
                GENERATE_PROMPT.format(
                    agent_id=agent_id, focus=focus, task=task,
                    target_line=target_line, artifact=artifact,
                ),
                self.config.generate_temp,
                GENERATE_MAX_TOKENS,
                seed=SEED_BASE + agent_id,
            ) or "No assessment"

            corrected = self._call(
                model,
                CORRECT_PROMPT.format(agent_id=agent_id, initial=initial),
                self.config.correct_temp,
                CORRECT_MAX_TOKENS,
            ) or "No correction"

            vote_content = self._call(
                model,
                VOTE_PROMPT.format(agent_id=agent_id, corrected=corrected, task=task),
                0.0,
                VOTE_MAX_TOKENS,
            ) or "APPROVE"

            vote, confidence, reasoning = parse_vote(vote_content)
            result = AgentVoteResult(
                agent_id=agent_id,
                model_name=short_model,
                vote=vote,
                confidence=confidence,
                issues=tuple(extract_issues(corrected)),
                reasoning=reasoning,
            )
        except Exception as e:
            logger.warning("[Agent #%d] Workflow failed, voting APPROVE: %s", agent_id, e)
            return AgentVoteResult.fail_open(agent_id, short_model, e)

        logger.debug("[Agent #%d] Vote: %s (%d%%)", agent_id, vote.value, confidence)
        return result
