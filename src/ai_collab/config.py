"""
Configuration system for ai-collab.

A CollabConfig is built once at session start and passed explicitly to the
executor and the agent adapter. It holds the agent records (how to launch
each external worker), the swarm review settings, and the session limits.
Loaded from .collab/config.json when present.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


INTERACTION_MODES = {
    "stdin": "Persistent process; prompts written to stdin, response ends at a sentinel line",
    "oneshot": "Fresh process per prompt; response is everything written before exit",
}

DEFAULT_SENTINEL = "--END-OF-RESPONSE--"
DEFAULT_TIMEOUT_MS = 120_000
DEFAULT_CONFIG_PATH = Path(".collab/config.json")

DEFAULT_SWARM_MODELS = [
    "claude-sonnet-4-20250514",
    "claude-3-5-haiku-20241022",
]


@dataclass
class AgentConfig:
    """
    How to launch and talk to one external agent.

    Attributes:
        name: Agent name used for lookup (e.g. "codex")
        command: Executable to run
        args: Arguments passed to the executable
        interaction_mode: "stdin" (persistent, sentinel-framed) or "oneshot"
        sentinel: End-of-response marker for stdin mode
        timeout_ms: Per-call timeout in milliseconds
    """

    name: str
    command: str
    args: list[str] = field(default_factory=list)
    interaction_mode: str = "oneshot"
    sentinel: str | None = None
    timeout_ms: int | None = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Agent name cannot be empty")
        if not self.command:
            raise ValueError(f"Agent {self.name}: command cannot be empty")
        if self.interaction_mode not in INTERACTION_MODES:
            raise ValueError(
                f"Invalid interaction_mode for agent {self.name}: {self.interaction_mode}. "
                f"Valid options: {set(INTERACTION_MODES)}"
            )
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise ValueError(f"Agent {self.name}: timeout_ms must be positive")

    @property
    def effective_sentinel(self) -> str:
        return self.sentinel or DEFAULT_SENTINEL

    @property
    def timeout_seconds(self) -> float:
        return (self.timeout_ms or DEFAULT_TIMEOUT_MS) / 1000

    @classmethod
    def from_dict(cls, data: dict[str, Any], name: str | None = None) -> "AgentConfig":
        """Create an AgentConfig from a registry entry (camelCase or snake_case keys)."""
        return cls(
            name=data.get("name", name or ""),
            command=data.get("command", ""),
            args=list(data.get("args", [])),
            interaction_mode=data.get("interactionMode", data.get("interaction_mode", "oneshot")),
            sentinel=data.get("sentinel"),
            timeout_ms=data.get("timeoutMs", data.get("timeout_ms")),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "command": self.command,
            "args": list(self.args),
            "interactionMode": self.interaction_mode,
        }
        if self.sentinel is not None:
            data["sentinel"] = self.sentinel
        if self.timeout_ms is not None:
            data["timeoutMs"] = self.timeout_ms
        return data


def default_agents() -> dict[str, AgentConfig]:
    """Built-in agent records for the four step workers."""
    return {
        "codex": AgentConfig(
            name="codex",
            command="codex",
            args=["exec", "-"],
            interaction_mode="oneshot",
            timeout_ms=DEFAULT_TIMEOUT_MS,
        ),
        "opus": AgentConfig(
            name="opus",
            command="claude",
            args=["-p", "--output-format", "text"],
            interaction_mode="oneshot",
            timeout_ms=180_000,
        ),
        "gemini": AgentConfig(
            name="gemini",
            command="gemini",
            args=[],
            interaction_mode="oneshot",
            timeout_ms=DEFAULT_TIMEOUT_MS,
        ),
        "antigravity": AgentConfig(
            name="antigravity",
            command="antigravity",
            args=["chat"],
            interaction_mode="stdin",
            sentinel=DEFAULT_SENTINEL,
            timeout_ms=DEFAULT_TIMEOUT_MS,
        ),
    }


@dataclass
class SwarmConfig:
    """
    Settings for the self-correcting review swarm.

    Attributes:
        swarm_size: Number of agents reviewing in parallel
        generate_temp: Temperature for the initial critique (diversity)
        correct_temp: Temperature for the self-correction pass (precision)
        consensus_threshold: Weighted approval ratio needed to approve, 0.0-1.0
    """

    swarm_size: int = 6
    generate_temp: float = 0.8
    correct_temp: float = 0.1
    consensus_threshold: float = 0.6

    def __post_init__(self):
        if not isinstance(self.swarm_size, int) or self.swarm_size <= 0:
            raise ValueError(f"Invalid swarm_size: {self.swarm_size}. Must be a positive integer")
        if not (0.0 <= self.consensus_threshold <= 1.0):
            raise ValueError(
                f"Invalid consensus_threshold: {self.consensus_threshold}. "
                f"Must be between 0.0 and 1.0"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SwarmConfig":
        return cls(
            swarm_size=data.get("swarm_size", 6),
            generate_temp=data.get("generate_temp", 0.8),
            correct_temp=data.get("correct_temp", 0.1),
            consensus_threshold=data.get("consensus_threshold", 0.6),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "swarm_size": self.swarm_size,
            "generate_temp": self.generate_temp,
            "correct_temp": self.correct_temp,
            "consensus_threshold": self.consensus_threshold,
        }


@dataclass
class CollabConfig:
    """
    Session-wide configuration.

    Attributes:
        agents: Agent records keyed by name
        swarm: Review swarm settings
        swarm_models: Model roster the swarm agents rotate through
        planner_agent: Name of the agent that produces plans
        approval_timeout: Seconds to wait for plan approval before rejecting
        rate_limit_capacity: Token bucket capacity for model/agent calls
        rate_limit_refill_rate: Tokens per second added to the bucket
        llm_timeout: Timeout in seconds for model API calls
        workspace_dir: Working directory for agent processes (None = cwd)
    """

    agents: dict[str, AgentConfig] = field(default_factory=default_agents)
    swarm: SwarmConfig = field(default_factory=SwarmConfig)
    swarm_models: list[str] = field(default_factory=lambda: list(DEFAULT_SWARM_MODELS))
    planner_agent: str = "opus"
    approval_timeout: float = 300.0
    rate_limit_capacity: int = 10
    rate_limit_refill_rate: float = 2.0
    llm_timeout: int = 120
    workspace_dir: str | None = None

    def __post_init__(self):
        if not self.swarm_models:
            raise ValueError("swarm_models must list at least one model")
        if self.planner_agent not in self.agents:
            raise ValueError(
                f"Invalid planner_agent: {self.planner_agent}. "
                f"Valid options: {set(self.agents)}"
            )
        if self.approval_timeout <= 0:
            raise ValueError(f"Invalid approval_timeout: {self.approval_timeout}. Must be positive")
        if self.rate_limit_capacity <= 0 or self.rate_limit_refill_rate <= 0:
            raise ValueError("Rate limit capacity and refill rate must be positive")

    def get_agent(self, name: str) -> AgentConfig | None:
        return self.agents.get(name)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CollabConfig":
        """Create CollabConfig from a dictionary; agent entries override the defaults by name."""
        agents = default_agents()
        for name, entry in data.get("agents", {}).items():
            agents[name] = AgentConfig.from_dict(entry, name=name)

        return cls(
            agents=agents,
            swarm=SwarmConfig.from_dict(data.get("swarm", {})),
            swarm_models=list(data.get("swarm_models", DEFAULT_SWARM_MODELS)),
            planner_agent=data.get("planner_agent", "opus"),
            approval_timeout=data.get("approval_timeout", 300.0),
            rate_limit_capacity=data.get("rate_limit_capacity", 10),
            rate_limit_refill_rate=data.get("rate_limit_refill_rate", 2.0),
            llm_timeout=data.get("llm_timeout", 120),
            workspace_dir=data.get("workspace_dir"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "agents": {name: agent.to_dict() for name, agent in self.agents.items()},
            "swarm": self.swarm.to_dict(),
            "swarm_models": list(self.swarm_models),
            "planner_agent": self.planner_agent,
            "approval_timeout": self.approval_timeout,
            "rate_limit_capacity": self.rate_limit_capacity,
            "rate_limit_refill_rate": self.rate_limit_refill_rate,
            "llm_timeout": self.llm_timeout,
            "workspace_dir": self.workspace_dir,
        }


def load_config(config_path: str | Path | None = None) -> CollabConfig:
    """
    Load configuration from file or return defaults.

    Args:
        config_path: Path to config file. If None, looks for .collab/config.json

    Returns:
        CollabConfig with loaded or default values
    """
    config_path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        return CollabConfig()

    try:
        data = json.loads(config_path.read_text())
        return CollabConfig.from_dict(data)
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise ValueError(f"Invalid config file {config_path}: {e}")


def save_config(config: CollabConfig, config_path: str | Path | None = None) -> None:
    """
    Save configuration to file.

    Args:
        config: CollabConfig to save
        config_path: Path to config file. If None, saves to .collab/config.json
    """
    config_path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(config.to_dict(), indent=2))


def load_agent_registry(registry_path: str | Path) -> dict[str, AgentConfig]:
    """
    Load agent records from an agents.config.json style mapping.

    The file maps agent name to {command, args, interactionMode, sentinel, timeoutMs}.
    """
    path = Path(registry_path)
    if not path.exists():
        raise FileNotFoundError(f"Agent registry not found: {registry_path}")

    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid agent registry {registry_path}: {e}")

    return {name: AgentConfig.from_dict(entry, name=name) for name, entry in data.items()}
