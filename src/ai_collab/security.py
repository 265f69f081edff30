"""
Input validation for spawning external agent processes.

Agents are always spawned with shell=False, so arguments are passed to the
executable verbatim. These checks guard the remaining surface: the command
name itself, oversized or null-byte arguments, the working directory, and
environment variables that inject code into child processes.
"""

import os
import re
from pathlib import Path

MAX_ARG_LENGTH = 4096

_SHELL_METACHARS = re.compile(r"[;&|`$(){}\[\]<>\\'\"!*?~]")

# Variables that let a parent inject code into the child's loader
_UNSAFE_ENV_VARS = frozenset([
    "LD_PRELOAD",
    "LD_LIBRARY_PATH",
    "LD_AUDIT",
    "DYLD_INSERT_LIBRARIES",
    "DYLD_LIBRARY_PATH",
    "PYTHONSTARTUP",
    "NODE_OPTIONS",
])


class SecurityError(ValueError):
    """Raised when a command, argument, or path fails validation."""


def validate_command(command: str) -> str:
    """
    Validate an executable name or path.

    Returns:
        The command, stripped of surrounding whitespace
    """
    if not command or not command.strip():
        raise SecurityError("Command cannot be empty")
    command = command.strip()
    if "\0" in command:
        raise SecurityError("Null bytes not allowed in command")
    if ".." in Path(command).parts:
        raise SecurityError(f"Path traversal not allowed in command: {command}")
    if _SHELL_METACHARS.search(command):
        raise SecurityError(f"Shell metacharacters not allowed in command: {command}")
    return command


def sanitize_args(args: list[str]) -> list[str]:
    """Validate command-line arguments; returns them as a new list of strings."""
    sanitized = []
    for arg in args:
        arg = str(arg)
        if "\0" in arg:
            raise SecurityError("Null bytes not allowed in arguments")
        if len(arg) > MAX_ARG_LENGTH:
            raise SecurityError(f"Argument too long (max {MAX_ARG_LENGTH} characters)")
        sanitized.append(arg)
    return sanitized


def validate_workspace(workspace_dir: str | Path) -> Path:
    """Resolve a workspace directory, rejecting missing paths and filesystem roots."""
    resolved = Path(workspace_dir).expanduser().resolve()
    if not resolved.is_dir():
        raise SecurityError(f"Workspace is not a directory: {resolved}")
    if resolved == Path(resolved.anchor):
        raise SecurityError(f"Refusing to use filesystem root as workspace: {resolved}")
    return resolved


def safe_environment(extra: dict[str, str] | None = None) -> dict[str, str]:
    """Copy of os.environ without loader-injection variables, plus extra overrides."""
    env = {k: v for k, v in os.environ.items() if k not in _UNSAFE_ENV_VARS}
    if extra:
        env.update(extra)
    return env
