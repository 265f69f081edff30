"""
Adapter for external agent processes (codex, opus, gemini, antigravity CLIs).

Two interaction modes are supported, selected per agent by AgentConfig:

- stdin: one persistent process per agent. Each prompt is written to its
  stdin followed by an instruction to print a sentinel line; the response
  is everything the agent prints before the sentinel.
- oneshot: a fresh process per prompt. The prompt is written to stdin and
  stdin closed; the response is everything printed before exit. On timeout
  whatever was already printed is returned as a partial result.

Processes are always spawned with shell=False from validated commands.
"""

import codecs
import logging
import os
import queue
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from .config import AgentConfig, CollabConfig
from .rate_limiter import RateLimitExceeded, TokenBucket
from .security import SecurityError, safe_environment, sanitize_args, validate_command, validate_workspace

logger = logging.getLogger(__name__)

SENTINEL_INSTRUCTION = (
    "\n\nIMPORTANT: When you have finished your response, you MUST print "
    "the following line exactly:\n{sentinel}\n"
)

_READ_CHUNK = 4096
_STOP_GRACE_SECONDS = 5
_PROCESS_GROUPS = hasattr(os, "killpg")


def _signal_process(process: subprocess.Popen, kill: bool = False) -> None:
    """Terminate (or kill) an agent process together with its process group."""
    if _PROCESS_GROUPS:
        try:
            os.killpg(process.pid, signal.SIGKILL if kill else signal.SIGTERM)
            return
        except (ProcessLookupError, PermissionError):
            # Group already gone; the leader may still need a direct signal
            pass
    if process.poll() is None:
        if kill:
            process.kill()
        else:
            process.terminate()


def _decode_partial(data) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8", "replace")
    return data or ""


class AgentError(Exception):
    """Base class for external agent failures."""


class AgentSpawnError(AgentError):
    """Agent process could not be started (missing executable, bad command)."""


class AgentTimeoutError(AgentError):
    """Agent produced no usable response before the timeout."""


class AgentExitedError(AgentError):
    """Agent process exited before completing its response."""


class AgentBusyError(AgentError):
    """A streaming agent is already handling another prompt."""


class UnknownAgentError(AgentError):
    """No agent record exists for the requested name."""


@dataclass
class StreamHandle:
    """A running stdin-mode agent and the threads draining its pipes."""

    name: str
    config: AgentConfig
    process: subprocess.Popen
    output: queue.Queue = field(default_factory=queue.Queue)
    busy: threading.Lock = field(default_factory=threading.Lock)
    reader_thread: threading.Thread | None = None
    stderr_thread: threading.Thread | None = None

    @property
    def alive(self) -> bool:
        return self.process.poll() is None


class ExternalAgentAdapter:
    """
    Sends prompts to external agents and returns their text responses.

    Usage:
        with ExternalAgentAdapter.from_config(config) as adapter:
            text = adapter.send_prompt("codex", "Write a hello world")
    """

    def __init__(
        self,
        agents: dict[str, AgentConfig],
        workspace_dir: str | Path | None = None,
        rate_limiter: TokenBucket | None = None,
        rate_limit_timeout: float | None = 60.0,
    ):
        """
        Initialize the adapter.

        Args:
            agents: Agent records keyed by name
            workspace_dir: Working directory for spawned agents (None = cwd)
            rate_limiter: Optional bucket; one token is taken per prompt
            rate_limit_timeout: Seconds to wait for a token before giving up
        """
        self.agents = dict(agents)
        self.workspace_dir = validate_workspace(workspace_dir) if workspace_dir else None
        self.rate_limiter = rate_limiter
        self.rate_limit_timeout = rate_limit_timeout
        self._handles: dict[str, StreamHandle] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: CollabConfig,
        rate_limiter: TokenBucket | None = None,
    ) -> "ExternalAgentAdapter":
        return cls(
            agents=config.agents,
            workspace_dir=config.workspace_dir,
            rate_limiter=rate_limiter,
        )

    def _get_config(self, name: str) -> AgentConfig:
        config = self.agents.get(name)
        if config is None:
            raise UnknownAgentError(f"Unknown agent: {name}")
        return config

    def _build_command(self, config: AgentConfig) -> list[str]:
        try:
            return [validate_command(config.command)] + sanitize_args(config.args)
        except SecurityError as e:
            raise AgentSpawnError(f"Invalid command for agent {config.name}: {e}")

    def _spawn(self, config: AgentConfig, text: bool) -> subprocess.Popen:
        cmd = self._build_command(config)
        try:
            return subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8" if text else None,
                errors="replace" if text else None,
                cwd=self.workspace_dir,
                env=safe_environment(),
                shell=False,
                # Own process group so helpers the agent starts are stopped with it
                start_new_session=_PROCESS_GROUPS,
            )
        except FileNotFoundError:
            raise AgentSpawnError(f"{config.name} agent not found: {config.command}")
        except PermissionError:
            raise AgentSpawnError(f"Permission denied starting {config.name} agent: {config.command}")
        except OSError as e:
            raise AgentSpawnError(f"Failed to start {config.name} agent: {e}")

    def _acquire_token(self, name: str) -> None:
        if self.rate_limiter is None:
            return
        if not self.rate_limiter.acquire(1, timeout=self.rate_limit_timeout):
            raise RateLimitExceeded(f"Rate limit wait exceeded for agent {name}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_agent(self, name: str) -> None:
        """
        Start a persistent agent process.

        One-shot agents are spawned per prompt, so this is a no-op for them.
        Starting an already-running agent does nothing.
        """
        config = self._get_config(name)
        if config.interaction_mode != "stdin":
            return

        with self._lock:
            handle = self._handles.get(name)
            if handle is not None and handle.alive:
                return
            if handle is not None:
                self._handles.pop(name)
                self._close_handle(handle)

            process = self._spawn(config, text=False)
            handle = StreamHandle(name=name, config=config, process=process)
            handle.reader_thread = threading.Thread(
                target=self._read_stdout, args=(handle,), daemon=True
            )
            handle.stderr_thread = threading.Thread(
                target=self._drain_stderr, args=(handle,), daemon=True
            )
            handle.reader_thread.start()
            handle.stderr_thread.start()
            self._handles[name] = handle

        logger.info("Started %s agent (pid %s)", name, process.pid)

    def stop_agent(self, name: str) -> bool:
        """Stop a persistent agent. Returns False if it was not running."""
        with self._lock:
            handle = self._handles.pop(name, None)
        if handle is None:
            return False
        self._close_handle(handle)
        logger.info("Stopped %s agent", name)
        return True

    def stop_all(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            self._close_handle(handle)

    def is_running(self, name: str) -> bool:
        with self._lock:
            handle = self._handles.get(name)
        return handle is not None and handle.alive

    def _close_handle(self, handle: StreamHandle) -> None:
        process = handle.process
        if process.stdin and not process.stdin.closed:
            try:
                process.stdin.close()
            except OSError:
                pass
        if process.poll() is None:
            _signal_process(process)
            try:
                process.wait(timeout=_STOP_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                _signal_process(process, kill=True)
                process.wait()

    def _discard_handle(self, handle: StreamHandle) -> None:
        with self._lock:
            if self._handles.get(handle.name) is handle:
                self._handles.pop(handle.name)
        self._close_handle(handle)

    def _read_stdout(self, handle: StreamHandle) -> None:
        """Background thread: push decoded stdout chunks, then None at EOF."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stdout = handle.process.stdout
        try:
            while True:
                chunk = stdout.read1(_READ_CHUNK)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    handle.output.put(text)
        except (OSError, ValueError):
            pass
        tail = decoder.decode(b"", final=True)
        if tail:
            handle.output.put(tail)
        handle.output.put(None)

    def _drain_stderr(self, handle: StreamHandle) -> None:
        """Background thread: log agent stderr so the pipe never fills."""
        try:
            for line in iter(handle.process.stderr.readline, b""):
                logger.debug("[%s stderr] %s", handle.name, line.decode("utf-8", "replace").rstrip())
        except (OSError, ValueError):
            pass

    # ------------------------------------------------------------------
    # Prompting
    # ------------------------------------------------------------------

    def send_prompt(self, name: str, prompt: str) -> str:
        """
        Send a prompt to an agent and return its response text.

        Raises:
            UnknownAgentError: No agent record for name
            AgentSpawnError: The process could not be started
            AgentTimeoutError: No (or, for stdin mode, incomplete) response in time
            AgentExitedError: A streaming agent exited mid-response
            AgentBusyError: A streaming agent is already handling a prompt
            RateLimitExceeded: No rate-limit token became available in time
        """
        config = self._get_config(name)
        self._acquire_token(name)

        logger.debug("Sending %d-char prompt to %s (%s)", len(prompt), name, config.interaction_mode)
        if config.interaction_mode == "stdin":
            return self._send_streaming(config, prompt)
        return self._send_oneshot(config, prompt)

    def _send_streaming(self, config: AgentConfig, prompt: str) -> str:
        self.start_agent(config.name)
        with self._lock:
            handle = self._handles.get(config.name)
        if handle is None:
            raise AgentExitedError(f"Agent {config.name} stopped before the prompt was sent")

        if not handle.busy.acquire(blocking=False):
            raise AgentBusyError(f"Agent {config.name} is busy with another prompt")
        try:
            self._discard_stale_output(handle)
            sentinel = config.effective_sentinel
            message = prompt + SENTINEL_INSTRUCTION.format(sentinel=sentinel)
            try:
                handle.process.stdin.write(message.encode("utf-8"))
                handle.process.stdin.flush()
            except (BrokenPipeError, OSError) as e:
                self._discard_handle(handle)
                raise AgentExitedError(f"Agent {config.name} is not accepting input: {e}")

            return self._collect_until_sentinel(handle, sentinel, config.timeout_seconds)
        finally:
            handle.busy.release()

    def _discard_stale_output(self, handle: StreamHandle) -> None:
        while True:
            try:
                chunk = handle.output.get_nowait()
            except queue.Empty:
                return
            if chunk is None:
                # Keep the EOF marker for the collector
                handle.output.put(None)
                return
            logger.debug("Discarding %d chars of stale output from %s", len(chunk), handle.name)

    def _collect_until_sentinel(self, handle: StreamHandle, sentinel: str, timeout: float) -> str:
        buffer = ""
        deadline = time.monotonic() + timeout

        while True:
            index = buffer.find(sentinel)
            if index != -1:
                return buffer[:index].strip()

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AgentTimeoutError(
                    f"Agent {handle.name} did not finish within {timeout:.0f}s"
                )
            try:
                chunk = handle.output.get(timeout=remaining)
            except queue.Empty:
                raise AgentTimeoutError(
                    f"Agent {handle.name} did not finish within {timeout:.0f}s"
                )

            if chunk is None:
                self._discard_handle(handle)
                raise AgentExitedError(
                    f"Agent {handle.name} exited before completing its response"
                )
            buffer += chunk

    def _send_oneshot(self, config: AgentConfig, prompt: str) -> str:
        process = self._spawn(config, text=True)
        timeout = config.timeout_seconds

        try:
            stdout, stderr = process.communicate(prompt, timeout=timeout)
        except subprocess.TimeoutExpired:
            stdout, stderr = self._terminate(process)
            output = (stdout or "").strip()
            if output:
                logger.warning(
                    "%s timed out after %.0fs; returning %d chars of partial output",
                    config.name, timeout, len(output),
                )
                return output
            raise AgentTimeoutError(
                f"Agent {config.name} timed out after {timeout:.0f}s with no output"
            )

        if stderr:
            logger.debug("[%s stderr] %s", config.name, stderr.strip())

        output = (stdout or "").strip()
        if process.returncode != 0:
            if not output:
                raise AgentExitedError(
                    f"Agent {config.name} exited with code {process.returncode}: "
                    f"{(stderr or 'Unknown error').strip()[:200]}"
                )
            logger.warning("%s exited with code %d", config.name, process.returncode)
        return output

    def _terminate(self, process: subprocess.Popen) -> tuple[str, str]:
        """Stop a timed-out process and return everything it wrote."""
        _signal_process(process)
        try:
            return process.communicate(timeout=_STOP_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            _signal_process(process, kill=True)
        try:
            return process.communicate(timeout=_STOP_GRACE_SECONDS)
        except subprocess.TimeoutExpired as e:
            # Something outside the group still holds the pipes open
            logger.warning("Output pipes of pid %s stayed open after kill", process.pid)
            return _decode_partial(e.output), _decode_partial(e.stderr)

    def __enter__(self) -> "ExternalAgentAdapter":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop_all()
