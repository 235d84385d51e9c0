from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from .config import AgentConfig
from .logging_utils import log_event
from .models import Task
from .utils import sanitize_cmd, tail_lines

WORKER = "worker"
REVIEWER = "reviewer"


class AgentError(Exception):
    """The agent process could not be started or did not finish."""


@dataclass
class AgentRequest:
    role: str
    iteration: int
    task: Task
    feedback: str = ""
    push_error: str = ""
    work_summary: str = ""


@dataclass
class AgentRunResult:
    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Agent(Protocol):
    def run(self, request: AgentRequest) -> AgentRunResult: ...


def build_prompt(request: AgentRequest, *, state_dir: str) -> str:
    if request.role == REVIEWER:
        return "\n\n".join(
            [
                f"You are the reviewer on iteration {request.iteration} of a Ralph loop.",
                "Review the worker's changes against the task requirements.",
                f"1. Read {state_dir}/task.md for the task description.",
                f"2. Read {state_dir}/work-summary.txt for the worker's summary.",
                "3. Examine the actual code changes in the repository.",
                f"4. Write SHIP or REVISE to {state_dir}/review-result.txt",
                f"5. If REVISE, write specific feedback to {state_dir}/review-feedback.txt",
                f"6. Optionally write a conventional-commit title to {state_dir}/pr-title.txt",
            ]
        )
    parts = [
        f"You are on iteration {request.iteration} of a Ralph loop. Work on the task.",
        f"Read {state_dir}/task.md for the task description.",
    ]
    if request.feedback and request.iteration > 1:
        parts.append(
            f"Read {state_dir}/review-feedback.txt for reviewer feedback from the "
            "previous iteration (HIGHEST PRIORITY)."
        )
    if request.push_error:
        parts.append(
            f"IMPORTANT: The previous push to remote failed. Read {state_dir}/push-error.txt "
            "and resolve the cause before anything else."
        )
    parts.append(
        f"Do not modify {state_dir}/ other than work-summary.txt. "
        f"When finished, write your summary to {state_dir}/work-summary.txt."
    )
    return "\n\n".join(parts)


class CommandAgent:
    """Runs an agent CLI once per request, blocking until it exits."""

    def __init__(
        self,
        role: str,
        config: AgentConfig,
        *,
        workspace: Path,
        state_dir: str = ".ralph",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.role = role
        self.config = config
        self.workspace = workspace
        self.state_dir = state_dir
        self._logger = logger or logging.getLogger(__name__)

    def build_command(self, request: AgentRequest) -> list[str]:
        cmd = list(self.config.command)
        if self.config.model:
            cmd += ["--model", self.config.model]
        if self.config.max_turns:
            cmd += ["--max-turns", str(self.config.max_turns)]
        if self.config.allowed_tools:
            cmd += ["--allowedTools", self.config.allowed_tools]
        cmd.append(build_prompt(request, state_dir=self.state_dir))
        return cmd

    def run(self, request: AgentRequest) -> AgentRunResult:
        cmd = self.build_command(request)
        log_event(
            self._logger,
            logging.INFO,
            "agent.started",
            role=self.role,
            iteration=request.iteration,
            cmd=sanitize_cmd(cmd[:-1]),
        )
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(self.workspace),
                text=True,
                capture_output=True,
                timeout=self.config.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as exc:
            raise AgentError(f"Missing binary: {cmd[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise AgentError(
                f"{self.role} timed out after {self.config.timeout_seconds}s"
            ) from exc
        output = tail_lines(proc.stdout or "") or tail_lines(proc.stderr or "")
        log_event(
            self._logger,
            logging.INFO if proc.returncode == 0 else logging.ERROR,
            "agent.finished",
            role=self.role,
            iteration=request.iteration,
            exit_code=proc.returncode,
        )
        return AgentRunResult(exit_code=proc.returncode, output=output)
