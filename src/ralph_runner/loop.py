"""The work -> review -> decide state machine.

One `LoopController.run` call drives a task to exactly one terminal state
(SHIPPED, MAX_ITERATIONS or ERROR) and persists it. Every step reads and
writes the state store, so a process that dies mid-run resumes at the
persisted iteration count.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from .agents import REVIEWER, WORKER, Agent, AgentError, AgentRequest
from .git import GitError
from .logging_utils import log_event
from .models import FinalStatus, LoopPhase, MergeRecord, Task, Verdict
from .publish import PublishOutcome
from .state import StateKey, StateStore

CONVENTIONAL_HEADER_RE = re.compile(
    r"^(feat|fix|docs|style|refactor|test|chore|perf|ci|build|revert)"
    r"(\([^)]+\))?!?: \S"
)

NO_COMMIT_FEEDBACK = (
    "The previous iteration produced no new commits. Check for unresolved merge "
    "conflicts (git status, conflict markers) and make the changes the task "
    "requires before finishing."
)
MISSING_VERDICT_FEEDBACK = (
    "The reviewer did not record a verdict. Re-examine the task requirements and "
    "the current changes."
)


class Workspace(Protocol):
    def head(self) -> str: ...

    def commit_all(self, message: str, *, exclude=()) -> Optional[str]: ...


Publisher = Callable[[], PublishOutcome]
Resolver = Callable[[Verdict], MergeRecord]


@dataclass
class LoopResult:
    final_status: FinalStatus
    iteration: int
    merge_record: Optional[MergeRecord] = None
    phases: list[LoopPhase] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return self.final_status.exit_code


def commit_message(work_summary: str, iteration: int) -> str:
    first = (work_summary or "").strip().splitlines()
    if first and CONVENTIONAL_HEADER_RE.match(first[0].strip()):
        return first[0].strip()
    return f"chore(ralph): apply changes from iteration {iteration}"


def append_feedback(feedback: str, addition: str) -> str:
    feedback = (feedback or "").rstrip()
    return f"{feedback}\n\n{addition}" if feedback else addition


class LoopController:
    def __init__(
        self,
        *,
        store: StateStore,
        editor: Agent,
        reviewer: Agent,
        workspace: Workspace,
        publish: Publisher,
        max_iterations: int,
        resolve: Optional[Resolver] = None,
        state_dir_name: str = ".ralph",
        stop_event: Optional[threading.Event] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self.store = store
        self.editor = editor
        self.reviewer = reviewer
        self.workspace = workspace
        self.publish = publish
        self.resolve = resolve
        self.max_iterations = max_iterations
        self.state_dir_name = state_dir_name
        self.stop_event = stop_event
        self._logger = logger or logging.getLogger(__name__)
        self.phase = LoopPhase.ITERATING
        self._phases: list[LoopPhase] = []

    def run(self) -> LoopResult:
        existing = self.store.read(StateKey.FINAL_STATUS)
        if existing is not None:
            self._event(logging.INFO, "loop.already_finished", status=existing)
            return LoopResult(existing, self.store.read(StateKey.ITERATION))

        task: Optional[Task] = self.store.read(StateKey.TASK)
        if task is None:
            self._event(logging.ERROR, "loop.missing_task")
            return self._finish(FinalStatus.ERROR, self.store.read(StateKey.ITERATION))

        while True:
            self._enter(LoopPhase.ITERATING)
            iteration = self.store.read(StateKey.ITERATION)
            if iteration >= self.max_iterations:
                if iteration > self.max_iterations:
                    iteration = self.max_iterations
                    self.store.write(StateKey.ITERATION, iteration)
                return self._finish(FinalStatus.MAX_ITERATIONS, iteration)
            if self.stop_event is not None and self.stop_event.is_set():
                self._event(logging.WARNING, "loop.cancelled", iteration=iteration)
                return self._finish(FinalStatus.ERROR, iteration)

            iteration += 1
            self.store.write(StateKey.ITERATION, iteration)
            self._event(
                logging.INFO,
                "loop.iteration.started",
                iteration=iteration,
                max_iterations=self.max_iterations,
            )

            self._enter(LoopPhase.WORKING)
            committed = self._work(task, iteration)
            if committed is None:
                return self._finish(FinalStatus.ERROR, iteration)
            if not committed:
                self.store.write(StateKey.REVIEW_FEEDBACK, NO_COMMIT_FEEDBACK)
                self.store.store_verdict(Verdict.REVISE)
                self._event(logging.WARNING, "loop.no_commits", iteration=iteration)
                continue

            self._enter(LoopPhase.REVIEWING)
            if not self._review(task, iteration):
                return self._finish(FinalStatus.ERROR, iteration)
            self._publish(iteration)

            self._enter(LoopPhase.DECIDING)
            verdict = self.store.read(StateKey.REVIEW_RESULT)
            self._event(
                logging.INFO,
                "loop.iteration.decided",
                iteration=iteration,
                verdict=verdict,
            )
            if verdict == Verdict.SHIP:
                result = self._finish(FinalStatus.SHIPPED, iteration)
                if self.resolve is not None:
                    result.merge_record = self.resolve(verdict)
                return result

    # ── steps ──────────────────────────────────────────────────────────────────
    def _work(self, task: Task, iteration: int) -> Optional[bool]:
        """Run the editing agent and commit its changes.

        Returns None on a fatal failure, else whether HEAD moved.
        """
        request = AgentRequest(
            role=WORKER,
            iteration=iteration,
            task=task,
            feedback=self.store.read(StateKey.REVIEW_FEEDBACK) if iteration > 1 else "",
            push_error=self.store.read(StateKey.PUSH_ERROR),
        )
        self.store.clear(StateKey.WORK_SUMMARY)
        try:
            before = self.workspace.head()
            result = self.editor.run(request)
        except (AgentError, GitError) as exc:
            self._event(logging.ERROR, "loop.worker.failed", iteration=iteration, exc=exc)
            return None
        if not result.ok:
            self._event(
                logging.ERROR,
                "loop.worker.failed",
                iteration=iteration,
                exit_code=result.exit_code,
            )
            return None
        summary = self.store.read(StateKey.WORK_SUMMARY)
        try:
            self.workspace.commit_all(
                commit_message(summary, iteration), exclude=[self.state_dir_name]
            )
            after = self.workspace.head()
        except GitError as exc:
            self._event(logging.ERROR, "loop.commit.failed", iteration=iteration, exc=exc)
            return None
        return after != before

    def _review(self, task: Task, iteration: int) -> bool:
        request = AgentRequest(
            role=REVIEWER,
            iteration=iteration,
            task=task,
            work_summary=self.store.read(StateKey.WORK_SUMMARY),
        )
        self.store.clear(StateKey.REVIEW_RESULT)
        self.store.clear(StateKey.REVIEW_FEEDBACK)
        try:
            result = self.reviewer.run(request)
        except AgentError as exc:
            self._event(logging.ERROR, "loop.reviewer.failed", iteration=iteration, exc=exc)
            return False
        if not result.ok:
            self._event(
                logging.ERROR,
                "loop.reviewer.failed",
                iteration=iteration,
                exit_code=result.exit_code,
            )
            return False
        if not self.store.raw(StateKey.REVIEW_RESULT).strip():
            self.store.write(StateKey.REVIEW_FEEDBACK, MISSING_VERDICT_FEEDBACK)
            self._event(logging.WARNING, "loop.reviewer.no_verdict", iteration=iteration)
        # Only the normalized form is ever stored.
        self.store.store_verdict(self.store.read(StateKey.REVIEW_RESULT))
        return True

    def _publish(self, iteration: int) -> None:
        outcome = self.publish()
        push_error = self.store.read(StateKey.PUSH_ERROR)
        if outcome.ok and not push_error:
            self._event(
                logging.INFO,
                "loop.publish.ok",
                iteration=iteration,
                result=outcome.result,
            )
            return
        push_error = push_error or outcome.detail or "push failed"
        self.store.store_verdict(Verdict.REVISE)
        self.store.write(
            StateKey.REVIEW_FEEDBACK,
            append_feedback(
                self.store.read(StateKey.REVIEW_FEEDBACK),
                f"The branch could not be pushed:\n{push_error}",
            ),
        )
        self._event(
            logging.WARNING,
            "loop.publish.failed",
            iteration=iteration,
            detail=push_error,
        )

    # ── bookkeeping ────────────────────────────────────────────────────────────
    def _event(self, level: int, event: str, **fields) -> None:
        log_event(self._logger, level, event, **fields)

    def _enter(self, phase: LoopPhase) -> None:
        self.phase = phase
        self._phases.append(phase)

    def _finish(self, status: FinalStatus, iteration: int) -> LoopResult:
        self._enter(LoopPhase(status.value.lower()))
        self.store.write(StateKey.FINAL_STATUS, status)
        self._event(
            logging.INFO if status != FinalStatus.ERROR else logging.ERROR,
            "loop.finished",
            status=status,
            iteration=iteration,
        )
        return LoopResult(status, iteration, phases=list(self._phases))
