"""Durable per-run state kept under the working tree's state directory.

Each key is one file so agents can read and write them directly. The
directory never reaches a published branch: it is excluded from commits
by the loop and listed in `.git/info/exclude`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol

from .decision import normalize
from .models import (
    EventInfo,
    FinalStatus,
    LoopState,
    MergeRecord,
    RunContext,
    Task,
    Verdict,
)
from .utils import atomic_write

_logger = logging.getLogger(__name__)


class StateError(Exception):
    pass


class StateKey(str, Enum):
    TASK = "task.md"
    ISSUE_NUMBER = "issue-number.txt"
    ITERATION = "iteration.txt"
    WORK_SUMMARY = "work-summary.txt"
    REVIEW_RESULT = "review-result.txt"
    REVIEW_FEEDBACK = "review-feedback.txt"
    PR_TITLE = "pr-title.txt"
    PUSH_ERROR = "push-error.txt"
    FINAL_STATUS = "final-status.txt"
    RUN_CONTEXT = "pr-info.txt"
    PR_URL = "pr-url.txt"
    MERGE_COMMIT = "merge-commit.txt"
    EVENT_INFO = "event-info.txt"


TEXT_KEYS = frozenset(
    {
        StateKey.WORK_SUMMARY,
        StateKey.REVIEW_FEEDBACK,
        StateKey.PR_TITLE,
        StateKey.PUSH_ERROR,
        StateKey.PR_URL,
        StateKey.MERGE_COMMIT,
    }
)


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class StateBackend(Protocol):
    def get(self, name: str) -> Optional[str]: ...

    def put(self, name: str, text: str) -> None: ...

    def delete(self, name: str) -> None: ...


class FileStateBackend:
    def __init__(self, root: Path) -> None:
        self.root = root

    def init(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        return self.root / name

    def get(self, name: str) -> Optional[str]:
        path = self.path_for(name)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            # A store read must never stall the loop.
            _logger.warning("Unable to read state file %s: %s", path, exc)
            return None

    def put(self, name: str, text: str) -> None:
        atomic_write(self.path_for(name), text)

    def delete(self, name: str) -> None:
        self.path_for(name).unlink(missing_ok=True)


class MemoryStateBackend:
    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self.files: dict[str, str] = dict(initial or {})

    def get(self, name: str) -> Optional[str]:
        return self.files.get(name)

    def put(self, name: str, text: str) -> None:
        self.files[name] = text

    def delete(self, name: str) -> None:
        self.files.pop(name, None)


class StateStore:
    """Typed key/value access over a StateBackend.

    `read` never fails on a missing or unreadable entry; it returns the
    key's default instead (0, "", REVISE, None).
    """

    def __init__(self, backend: StateBackend) -> None:
        self.backend = backend

    @classmethod
    def at(cls, state_dir: Path) -> "StateStore":
        backend = FileStateBackend(state_dir)
        backend.init()
        return cls(backend)

    def read(self, key: StateKey) -> Any:
        raw = self.backend.get(key.value)
        text = raw.rstrip("\n") if raw is not None else ""
        if key == StateKey.ITERATION:
            return self._parse_iteration(text)
        if key == StateKey.REVIEW_RESULT:
            return normalize(text)
        if key == StateKey.FINAL_STATUS:
            try:
                return FinalStatus(text.strip()) if text.strip() else None
            except ValueError:
                _logger.warning("Ignoring unknown final status %r", text)
                return None
        if key == StateKey.ISSUE_NUMBER:
            value = text.strip()
            return int(value) if value.isdigit() else None
        if key == StateKey.TASK:
            return Task.parse(raw) if raw else None
        if key == StateKey.RUN_CONTEXT:
            return RunContext.from_text(text)
        if key == StateKey.EVENT_INFO:
            return EventInfo.from_text(text)
        return text

    def write(self, key: StateKey, value: Any) -> None:
        if value is None or (key in TEXT_KEYS and value == ""):
            self.backend.delete(key.value)
            return
        if key == StateKey.ITERATION:
            iteration = int(value)
            if iteration < 0:
                raise StateError(f"iteration must be >= 0 (got {iteration})")
            text = f"{iteration}\n"
        elif key == StateKey.TASK:
            if not isinstance(value, Task):
                raise StateError("task must be a Task")
            text = value.render()
        elif key == StateKey.RUN_CONTEXT:
            if not isinstance(value, RunContext):
                raise StateError("run context must be a RunContext")
            text = value.to_text()
        elif key == StateKey.EVENT_INFO:
            if not isinstance(value, EventInfo):
                raise StateError("event info must be an EventInfo")
            text = value.to_text()
        elif isinstance(value, Enum):
            text = f"{value.value}\n"
        else:
            text = str(value).rstrip("\n") + "\n"
        self.backend.put(key.value, text)

    def clear(self, key: StateKey) -> None:
        self.backend.delete(key.value)

    def raw(self, key: StateKey) -> str:
        """Unnormalized text of an entry ("" when missing)."""
        return (self.backend.get(key.value) or "").rstrip("\n")

    def has(self, key: StateKey) -> bool:
        return self.backend.get(key.value) is not None

    # ── verdicts ───────────────────────────────────────────────────────────────
    def store_verdict(self, verdict: Verdict) -> None:
        self.write(StateKey.REVIEW_RESULT, verdict)

    # ── merge record ───────────────────────────────────────────────────────────
    def write_merge_record(self, record: MergeRecord) -> None:
        if record.is_direct_publish:
            self.write(StateKey.MERGE_COMMIT, record.commit_sha or "")
            self.clear(StateKey.PR_URL)
        else:
            self.write(StateKey.PR_URL, record.pr_url or "")
            self.clear(StateKey.MERGE_COMMIT)

    # ── whole-snapshot persistence ─────────────────────────────────────────────
    def load(self) -> LoopState:
        return LoopState(
            task=self.read(StateKey.TASK),
            issue_number=self.read(StateKey.ISSUE_NUMBER),
            iteration=self.read(StateKey.ITERATION),
            work_summary=self.read(StateKey.WORK_SUMMARY),
            verdict=self.read(StateKey.REVIEW_RESULT),
            feedback=self.read(StateKey.REVIEW_FEEDBACK),
            pr_title=self.read(StateKey.PR_TITLE),
            push_error=self.read(StateKey.PUSH_ERROR),
            final_status=self.read(StateKey.FINAL_STATUS),
            context=self.read(StateKey.RUN_CONTEXT),
            pr_url=self.read(StateKey.PR_URL),
            merge_commit=self.read(StateKey.MERGE_COMMIT),
            event=self.read(StateKey.EVENT_INFO),
        )

    def save(self, state: LoopState) -> None:
        self.write(StateKey.TASK, state.task)
        self.write(StateKey.ISSUE_NUMBER, state.issue_number)
        self.write(StateKey.ITERATION, state.iteration)
        self.write(StateKey.WORK_SUMMARY, state.work_summary)
        self.write(StateKey.REVIEW_RESULT, state.verdict)
        self.write(StateKey.REVIEW_FEEDBACK, state.feedback)
        self.write(StateKey.PR_TITLE, state.pr_title)
        self.write(StateKey.PUSH_ERROR, state.push_error)
        self.write(StateKey.FINAL_STATUS, state.final_status)
        self.write(StateKey.RUN_CONTEXT, state.context)
        self.write(StateKey.PR_URL, state.pr_url)
        self.write(StateKey.MERGE_COMMIT, state.merge_commit)
        self.write(StateKey.EVENT_INFO, state.event)

    @staticmethod
    def _parse_iteration(text: str) -> int:
        value = text.strip()
        if not value:
            return 0
        try:
            iteration = int(value)
        except ValueError:
            _logger.warning("Ignoring unparsable iteration %r", value)
            return 0
        return max(0, iteration)
