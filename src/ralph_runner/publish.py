"""Publishing a working branch, with a fallback for protected paths.

Some paths (by default `.github/workflows`) cannot be pushed by the bot
identity. When a push is rejected and such paths changed, their patch is
posted on the originating issue, the changes are stripped from the branch,
and the push is retried once.

`PushFallback.publish` runs an ordered chain of stages. Each stage either
returns a final `PublishOutcome` or None to hand over to the next stage.
No exception escapes `publish`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Sequence

from .git import GitError, GitRepo
from .github import GitHubError
from .logging_utils import log_event
from .models import PublishResult
from .state import StateKey, StateStore

WORKFLOW_PATCH_MARKER = "<!-- ralph-comment-workflow-patch -->"
STRIP_COMMIT_MESSAGE = (
    "chore: remove workflow changes that cannot be pushed (patch posted to issue)"
)


class CommentSink(Protocol):
    def upsert_comment(self, *, number: int, body: str, marker: str) -> str: ...


@dataclass
class PublishOutcome:
    result: PublishResult
    detail: str = ""
    stripped_paths: list[str] = field(default_factory=list)
    patch_comment: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result.is_ok()


@dataclass
class PublishAttempt:
    branch: str
    base: str
    request_id: Optional[int]
    push_detail: str = ""


Stage = Callable[[PublishAttempt], Optional[PublishOutcome]]


def format_patch_comment(files: Sequence[str], patch: str, *, branch: str) -> str:
    listing = "\n".join(f"- `{name}`" for name in files)
    return (
        "⚠️ **Workflow file changes could not be pushed** due to token permission "
        "restrictions.\n\n"
        "The following files were modified but could not be included in the push:\n\n"
        f"{listing}\n\n"
        "<details>\n<summary>📋 Click to expand the patch</summary>\n\n"
        "Apply this patch locally with:\n"
        "```bash\n"
        f"git checkout {branch}\n"
        "git apply <<'PATCH'\n"
        f"{patch.rstrip()}\n"
        "PATCH\n"
        "```\n\n"
        "</details>\n\n"
        f"{WORKFLOW_PATCH_MARKER}\n"
    )


class PushFallback:
    def __init__(
        self,
        git: GitRepo,
        *,
        comments: Optional[CommentSink] = None,
        store: Optional[StateStore] = None,
        protected_paths: Sequence[str] = (".github/workflows",),
        force_with_lease: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.git = git
        self.force_with_lease = force_with_lease
        self.comments = comments
        self.store = store
        self.protected_paths = [p.rstrip("/") for p in protected_paths if p.strip()]
        self._logger = logger or logging.getLogger(__name__)
        self.stages: list[Stage] = [
            self._skip_if_up_to_date,
            self._direct_push,
            self._protected_path_fallback,
        ]

    def publish(
        self, branch: str, base: str, request_id: Optional[int] = None
    ) -> PublishOutcome:
        attempt = PublishAttempt(branch=branch, base=base, request_id=request_id)
        outcome: Optional[PublishOutcome] = None
        for stage in self.stages:
            try:
                outcome = stage(attempt)
            except (GitError, GitHubError) as exc:
                outcome = PublishOutcome(PublishResult.FAILURE, detail=str(exc))
            if outcome is not None:
                break
        if outcome is None:
            outcome = PublishOutcome(
                PublishResult.FAILURE, detail=attempt.push_detail or "push failed"
            )
        self._record(attempt, outcome)
        return outcome

    # ── stages ─────────────────────────────────────────────────────────────────
    def _skip_if_up_to_date(self, attempt: PublishAttempt) -> Optional[PublishOutcome]:
        self.git.fetch()
        local_head = self.git.head()
        remote_head = self.git.rev_parse(self.git.remote_ref(attempt.branch))
        if remote_head is not None and local_head == remote_head:
            return PublishOutcome(
                PublishResult.ALREADY_UP_TO_DATE,
                detail=f"{attempt.branch} already up to date at {local_head[:12]}",
            )
        return None

    def _direct_push(self, attempt: PublishAttempt) -> Optional[PublishOutcome]:
        ok, detail = self.git.push(
            attempt.branch, force_with_lease=self.force_with_lease
        )
        if ok:
            return PublishOutcome(PublishResult.SUCCESS)
        attempt.push_detail = detail or "push rejected"
        log_event(
            self._logger,
            logging.WARNING,
            "publish.push_rejected",
            branch=attempt.branch,
            detail=attempt.push_detail,
        )
        return None

    def _protected_path_fallback(
        self, attempt: PublishAttempt
    ) -> Optional[PublishOutcome]:
        base_ref = self.git.remote_ref(attempt.base)
        files = self.protected_changes(base_ref)
        if not files:
            return PublishOutcome(PublishResult.FAILURE, detail=attempt.push_detail)
        patch = self.git.diff_patch(base_ref, self.protected_paths)
        body = format_patch_comment(files, patch, branch=attempt.branch)
        if self.comments is None or attempt.request_id is None:
            return PublishOutcome(
                PublishResult.FAILURE,
                detail=(
                    f"{attempt.push_detail}\nProtected paths changed ({', '.join(files)}) "
                    "but there is no issue to receive their patch."
                ),
                patch_comment=body,
            )
        action = self.comments.upsert_comment(
            number=attempt.request_id, body=body, marker=WORKFLOW_PATCH_MARKER
        )
        log_event(
            self._logger,
            logging.INFO,
            "publish.patch_comment",
            issue=attempt.request_id,
            action=action,
            files=files,
        )
        self.strip(base_ref, files)
        ok, detail = self.git.push(
            attempt.branch, force_with_lease=self.force_with_lease
        )
        log_event(
            self._logger,
            logging.INFO if ok else logging.WARNING,
            "publish.retry",
            branch=attempt.branch,
            ok=ok,
            detail=detail or None,
        )
        return PublishOutcome(
            PublishResult.SUCCESS if ok else PublishResult.FAILURE,
            detail="" if ok else (detail or "push rejected after stripping"),
            stripped_paths=files,
            patch_comment=body,
        )

    # ── helpers ────────────────────────────────────────────────────────────────
    def protected_changes(self, base_ref: str) -> list[str]:
        if not self.protected_paths:
            return []
        return self.git.diff_names(base_ref, self.protected_paths)

    def strip(self, base_ref: str, files: Sequence[str]) -> None:
        """Return `files` to their `base_ref` state in one commit."""
        for path in files:
            if self.git.exists_at(base_ref, path):
                self.git.restore_from(base_ref, path)
            else:
                self.git.remove(path)
        if self.git.has_staged_changes():
            self.git.commit(STRIP_COMMIT_MESSAGE)

    def _record(self, attempt: PublishAttempt, outcome: PublishOutcome) -> None:
        log_event(
            self._logger,
            logging.INFO if outcome.ok else logging.WARNING,
            "publish.finished",
            branch=attempt.branch,
            result=outcome.result,
            stripped=outcome.stripped_paths or None,
        )
        if self.store is None:
            return
        if outcome.ok:
            self.store.clear(StateKey.PUSH_ERROR)
        else:
            self.store.write(
                StateKey.PUSH_ERROR,
                outcome.detail or f"Push of {attempt.branch} failed",
            )
