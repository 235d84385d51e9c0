from __future__ import annotations

import logging
from typing import Optional, Protocol

from .github import GitHubError
from .logging_utils import log_event
from .models import MergeRecord, MergeStrategy, Verdict
from .state import StateKey, StateStore

SQUASH_TRAILER = "Squashed-by: ralph-runner"


class ReviewHost(Protocol):
    def pr_for_branch(self, *, branch: str) -> Optional[dict]: ...

    def create_pr(self, *, base: str, head: str, title: str, body: str) -> dict: ...

    def edit_pr(self, *, number: int, title: str, body: Optional[str] = None) -> None: ...

    def close_issue(self, *, number: int, comment: Optional[str] = None) -> None: ...


class SquashTarget(Protocol):
    def squash_merge(self, branch: str, base: str, message: str) -> str: ...


def squash_message(title: str, issue_number: Optional[int]) -> str:
    trailers = []
    if issue_number:
        trailers.append(f"Closes #{issue_number}")
    trailers.append(SQUASH_TRAILER)
    return f"{title.strip()}\n\n" + "\n".join(trailers)


def review_request_body(issue_number: Optional[int], iteration: int) -> str:
    lines = []
    if issue_number:
        lines.append(f"Closes #{issue_number}")
        lines.append("")
    lines.append(f"Prepared by ralph-runner over {iteration} iteration(s).")
    return "\n".join(lines)


class MergeResolver:
    """Turn a terminal SHIP verdict into a merge record.

    `review-request` opens or retitles the branch's PR. `direct-publish`
    squashes the branch onto the base; if that fails for any reason the
    resolver opens/updates a PR instead so the work is never dropped.
    """

    def __init__(
        self,
        host: ReviewHost,
        git: SquashTarget,
        store: StateStore,
        *,
        branch: str,
        base: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.host = host
        self.git = git
        self.store = store
        self.branch = branch
        self.base = base
        self._logger = logger or logging.getLogger(__name__)

    def resolve(self, strategy: object, verdict: Verdict) -> MergeRecord:
        if not isinstance(strategy, MergeStrategy):
            strategy = MergeStrategy.parse(str(strategy) if strategy else None)
        if verdict != Verdict.SHIP:
            raise ValueError("merge resolution requires a SHIP verdict")
        if strategy == MergeStrategy.DIRECT_PUBLISH:
            try:
                record = self.direct_publish()
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "merge.direct_publish.failed",
                    branch=self.branch,
                    exc=exc,
                )
                record = self.review_request()
                record.fallback_reason = record.fallback_reason or str(exc)
        else:
            record = self.review_request()
        self.store.write_merge_record(record)
        log_event(
            self._logger,
            logging.INFO,
            "merge.resolved",
            strategy=record.strategy,
            pr_url=record.pr_url,
            commit=record.commit_sha,
            fallback=bool(record.fallback_reason),
        )
        return record

    def _title(self) -> str:
        title = self.store.read(StateKey.PR_TITLE).strip()
        if title:
            return title.splitlines()[0]
        task = self.store.read(StateKey.TASK)
        if task is not None and task.title:
            return task.title
        return f"ralph: changes from {self.branch}"

    def review_request(self) -> MergeRecord:
        title = self._title()
        issue_number = self.store.read(StateKey.ISSUE_NUMBER)
        body = review_request_body(issue_number, self.store.read(StateKey.ITERATION))
        try:
            pr = self.host.pr_for_branch(branch=self.branch)
            if pr and pr.get("number"):
                self.host.edit_pr(number=int(pr["number"]), title=title)
            else:
                pr = self.host.create_pr(
                    base=self.base, head=self.branch, title=title, body=body
                )
        except GitHubError as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "merge.review_request.failed",
                branch=self.branch,
                exc=exc,
            )
            return MergeRecord(
                strategy=MergeStrategy.REVIEW_REQUEST,
                fallback_reason=f"Unable to open review request: {exc}",
            )
        number = pr.get("number")
        context = self.store.read(StateKey.RUN_CONTEXT)
        if number:
            self.store.write(
                StateKey.RUN_CONTEXT, context.model_copy(update={"pr_number": number})
            )
        return MergeRecord(
            strategy=MergeStrategy.REVIEW_REQUEST,
            pr_url=pr.get("url") or None,
            pr_number=int(number) if number else None,
        )

    def direct_publish(self) -> MergeRecord:
        issue_number = self.store.read(StateKey.ISSUE_NUMBER)
        message = squash_message(self._title(), issue_number)
        sha = self.git.squash_merge(self.branch, self.base, message)
        if issue_number:
            try:
                self.host.close_issue(
                    number=issue_number,
                    comment=f"Squash-merged into `{self.base}` as {sha}.",
                )
            except GitHubError as exc:
                # The squash commit is already on the base branch.
                log_event(
                    self._logger,
                    logging.WARNING,
                    "merge.close_issue.failed",
                    issue=issue_number,
                    exc=exc,
                )
        return MergeRecord(strategy=MergeStrategy.DIRECT_PUBLISH, commit_sha=sha)
