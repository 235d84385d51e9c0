import threading
from typing import Callable, Optional

from ralph_runner.agents import AgentError, AgentRequest, AgentRunResult
from ralph_runner.loop import (
    MISSING_VERDICT_FEEDBACK,
    LoopController,
    commit_message,
)
from ralph_runner.models import (
    ExitCode,
    FinalStatus,
    LoopPhase,
    MergeRecord,
    MergeStrategy,
    PublishResult,
    Task,
    Verdict,
)
from ralph_runner.publish import PublishOutcome
from ralph_runner.state import MemoryStateBackend, StateKey, StateStore


class FakeWorkspace:
    def __init__(self) -> None:
        self.commits: list[str] = []
        self.dirty = False

    def head(self) -> str:
        return f"sha{len(self.commits)}"

    def commit_all(self, message: str, *, exclude=()) -> Optional[str]:
        assert list(exclude) == [".ralph"]
        if not self.dirty:
            return None
        self.dirty = False
        self.commits.append(message)
        return self.head()


class FakeEditor:
    def __init__(
        self,
        workspace: FakeWorkspace,
        store: StateStore,
        *,
        changes: Callable[[int], bool] = lambda _iteration: True,
        exit_code: int = 0,
        summary: str = "did some work",
    ) -> None:
        self.workspace = workspace
        self.store = store
        self.changes = changes
        self.exit_code = exit_code
        self.summary = summary
        self.requests: list[AgentRequest] = []

    def run(self, request: AgentRequest) -> AgentRunResult:
        self.requests.append(request)
        if self.changes(request.iteration):
            self.workspace.dirty = True
        self.store.write(StateKey.WORK_SUMMARY, self.summary)
        return AgentRunResult(exit_code=self.exit_code)


class FakeReviewer:
    """Writes raw verdict text the way the reviewing agent writes its files."""

    def __init__(self, store: StateStore, verdicts: list[Optional[str]]) -> None:
        self.store = store
        self.verdicts = list(verdicts)
        self.requests: list[AgentRequest] = []

    def run(self, request: AgentRequest) -> AgentRunResult:
        self.requests.append(request)
        raw = self.verdicts.pop(0) if self.verdicts else "REVISE"
        if raw is not None:
            self.store.backend.put(StateKey.REVIEW_RESULT.value, raw + "\n")
            if "REVISE" in raw.upper():
                self.store.write(StateKey.REVIEW_FEEDBACK, "please add tests")
        return AgentRunResult(exit_code=0)


class FakePublisher:
    def __init__(self, store: StateStore, failures: int = 0) -> None:
        self.store = store
        self.failures = failures
        self.calls = 0

    def __call__(self) -> PublishOutcome:
        self.calls += 1
        if self.calls <= self.failures:
            self.store.write(StateKey.PUSH_ERROR, "remote rejected .github/workflows")
            return PublishOutcome(PublishResult.FAILURE, detail="rejected")
        self.store.clear(StateKey.PUSH_ERROR)
        return PublishOutcome(PublishResult.SUCCESS)


class FakeResolver:
    def __init__(self) -> None:
        self.calls: list[Verdict] = []

    def __call__(self, verdict: Verdict) -> MergeRecord:
        self.calls.append(verdict)
        return MergeRecord(
            strategy=MergeStrategy.REVIEW_REQUEST, pr_url="https://example/pull/1"
        )


def _store() -> StateStore:
    store = StateStore(MemoryStateBackend())
    store.write(StateKey.TASK, Task(title="Add retries", description="Retry uploads."))
    return store


def _controller(store, editor, reviewer, workspace, *, max_iterations, **kwargs):
    kwargs.setdefault("publish", FakePublisher(store))
    return LoopController(
        store=store,
        editor=editor,
        reviewer=reviewer,
        workspace=workspace,
        max_iterations=max_iterations,
        **kwargs,
    )


def test_exhaustion_ends_in_max_iterations() -> None:
    store = _store()
    workspace = FakeWorkspace()
    editor = FakeEditor(workspace, store)
    reviewer = FakeReviewer(store, ["REVISE", "REVISE"])
    resolver = FakeResolver()

    result = _controller(
        store, editor, reviewer, workspace, max_iterations=2, resolve=resolver
    ).run()

    assert result.final_status is FinalStatus.MAX_ITERATIONS
    assert result.iteration == 2
    assert result.exit_code == ExitCode.MAX_ITERATIONS == 2
    assert len(editor.requests) == 2
    assert resolver.calls == []
    assert store.read(StateKey.FINAL_STATUS) is FinalStatus.MAX_ITERATIONS
    assert store.read(StateKey.ITERATION) == 2


def test_ship_on_first_iteration() -> None:
    store = _store()
    workspace = FakeWorkspace()
    editor = FakeEditor(workspace, store)
    reviewer = FakeReviewer(store, ["SHIP"])
    resolver = FakeResolver()

    result = _controller(
        store, editor, reviewer, workspace, max_iterations=5, resolve=resolver
    ).run()

    assert result.final_status is FinalStatus.SHIPPED
    assert result.iteration == 1
    assert result.exit_code == 0
    assert resolver.calls == [Verdict.SHIP]
    assert result.merge_record is not None
    assert result.phases == [
        LoopPhase.ITERATING,
        LoopPhase.WORKING,
        LoopPhase.REVIEWING,
        LoopPhase.DECIDING,
        LoopPhase.SHIPPED,
    ]
    assert editor.requests[0].feedback == ""


def test_feedback_reaches_next_iteration() -> None:
    store = _store()
    workspace = FakeWorkspace()
    editor = FakeEditor(workspace, store)
    reviewer = FakeReviewer(store, ["REVISE", "SHIP"])

    result = _controller(store, editor, reviewer, workspace, max_iterations=3).run()

    assert result.final_status is FinalStatus.SHIPPED
    assert result.iteration == 2
    assert editor.requests[1].feedback == "please add tests"


def test_no_commits_skips_review() -> None:
    store = _store()
    workspace = FakeWorkspace()
    editor = FakeEditor(workspace, store, changes=lambda iteration: iteration > 1)
    reviewer = FakeReviewer(store, ["SHIP"])

    result = _controller(store, editor, reviewer, workspace, max_iterations=3).run()

    assert result.final_status is FinalStatus.SHIPPED
    assert result.iteration == 2
    assert len(reviewer.requests) == 1
    assert reviewer.requests[0].iteration == 2
    assert "no new commits" in editor.requests[1].feedback
    assert "conflicts" in editor.requests[1].feedback


def test_push_error_overrides_ship() -> None:
    store = _store()
    workspace = FakeWorkspace()
    editor = FakeEditor(workspace, store)
    reviewer = FakeReviewer(store, ["SHIP", "SHIP"])
    publisher = FakePublisher(store, failures=1)
    resolver = FakeResolver()

    result = _controller(
        store,
        editor,
        reviewer,
        workspace,
        max_iterations=3,
        publish=publisher,
        resolve=resolver,
    ).run()

    assert result.final_status is FinalStatus.SHIPPED
    assert result.iteration == 2
    assert publisher.calls == 2
    assert len(resolver.calls) == 1
    second = editor.requests[1]
    assert second.push_error == "remote rejected .github/workflows"
    assert "remote rejected .github/workflows" in second.feedback


def test_push_error_on_last_iteration_is_not_shipped() -> None:
    store = _store()
    workspace = FakeWorkspace()
    editor = FakeEditor(workspace, store)
    reviewer = FakeReviewer(store, ["SHIP"])

    result = _controller(
        store,
        editor,
        reviewer,
        workspace,
        max_iterations=1,
        publish=FakePublisher(store, failures=1),
    ).run()

    assert result.final_status is FinalStatus.MAX_ITERATIONS
    assert store.read(StateKey.REVIEW_RESULT) is Verdict.REVISE
    assert store.read(StateKey.PUSH_ERROR)


def test_editor_failure_is_fatal() -> None:
    store = _store()
    workspace = FakeWorkspace()
    editor = FakeEditor(workspace, store, exit_code=1)
    reviewer = FakeReviewer(store, ["SHIP"])

    result = _controller(store, editor, reviewer, workspace, max_iterations=3).run()

    assert result.final_status is FinalStatus.ERROR
    assert result.exit_code == 1
    assert result.iteration == 1
    assert reviewer.requests == []
    assert len(editor.requests) == 1


def test_reviewer_crash_is_fatal() -> None:
    store = _store()
    workspace = FakeWorkspace()
    editor = FakeEditor(workspace, store)

    class CrashingReviewer:
        def run(self, request: AgentRequest) -> AgentRunResult:
            raise AgentError("reviewer timed out")

    result = _controller(
        store, editor, CrashingReviewer(), workspace, max_iterations=3
    ).run()

    assert result.final_status is FinalStatus.ERROR
    assert store.read(StateKey.FINAL_STATUS) is FinalStatus.ERROR


def test_missing_verdict_becomes_revise() -> None:
    store = _store()
    workspace = FakeWorkspace()
    editor = FakeEditor(workspace, store)
    reviewer = FakeReviewer(store, [None, "ship"])

    result = _controller(store, editor, reviewer, workspace, max_iterations=2).run()

    assert result.final_status is FinalStatus.SHIPPED
    assert result.iteration == 2
    assert editor.requests[1].feedback == MISSING_VERDICT_FEEDBACK


def test_resume_continues_from_persisted_iteration() -> None:
    store = _store()
    store.write(StateKey.ITERATION, 1)
    store.write(StateKey.REVIEW_FEEDBACK, "handle empty input")
    workspace = FakeWorkspace()
    editor = FakeEditor(workspace, store)
    reviewer = FakeReviewer(store, ["REVISE"])

    result = _controller(store, editor, reviewer, workspace, max_iterations=2).run()

    assert result.final_status is FinalStatus.MAX_ITERATIONS
    assert [r.iteration for r in editor.requests] == [2]
    assert editor.requests[0].feedback == "handle empty input"


def test_iteration_beyond_limit_is_clamped() -> None:
    store = _store()
    store.write(StateKey.ITERATION, 7)
    workspace = FakeWorkspace()
    editor = FakeEditor(workspace, store)

    result = _controller(
        store, editor, FakeReviewer(store, []), workspace, max_iterations=5
    ).run()

    assert result.final_status is FinalStatus.MAX_ITERATIONS
    assert result.iteration == 5
    assert store.read(StateKey.ITERATION) == 5
    assert editor.requests == []


def test_finished_run_is_not_restarted() -> None:
    store = _store()
    store.write(StateKey.ITERATION, 1)
    store.write(StateKey.FINAL_STATUS, FinalStatus.SHIPPED)
    workspace = FakeWorkspace()
    editor = FakeEditor(workspace, store)

    result = _controller(
        store, editor, FakeReviewer(store, []), workspace, max_iterations=5
    ).run()

    assert result.final_status is FinalStatus.SHIPPED
    assert editor.requests == []


def test_stop_is_honored_between_iterations() -> None:
    store = _store()
    workspace = FakeWorkspace()
    stop = threading.Event()
    editor = FakeEditor(workspace, store)
    reviewer = FakeReviewer(store, ["REVISE", "REVISE"])
    original_run = editor.run

    def run_then_stop(request: AgentRequest) -> AgentRunResult:
        stop.set()
        return original_run(request)

    editor.run = run_then_stop  # type: ignore[method-assign]

    result = _controller(
        store, editor, reviewer, workspace, max_iterations=3, stop_event=stop
    ).run()

    assert result.final_status is FinalStatus.ERROR
    assert result.iteration == 1
    assert len(reviewer.requests) == 1
    assert store.read(StateKey.REVIEW_FEEDBACK) == "please add tests"


def test_missing_task_is_an_error() -> None:
    store = StateStore(MemoryStateBackend())
    workspace = FakeWorkspace()
    result = _controller(
        store,
        FakeEditor(workspace, store),
        FakeReviewer(store, []),
        workspace,
        max_iterations=2,
    ).run()
    assert result.final_status is FinalStatus.ERROR


def test_commit_message_prefers_conventional_summary() -> None:
    assert commit_message("feat(api): add retries\n\ndetails", 3) == (
        "feat(api): add retries"
    )
    assert commit_message("fix!: drop legacy flag", 1) == "fix!: drop legacy flag"
    assert commit_message("Added retries", 2) == (
        "chore(ralph): apply changes from iteration 2"
    )
    assert commit_message("", 4) == "chore(ralph): apply changes from iteration 4"


def test_work_commit_uses_summary_header() -> None:
    store = _store()
    workspace = FakeWorkspace()
    editor = FakeEditor(workspace, store, summary="feat: add retry loop\n\nMore text")
    reviewer = FakeReviewer(store, ["SHIP"])

    _controller(store, editor, reviewer, workspace, max_iterations=2).run()

    assert workspace.commits == ["feat: add retry loop"]
