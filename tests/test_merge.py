import subprocess
from pathlib import Path
from typing import Optional

import pytest
from conftest import git

from ralph_runner.git import GitRepo
from ralph_runner.github import GitHubError
from ralph_runner.merge import SQUASH_TRAILER, MergeResolver, squash_message
from ralph_runner.models import MergeStrategy, RunContext, Task, Verdict
from ralph_runner.state import MemoryStateBackend, StateKey, StateStore

BRANCH = "ralph/issue-7"


class FakeHost:
    def __init__(
        self, existing: Optional[dict] = None, fail_create: bool = False
    ) -> None:
        self.existing = existing
        self.fail_create = fail_create
        self.created: list[dict] = []
        self.edited: list[dict] = []
        self.closed: list[dict] = []

    def pr_for_branch(self, *, branch: str) -> Optional[dict]:
        return self.existing

    def create_pr(self, *, base: str, head: str, title: str, body: str) -> dict:
        if self.fail_create:
            raise GitHubError("gh pr create failed")
        self.created.append({"base": base, "head": head, "title": title, "body": body})
        return {"number": 12, "url": "https://github.com/org/repo/pull/12"}

    def edit_pr(self, *, number: int, title: str, body: Optional[str] = None) -> None:
        self.edited.append({"number": number, "title": title})

    def close_issue(self, *, number: int, comment: Optional[str] = None) -> None:
        self.closed.append({"number": number, "comment": comment})


class RaisingSquash:
    def squash_merge(self, branch: str, base: str, message: str) -> str:
        raise AssertionError("squash must not run for review requests")


def _store(title: str = "Add retries") -> StateStore:
    store = StateStore(MemoryStateBackend())
    store.write(StateKey.TASK, Task(title=title, description="body"))
    store.write(StateKey.ISSUE_NUMBER, 7)
    store.write(StateKey.ITERATION, 2)
    store.write(StateKey.RUN_CONTEXT, RunContext(branch=BRANCH))
    return store


def _resolver(host, squash, store) -> MergeResolver:
    return MergeResolver(host, squash, store, branch=BRANCH, base="main")


def test_review_request_is_opened() -> None:
    store = _store()
    host = FakeHost()

    record = _resolver(host, RaisingSquash(), store).resolve(
        MergeStrategy.REVIEW_REQUEST, Verdict.SHIP
    )

    assert record.strategy is MergeStrategy.REVIEW_REQUEST
    assert record.pr_url == "https://github.com/org/repo/pull/12"
    assert host.created[0]["title"] == "Add retries"
    assert "Closes #7" in host.created[0]["body"]
    assert store.read(StateKey.PR_URL) == record.pr_url
    assert store.read(StateKey.RUN_CONTEXT).pr_number == 12


def test_existing_review_request_is_retitled() -> None:
    store = _store()
    store.write(StateKey.PR_TITLE, "feat: add upload retries\nextra line")
    host = FakeHost(existing={"number": 3, "url": "https://github.com/org/repo/pull/3"})

    record = _resolver(host, RaisingSquash(), store).resolve("pr", Verdict.SHIP)

    assert host.created == []
    assert host.edited == [{"number": 3, "title": "feat: add upload retries"}]
    assert record.pr_url == "https://github.com/org/repo/pull/3"


@pytest.mark.parametrize(
    "strategy", ["rebase", "", None, "SQUASH", "Squash-Merge", "SQUASH-MERGE"]
)
def test_unknown_strategy_means_review_request(strategy) -> None:
    store = _store()
    host = FakeHost()

    record = _resolver(host, RaisingSquash(), store).resolve(strategy, Verdict.SHIP)

    assert record.strategy is MergeStrategy.REVIEW_REQUEST
    assert len(host.created) == 1


def test_resolver_requires_ship() -> None:
    with pytest.raises(ValueError):
        _resolver(FakeHost(), RaisingSquash(), _store()).resolve(
            MergeStrategy.REVIEW_REQUEST, Verdict.REVISE
        )


def test_review_request_failure_does_not_raise() -> None:
    store = _store()

    record = _resolver(FakeHost(fail_create=True), RaisingSquash(), store).resolve(
        MergeStrategy.REVIEW_REQUEST, Verdict.SHIP
    )

    assert record.pr_url is None
    assert "gh pr create failed" in (record.fallback_reason or "")
    assert not store.has(StateKey.PR_URL)


def test_squash_message_has_trailers() -> None:
    assert squash_message("feat: add retries ", 7) == (
        f"feat: add retries\n\nCloses #7\n{SQUASH_TRAILER}"
    )
    assert squash_message("fix: x", None) == f"fix: x\n\n{SQUASH_TRAILER}"


def _work_branch(clone: Path, files: dict) -> None:
    git(clone, "checkout", "-B", BRANCH, "origin/main")
    for rel, text in files.items():
        (clone / rel).write_text(text, encoding="utf-8")
    git(clone, "add", "-A")
    git(clone, "commit", "-m", "first")
    git(clone, "commit", "--allow-empty", "-m", "second")
    git(clone, "push", "origin", f"HEAD:refs/heads/{BRANCH}")


def test_direct_publish_squashes_onto_base(git_repo: Path, remote_repo: Path) -> None:
    _work_branch(git_repo, {"app.py": "print('hi')\n"})
    store = _store()
    store.write(StateKey.PR_TITLE, "feat: add app")
    host = FakeHost()

    record = _resolver(host, GitRepo(git_repo), store).resolve(
        MergeStrategy.DIRECT_PUBLISH, Verdict.SHIP
    )

    assert record.strategy is MergeStrategy.DIRECT_PUBLISH
    assert record.commit_sha
    remote_main = subprocess.run(
        ["git", "--git-dir", str(remote_repo), "log", "-1", "--format=%H%n%B", "main"],
        text=True,
        capture_output=True,
        check=True,
    ).stdout
    assert remote_main.startswith(record.commit_sha)
    assert "feat: add app" in remote_main
    assert "Closes #7" in remote_main
    assert SQUASH_TRAILER in remote_main
    assert store.read(StateKey.MERGE_COMMIT) == record.commit_sha
    assert not store.has(StateKey.PR_URL)
    assert host.closed and host.closed[0]["number"] == 7
    assert host.created == []
    assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD") == BRANCH


def test_direct_publish_conflict_falls_back_to_review_request(
    tmp_path: Path, git_repo: Path, remote_repo: Path
) -> None:
    _work_branch(git_repo, {"README.md": "from the branch\n"})
    other = tmp_path / "other"
    subprocess.run(
        ["git", "clone", str(remote_repo), str(other)], check=True, capture_output=True
    )
    git(other, "config", "user.email", "other@example.com")
    git(other, "config", "user.name", "Other")
    (other / "README.md").write_text("from main\n", encoding="utf-8")
    git(other, "commit", "-am", "conflicting change")
    git(other, "push", "origin", "main")
    main_before = git(other, "rev-parse", "HEAD")

    store = _store()
    host = FakeHost()
    record = _resolver(host, GitRepo(git_repo), store).resolve(
        "squash-merge", Verdict.SHIP
    )

    assert record.strategy is MergeStrategy.REVIEW_REQUEST
    assert record.commit_sha is None
    assert record.pr_url == "https://github.com/org/repo/pull/12"
    assert record.fallback_reason
    assert store.read(StateKey.PR_URL) == record.pr_url
    assert not store.has(StateKey.MERGE_COMMIT)
    assert host.closed == []
    remote_main = subprocess.run(
        ["git", "--git-dir", str(remote_repo), "rev-parse", "main"],
        text=True,
        capture_output=True,
        check=True,
    ).stdout.strip()
    assert remote_main == main_before
    assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD") == BRANCH
    assert (git_repo / "README.md").read_text() == "from the branch\n"
