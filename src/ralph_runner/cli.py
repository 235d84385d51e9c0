import functools
import json
import logging
import os
import signal
import threading
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from pydantic import ValidationError

from .agents import REVIEWER, WORKER, CommandAgent
from .config import ConfigError, RalphConfig, load_config
from .git import GitError, GitRepo
from .github import GitHubError, GitHubService
from .locks import LoopLock, LoopLockBusy
from .logging_utils import log_event, setup_rotating_logger
from .loop import LoopController, LoopResult
from .merge import MergeResolver
from .models import (
    EventInfo,
    FinalStatus,
    IssueEvent,
    MergeStrategy,
    RunContext,
    Task,
)
from .publish import WORKFLOW_PATCH_MARKER, PushFallback, format_patch_comment
from .report import STATUS_MARKER, format_status_comment, write_action_outputs
from .state import StateKey, StateStore
from .utils import read_json

app = typer.Typer(add_completion=False)


def _fail(message: str, code: int = 1) -> typer.Exit:
    typer.echo(message, err=True)
    return typer.Exit(code=code)


def _require_config(repo: Optional[Path]) -> RalphConfig:
    try:
        return load_config(repo or Path.cwd())
    except ConfigError as exc:
        raise _fail(str(exc))


def _logger_for(config: RalphConfig) -> logging.Logger:
    return setup_rotating_logger(f"ralph_runner[{config.root}]", config.log)


def _state_dir_name(config: RalphConfig) -> str:
    try:
        return config.state_dir.relative_to(config.root).as_posix()
    except ValueError:
        return config.state_dir.name


def _github(config: RalphConfig) -> GitHubService:
    return GitHubService(config.root, repo=config.github_repo, gh_path=config.gh_path)


def _resolve_base(config: RalphConfig, github: GitHubService, base: Optional[str]) -> str:
    if base:
        return base
    if config.base_branch:
        return config.base_branch
    try:
        return github.default_branch()
    except GitHubError as exc:
        typer.echo(f"Unable to read default branch ({exc}); using main", err=True)
        return "main"


def _issue_discussion(
    github: GitHubService, number: int, logger: logging.Logger
) -> Optional[str]:
    try:
        comments = github.issue_comments(number=number)
    except GitHubError as exc:
        log_event(logger, logging.WARNING, "task.comments.failed", issue=number, exc=exc)
        return None
    bodies = []
    for comment in comments:
        body = str(comment.get("body") or "").strip()
        if not body or "<!-- ralph-comment-" in body:
            continue
        bodies.append(body)
    return "\n\n---\n\n".join(bodies) or None


def _load_task(
    event_path: Optional[Path],
    issue: Optional[int],
    title: Optional[str],
    body: Optional[str],
) -> tuple[Task, Optional[int], EventInfo]:
    if event_path is not None:
        try:
            payload = read_json(event_path)
            event = IssueEvent.model_validate(payload or {})
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise _fail(f"Unable to read issue event {event_path}: {exc}")
        return (
            Task(title=event.issue.title, description=event.issue.body or ""),
            event.issue.number,
            event.info(),
        )
    if not title:
        raise _fail("No task: pass --title (and --issue) or provide GITHUB_EVENT_PATH")
    return Task(title=title, description=body or ""), issue, EventInfo()


@contextmanager
def _stop_on_signals(stop: threading.Event) -> Iterator[None]:
    """Set `stop` on SIGINT/SIGTERM; the loop honors it between iterations."""

    def _handler(signum, _frame) -> None:
        typer.echo(
            f"Received signal {signum}; stopping after the current iteration", err=True
        )
        stop.set()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, _handler)
        except ValueError:
            # Not on the main thread.
            continue
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _init_state(
    store: StateStore,
    task: Task,
    issue: Optional[int],
    context: RunContext,
    event: EventInfo,
    *,
    keep_progress: bool,
) -> None:
    """Write the task for a run.

    With `keep_progress` the iteration count and review feedback of the
    previous run on the same task survive; everything else starts over.
    """
    kept = {StateKey.ITERATION, StateKey.REVIEW_FEEDBACK} if keep_progress else set()
    if keep_progress and context.pr_number is None:
        context = context.model_copy(
            update={"pr_number": store.read(StateKey.RUN_CONTEXT).pr_number}
        )
    for key in StateKey:
        if key not in kept:
            store.clear(key)
    store.write(StateKey.TASK, task)
    store.write(StateKey.ISSUE_NUMBER, issue)
    store.write(StateKey.RUN_CONTEXT, context)
    store.write(StateKey.EVENT_INFO, event)
    if not keep_progress:
        store.write(StateKey.ITERATION, 0)


def _acknowledge(
    github: GitHubService, store: StateStore, logger: logging.Logger
) -> None:
    """React +1 to whatever triggered a fresh run."""
    issue = store.read(StateKey.ISSUE_NUMBER)
    if issue is None or store.read(StateKey.ITERATION) > 0:
        return
    if not github.gh_available():
        log_event(logger, logging.INFO, "run.reaction.skipped", reason="gh unavailable")
        return
    event = store.read(StateKey.EVENT_INFO)
    try:
        github.add_reaction(number=issue, comment_id=event.comment_id)
    except GitHubError as exc:
        log_event(logger, logging.WARNING, "run.reaction.failed", issue=issue, exc=exc)
        return
    log_event(
        logger,
        logging.INFO,
        "run.reaction",
        issue=issue,
        comment_id=event.comment_id,
    )


def _surface_partial_work(
    resolver: MergeResolver, logger: logging.Logger
) -> Optional[str]:
    record = resolver.review_request()
    if record.fallback_reason:
        log_event(logger, logging.WARNING, "run.partial_pr.failed", detail=record.fallback_reason)
    return record.pr_url


def _post_status(
    github: GitHubService,
    issue: Optional[int],
    body: str,
    logger: logging.Logger,
) -> None:
    if issue is None:
        return
    if not github.gh_available():
        log_event(logger, logging.INFO, "run.status_comment.skipped", reason="gh unavailable")
        return
    try:
        action = github.upsert_comment(number=issue, body=body, marker=STATUS_MARKER)
    except GitHubError as exc:
        log_event(logger, logging.WARNING, "run.status_comment.failed", issue=issue, exc=exc)
        return
    log_event(logger, logging.INFO, "run.status_comment", issue=issue, action=action)


@app.command()
def run(
    repo: Optional[Path] = typer.Option(None, "--repo", help="Repo path"),
    issue: Optional[int] = typer.Option(None, "--issue", help="Issue number"),
    title: Optional[str] = typer.Option(None, "--title", help="Task title"),
    body: Optional[str] = typer.Option(None, "--body", help="Task description"),
    event: Optional[Path] = typer.Option(
        None,
        "--event",
        envvar="GITHUB_EVENT_PATH",
        help="GitHub issue event payload (JSON)",
    ),
    base: Optional[str] = typer.Option(None, "--base", help="Base branch"),
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", min=1, help="Override loop.max_iterations"
    ),
    merge_strategy: Optional[str] = typer.Option(
        None, "--merge-strategy", help="pr or squash-merge"
    ),
    resume: bool = typer.Option(
        False,
        "--resume",
        help="Continue the persisted task, even one that already finished",
    ),
):
    """Run the worker/reviewer loop for one task and publish the result."""
    config = _require_config(repo)
    logger = _logger_for(config)
    limit = max_iterations or config.max_iterations
    strategy = MergeStrategy.parse(merge_strategy or config.merge_strategy)
    github = _github(config)
    git = GitRepo(config.root, remote=config.git_remote)
    state_dir_name = _state_dir_name(config)

    with ExitStack() as stack:
        try:
            stack.enter_context(LoopLock(config.state_dir / "loop.lock"))
        except LoopLockBusy as exc:
            raise _fail(str(exc))
        store = StateStore.at(config.state_dir)
        try:
            git.exclude_path(state_dir_name)
            if resume and event is None and not title:
                if not store.has(StateKey.TASK):
                    raise _fail("No persisted run to resume")
                issue_number = store.read(StateKey.ISSUE_NUMBER)
                context = store.read(StateKey.RUN_CONTEXT)
                base_branch = base or context.default_branch or _resolve_base(
                    config, github, None
                )
                branch = context.branch or git.current_branch()
                store.clear(StateKey.FINAL_STATUS)
            else:
                task, issue_number, event_info = _load_task(event, issue, title, body)
                if issue_number is not None and event is not None:
                    discussion = _issue_discussion(github, issue_number, logger)
                    if discussion:
                        task = task.model_copy(update={"discussion": discussion})
                base_branch = _resolve_base(config, github, base)
                branch = (
                    config.branch_for_issue(issue_number)
                    if issue_number is not None
                    else git.current_branch()
                )
                same_task = store.has(StateKey.TASK) and (
                    resume
                    or (
                        issue_number is not None
                        and store.read(StateKey.ISSUE_NUMBER) == issue_number
                    )
                )
                _init_state(
                    store,
                    task,
                    issue_number,
                    RunContext(
                        repo=config.github_repo,
                        branch=branch,
                        issue_title=task.title,
                        merge_strategy=strategy,
                        default_branch=base_branch,
                    ),
                    event_info,
                    keep_progress=same_task,
                )
                if same_task:
                    log_event(
                        logger,
                        logging.INFO,
                        "run.resumed",
                        iteration=store.read(StateKey.ITERATION),
                    )
            git.configure_identity(config.git_user_name, config.git_user_email)
            on_branch = resume and git.current_branch() == branch
            if issue_number is not None and not on_branch:
                action = git.prepare_branch(branch, base_branch)
                log_event(logger, logging.INFO, "run.branch", branch=branch, action=action)
        except GitError as exc:
            log_event(logger, logging.ERROR, "run.setup.failed", exc=exc)
            raise _fail(f"Git setup failed: {exc}")

        typer.echo(f"Running {branch} against {base_branch} (max {limit} iterations)")
        _acknowledge(github, store, logger)
        # The working branch may have been reset onto base, so it need not
        # descend from its remote counterpart.
        fallback = PushFallback(
            git,
            comments=github,
            store=store,
            protected_paths=config.protected_paths,
            force_with_lease=True,
            logger=logger,
        )
        resolver = MergeResolver(
            github, git, store, branch=branch, base=base_branch, logger=logger
        )
        stop = threading.Event()
        controller = LoopController(
            store=store,
            editor=CommandAgent(
                WORKER,
                config.worker,
                workspace=config.root,
                state_dir=state_dir_name,
                logger=logger,
            ),
            reviewer=CommandAgent(
                REVIEWER,
                config.reviewer,
                workspace=config.root,
                state_dir=state_dir_name,
                logger=logger,
            ),
            workspace=git,
            publish=functools.partial(fallback.publish, branch, base_branch, issue_number),
            resolve=functools.partial(resolver.resolve, strategy),
            max_iterations=limit,
            state_dir_name=state_dir_name,
            stop_event=stop,
            logger=logger,
        )
        with _stop_on_signals(stop):
            result = controller.run()

        pr_url = store.read(StateKey.PR_URL) or None
        if result.final_status != FinalStatus.SHIPPED:
            outcome = fallback.publish(branch, base_branch, issue_number)
            if outcome.ok:
                pr_url = _surface_partial_work(resolver, logger)
        _finish_run(
            config, github, store, result, branch=branch, pr_url=pr_url, limit=limit
        )
    raise typer.Exit(code=result.exit_code)


def _finish_run(
    config: RalphConfig,
    github: GitHubService,
    store: StateStore,
    result: LoopResult,
    *,
    branch: str,
    pr_url: Optional[str],
    limit: int,
) -> None:
    logger = _logger_for(config)
    merge_commit = store.read(StateKey.MERGE_COMMIT) or None
    _post_status(
        github,
        store.read(StateKey.ISSUE_NUMBER),
        format_status_comment(
            result.final_status,
            iteration=result.iteration,
            max_iterations=limit,
            branch=branch,
            pr_url=pr_url,
            merge_commit=merge_commit,
            feedback=store.read(StateKey.REVIEW_FEEDBACK),
        ),
        logger,
    )
    output_path = os.environ.get("GITHUB_OUTPUT")
    if output_path:
        write_action_outputs(
            Path(output_path),
            {
                "pr_url": pr_url,
                "merge_commit": merge_commit,
                "iterations": result.iteration,
                "final_status": result.final_status.value,
            },
        )
    typer.echo(f"Final status: {result.final_status.value} after {result.iteration} iteration(s)")
    if pr_url:
        typer.echo(f"Pull request: {pr_url}")
    if merge_commit:
        typer.echo(f"Merge commit: {merge_commit}")


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", help="Repo path"),
    output_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
):
    """Show the persisted state of the current run."""
    config = _require_config(repo)
    if not config.state_dir.exists():
        raise _fail("No run state found")
    state = StateStore.at(config.state_dir).load()
    if output_json:
        typer.echo(json.dumps(state.model_dump(mode="json"), indent=2))
        return
    typer.echo(f"Task: {state.task.title if state.task else '-'}")
    typer.echo(f"Issue: {state.issue_number or '-'}")
    typer.echo(f"Iteration: {state.iteration}/{config.max_iterations}")
    typer.echo(f"Verdict: {state.verdict.value}")
    typer.echo(f"Final status: {state.final_status.value if state.final_status else '-'}")
    if state.push_error:
        typer.echo(f"Push error: {state.push_error.splitlines()[0]}")
    if state.pr_url:
        typer.echo(f"Pull request: {state.pr_url}")
    if state.merge_commit:
        typer.echo(f"Merge commit: {state.merge_commit}")


@app.command()
def publish(
    repo: Optional[Path] = typer.Option(None, "--repo", help="Repo path"),
    branch: Optional[str] = typer.Option(None, "--branch", help="Branch to push"),
    base: Optional[str] = typer.Option(None, "--base", help="Base branch"),
    issue: Optional[int] = typer.Option(
        None, "--issue", help="Issue that receives protected-path patches"
    ),
    force_with_lease: bool = typer.Option(
        False, "--force-with-lease", help="Overwrite the remote branch if it diverged"
    ),
):
    """Push a branch, stripping protected-path changes if the push is refused."""
    config = _require_config(repo)
    github = _github(config)
    git = GitRepo(config.root, remote=config.git_remote)
    store = StateStore.at(config.state_dir)
    try:
        target = branch or git.current_branch()
    except GitError as exc:
        raise _fail(str(exc))
    fallback = PushFallback(
        git,
        comments=github,
        store=store,
        protected_paths=config.protected_paths,
        force_with_lease=force_with_lease,
        logger=_logger_for(config),
    )
    if issue is None:
        issue = store.read(StateKey.ISSUE_NUMBER)
    outcome = fallback.publish(target, _resolve_base(config, github, base), issue)
    typer.echo(f"{outcome.result.value}: {target}")
    if outcome.stripped_paths:
        typer.echo("Stripped: " + ", ".join(outcome.stripped_paths))
    if not outcome.ok:
        raise _fail(outcome.detail or "push failed")


@app.command("workflow-patch")
def workflow_patch(
    base: Optional[str] = typer.Argument(None, help="Base branch to diff against"),
    repo: Optional[Path] = typer.Option(None, "--repo", help="Repo path"),
):
    """Print the patch comment for protected-path changes (exit 2 when none)."""
    config = _require_config(repo)
    git = GitRepo(config.root, remote=config.git_remote)
    base_branch = _resolve_base(config, _github(config), base)
    fallback = PushFallback(git, protected_paths=config.protected_paths)
    try:
        git.fetch(base_branch)
        base_ref = git.remote_ref(base_branch)
        files = fallback.protected_changes(base_ref)
        if not files:
            typer.echo("No protected-path changes", err=True)
            raise typer.Exit(code=2)
        patch = git.diff_patch(base_ref, config.protected_paths)
        branch = git.current_branch()
    except GitError as exc:
        raise _fail(str(exc))
    typer.echo(format_patch_comment(files, patch, branch=branch), nl=False)
    log_event(
        _logger_for(config),
        logging.INFO,
        "workflow_patch.printed",
        files=files,
        marker=WORKFLOW_PATCH_MARKER,
    )


@app.command("create-subtasks")
def create_subtasks(
    files: List[Path] = typer.Argument(..., help="One file per subtask"),
    repo: Optional[Path] = typer.Option(None, "--repo", help="Repo path"),
    label: Optional[str] = typer.Option(
        None, "--label", help="Label to apply (defaults to github.trigger_label)"
    ),
):
    """Create one issue per file: first line is the title, the rest the body."""
    config = _require_config(repo)
    github = _github(config)
    logger = _logger_for(config)
    created = 0
    for path in files:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise _fail(f"Unable to read {path}: {exc}")
        lines = text.strip().splitlines()
        if not lines:
            typer.echo(f"Skipping empty subtask file {path}", err=True)
            continue
        title = lines[0].lstrip("#").strip()
        body = "\n".join(lines[1:]).strip()
        try:
            url = github.create_issue(
                title=title, body=body, label=label or config.trigger_label
            )
        except GitHubError as exc:
            raise _fail(f"Failed to create issue for {path}: {exc}")
        log_event(logger, logging.INFO, "subtask.created", path=str(path), url=url)
        typer.echo(url)
        created += 1
    typer.echo(f"Created {created} issue(s)")


def main() -> None:
    app()
