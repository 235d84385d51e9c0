import json
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .utils import resolve_executable, sanitize_cmd, tail_lines


class GitHubError(Exception):
    def __init__(self, message: str, *, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def _run(
    args: list[str],
    *,
    cwd: Path,
    timeout_seconds: int = 30,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    try:
        proc = subprocess.run(
            args,
            cwd=str(cwd),
            text=True,
            capture_output=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as exc:
        raise GitHubError(f"Missing binary: {args[0]}", status_code=500) from exc
    except subprocess.TimeoutExpired as exc:
        raise GitHubError(
            f"Command timed out: {sanitize_cmd(args)}", status_code=504
        ) from exc

    if check and proc.returncode != 0:
        detail = tail_lines(proc.stderr or "") or tail_lines(proc.stdout or "")
        raise GitHubError(
            f"Command failed: {sanitize_cmd(args[:4])}: {detail or f'exit {proc.returncode}'}",
            status_code=400,
        )
    return proc


def _parse_json(text: Optional[str], *, what: str) -> Any:
    try:
        return json.loads(text or "null")
    except json.JSONDecodeError as exc:
        raise GitHubError(f"Unable to parse {what} output", status_code=500) from exc


PR_URL_RE = re.compile(r"/pull/(?P<num>\d+)")


@dataclass
class RepoInfo:
    name_with_owner: str
    url: str
    default_branch: Optional[str] = None


def _parse_repo_info(payload: dict) -> RepoInfo:
    name = payload.get("nameWithOwner") or ""
    url = payload.get("url") or ""
    default_ref = payload.get("defaultBranchRef") or {}
    default_branch = default_ref.get("name") if isinstance(default_ref, dict) else None
    if not name or not url:
        raise GitHubError("Unable to determine GitHub repo (missing nameWithOwner/url)")
    return RepoInfo(
        name_with_owner=str(name), url=str(url), default_branch=default_branch
    )


class GitHubService:
    """Issue/PR operations through the `gh` CLI."""

    def __init__(
        self,
        repo_root: Path,
        *,
        repo: Optional[str] = None,
        gh_path: str = "gh",
    ) -> None:
        self.repo_root = repo_root
        self.gh_path = gh_path
        self._repo = repo
        self._repo_info: Optional[RepoInfo] = None

    def _gh(
        self, *args: str, check: bool = True, timeout_seconds: int = 30
    ) -> subprocess.CompletedProcess[str]:
        return _run(
            [self.gh_path, *args],
            cwd=self.repo_root,
            check=check,
            timeout_seconds=timeout_seconds,
        )

    # ── capability/status ──────────────────────────────────────────────────────
    def gh_available(self) -> bool:
        return resolve_executable(self.gh_path) is not None

    def repo_info(self) -> RepoInfo:
        if self._repo_info is None:
            args = ["repo", "view"]
            if self._repo:
                args.append(self._repo)
            proc = self._gh(
                *args, "--json", "nameWithOwner,url,defaultBranchRef", timeout_seconds=15
            )
            payload = _parse_json(proc.stdout, what="gh repo view")
            self._repo_info = _parse_repo_info(payload if isinstance(payload, dict) else {})
        return self._repo_info

    @property
    def repo(self) -> str:
        return self._repo or self.repo_info().name_with_owner

    def default_branch(self) -> str:
        return self.repo_info().default_branch or "main"

    # ── review requests ────────────────────────────────────────────────────────
    def pr_for_branch(self, *, branch: str) -> Optional[dict]:
        proc = self._gh(
            "pr",
            "list",
            "--repo",
            self.repo,
            "--head",
            branch,
            "--state",
            "open",
            "--limit",
            "1",
            "--json",
            "number,url,state,title,headRefName,baseRefName",
            check=False,
            timeout_seconds=15,
        )
        if proc.returncode != 0:
            return None
        try:
            arr = json.loads(proc.stdout or "[]") or []
        except json.JSONDecodeError:
            return None
        return arr[0] if arr else None

    def create_pr(self, *, base: str, head: str, title: str, body: str) -> dict:
        proc = self._gh(
            "pr",
            "create",
            "--repo",
            self.repo,
            "--base",
            base,
            "--head",
            head,
            "--title",
            title,
            "--body",
            body,
            timeout_seconds=60,
        )
        # gh pr create prints the URL as its last stdout line
        lines = (proc.stdout or "").strip().splitlines()
        url = lines[-1].strip() if lines else ""
        match = PR_URL_RE.search(url)
        return {
            "url": url,
            "number": int(match.group("num")) if match else None,
            "state": "OPEN",
            "headRefName": head,
            "baseRefName": base,
        }

    def edit_pr(self, *, number: int, title: str, body: Optional[str] = None) -> None:
        args = ["pr", "edit", str(number), "--repo", self.repo, "--title", title]
        if body is not None:
            args += ["--body", body]
        self._gh(*args, timeout_seconds=30)

    # ── issues & comments ──────────────────────────────────────────────────────
    def issue_comments(self, *, number: int) -> list[dict]:
        proc = self._gh(
            "api",
            "--paginate",
            f"repos/{self.repo}/issues/{number}/comments",
            "--jq",
            ".[] | {id: .id, body: .body}",
            timeout_seconds=30,
        )
        # One compact JSON object per line, across all pages.
        comments: list[dict] = []
        for line in (proc.stdout or "").splitlines():
            if not line.strip():
                continue
            item = _parse_json(line, what="gh api comments")
            if isinstance(item, dict):
                comments.append(item)
        return comments

    def create_issue_comment(self, *, number: int, body: str) -> None:
        self._gh(
            "api",
            "-X",
            "POST",
            f"repos/{self.repo}/issues/{number}/comments",
            "-f",
            f"body={body}",
            timeout_seconds=30,
        )

    def update_issue_comment(self, *, comment_id: int, body: str) -> None:
        self._gh(
            "api",
            "-X",
            "PATCH",
            f"repos/{self.repo}/issues/comments/{comment_id}",
            "-f",
            f"body={body}",
            timeout_seconds=30,
        )

    def upsert_comment(self, *, number: int, body: str, marker: str) -> str:
        """Create or update the single comment carrying `marker`.

        Returns "updated" or "created".
        """
        existing = [
            c
            for c in self.issue_comments(number=number)
            if marker in str(c.get("body") or "")
        ]
        if existing and existing[-1].get("id") is not None:
            self.update_issue_comment(comment_id=int(existing[-1]["id"]), body=body)
            return "updated"
        self.create_issue_comment(number=number, body=body)
        return "created"

    def add_reaction(
        self,
        *,
        number: int,
        comment_id: Optional[int] = None,
        content: str = "+1",
    ) -> None:
        """React to the triggering comment, or to the issue itself."""
        if comment_id is not None:
            path = f"repos/{self.repo}/issues/comments/{comment_id}/reactions"
        else:
            path = f"repos/{self.repo}/issues/{number}/reactions"
        self._gh(
            "api",
            "-X",
            "POST",
            path,
            "-f",
            f"content={content}",
            timeout_seconds=30,
        )

    def close_issue(self, *, number: int, comment: Optional[str] = None) -> None:
        args = ["issue", "close", str(number), "--repo", self.repo]
        if comment:
            args += ["--comment", comment]
        self._gh(*args, timeout_seconds=30)

    def create_issue(self, *, title: str, body: str, label: Optional[str] = None) -> str:
        args = ["issue", "create", "--repo", self.repo, "--title", title, "--body", body]
        if label:
            args += ["--label", label]
        proc = self._gh(*args, timeout_seconds=30)
        lines = (proc.stdout or "").strip().splitlines()
        return lines[-1].strip() if lines else ""
