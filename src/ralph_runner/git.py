from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Iterable, Optional, Sequence

from .utils import tail_lines

_logger = logging.getLogger(__name__)


class GitError(Exception):
    def __init__(self, message: str, *, detail: str = "") -> None:
        super().__init__(message)
        self.detail = detail


class MergeConflictError(GitError):
    def __init__(self, message: str, *, files: Sequence[str]) -> None:
        super().__init__(message, detail="\n".join(files))
        self.files = list(files)


def run_git(
    args: Sequence[str],
    *,
    cwd: Path,
    timeout_seconds: int = 120,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    cmd = ["git", *args]
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd),
            text=True,
            capture_output=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as exc:
        raise GitError("Missing binary: git") from exc
    except subprocess.TimeoutExpired as exc:
        raise GitError(f"Command timed out: {' '.join(cmd)}") from exc

    if check and proc.returncode != 0:
        detail = tail_lines(proc.stderr or "") or tail_lines(proc.stdout or "")
        raise GitError(
            f"Command failed: {' '.join(cmd)}: {detail or f'exit {proc.returncode}'}",
            detail=detail,
        )
    return proc


def _lines(text: Optional[str]) -> list[str]:
    return [line.strip() for line in (text or "").splitlines() if line.strip()]


class GitRepo:
    """Thin wrapper over the git CLI for one working tree."""

    def __init__(self, root: Path, *, remote: str = "origin") -> None:
        self.root = root
        self.remote = remote

    def run(
        self, *args: str, check: bool = True, timeout_seconds: int = 120
    ) -> subprocess.CompletedProcess[str]:
        return run_git(
            list(args), cwd=self.root, check=check, timeout_seconds=timeout_seconds
        )

    # ── refs ───────────────────────────────────────────────────────────────────
    def head(self) -> str:
        return (self.run("rev-parse", "HEAD").stdout or "").strip()

    def rev_parse(self, ref: str) -> Optional[str]:
        proc = self.run("rev-parse", "--verify", "--quiet", ref, check=False)
        if proc.returncode != 0:
            return None
        return (proc.stdout or "").strip() or None

    def current_branch(self) -> str:
        proc = self.run("rev-parse", "--abbrev-ref", "HEAD")
        return (proc.stdout or "").strip() or "HEAD"

    def remote_ref(self, branch: str) -> str:
        return f"{self.remote}/{branch}"

    def fetch(self, *refs: str) -> bool:
        proc = self.run("fetch", self.remote, *refs, check=False, timeout_seconds=300)
        if proc.returncode != 0:
            _logger.warning(
                "git fetch %s failed: %s", self.remote, tail_lines(proc.stderr or "")
            )
        return proc.returncode == 0

    def remote_branch_exists(self, branch: str) -> bool:
        proc = self.run("ls-remote", "--heads", self.remote, branch, check=False)
        return proc.returncode == 0 and bool((proc.stdout or "").strip())

    # ── working tree ───────────────────────────────────────────────────────────
    def configure_identity(self, name: str, email: str) -> None:
        self.run("config", "user.name", name)
        self.run("config", "user.email", email)

    def exclude_path(self, relpath: str) -> None:
        """Keep `relpath` out of `git add` for this clone only."""
        proc = self.run("rev-parse", "--git-path", "info/exclude")
        exclude = self.root / (proc.stdout or "").strip()
        entry = "/" + relpath.strip("/") + "/"
        existing = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        if entry in existing.splitlines():
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with exclude.open("a", encoding="utf-8") as f:
            f.write(f"{prefix}{entry}\n")

    def checkout_branch(self, branch: str, start_point: Optional[str] = None) -> None:
        args = ["checkout", "-B", branch]
        if start_point:
            args.append(start_point)
        self.run(*args)

    def prepare_branch(self, branch: str, base: str) -> str:
        """Check out the working branch for a run.

        Returns "created" (new branch from base), "reused" (remote branch with
        base merged in) or "reset" (remote branch conflicted with base and was
        reset onto it).
        """
        self.fetch()
        base_ref = self.remote_ref(base)
        if not self.remote_branch_exists(branch):
            self.checkout_branch(branch, base_ref)
            return "created"
        self.checkout_branch(branch, self.remote_ref(branch))
        try:
            self.merge(base_ref)
        except MergeConflictError as exc:
            _logger.warning(
                "Merging %s into %s conflicted (%s); resetting onto base",
                base_ref,
                branch,
                ", ".join(exc.files) or "unknown files",
            )
            self.reset_hard(base_ref)
            return "reset"
        return "reused"

    def stage_all(self, *, exclude: Iterable[str] = ()) -> None:
        # `git add` fails on pathspecs that name ignored paths; unstage instead.
        self.run("add", "-A")
        for path in exclude:
            self.run("reset", "-q", "--", path, check=False)

    def has_staged_changes(self) -> bool:
        proc = self.run("diff", "--cached", "--quiet", check=False)
        return proc.returncode != 0

    def commit(self, message: str) -> str:
        self.run("commit", "-m", message)
        return self.head()

    def commit_all(self, message: str, *, exclude: Iterable[str] = ()) -> Optional[str]:
        """Stage everything except `exclude` and commit; None if nothing changed."""
        self.stage_all(exclude=exclude)
        if not self.has_staged_changes():
            return None
        return self.commit(message)

    # ── diffs ──────────────────────────────────────────────────────────────────
    def diff_names(self, base: str, paths: Sequence[str] = ()) -> list[str]:
        args = ["diff", "--name-only", base]
        if paths:
            args += ["--", *paths]
        return _lines(self.run(*args).stdout)

    def diff_patch(self, base: str, paths: Sequence[str] = ()) -> str:
        args = ["diff", base]
        if paths:
            args += ["--", *paths]
        return self.run(*args).stdout or ""

    def exists_at(self, ref: str, path: str) -> bool:
        proc = self.run("cat-file", "-e", f"{ref}:{path}", check=False)
        return proc.returncode == 0

    def restore_from(self, ref: str, path: str) -> None:
        self.run("checkout", ref, "--", path)

    def remove(self, path: str) -> None:
        proc = self.run("rm", "-f", "--", path, check=False)
        if proc.returncode != 0:
            (self.root / path).unlink(missing_ok=True)
            self.run("add", "-A", "--", path, check=False)

    # ── publishing ─────────────────────────────────────────────────────────────
    def push(self, branch: str, *, force_with_lease: bool = False) -> tuple[bool, str]:
        args = ["push"]
        if force_with_lease:
            args.append("--force-with-lease")
        args += [self.remote, f"HEAD:refs/heads/{branch}"]
        proc = self.run(*args, check=False, timeout_seconds=300)
        detail = tail_lines(proc.stderr or "") or tail_lines(proc.stdout or "")
        return proc.returncode == 0, detail

    def merge(self, ref: str) -> None:
        proc = self.run("merge", "--no-edit", ref, check=False)
        if proc.returncode != 0:
            files = self.conflicted_files()
            self.run("merge", "--abort", check=False)
            raise MergeConflictError(f"Merge of {ref} failed", files=files)

    def conflicted_files(self) -> list[str]:
        proc = self.run("diff", "--name-only", "--diff-filter=U", check=False)
        return _lines(proc.stdout)

    def reset_hard(self, ref: str) -> None:
        self.run("reset", "--hard", ref)

    def squash_merge(self, branch: str, base: str, message: str) -> str:
        """Squash `branch` onto the remote `base`, push it, and return the commit.

        The working tree is left on `branch` whether or not this succeeds.
        """
        self.fetch(base)
        try:
            self.checkout_branch(base, self.remote_ref(base))
            proc = self.run("merge", "--squash", branch, check=False)
            if proc.returncode != 0:
                raise MergeConflictError(
                    f"Squash merge of {branch} onto {base} conflicted",
                    files=self.conflicted_files(),
                )
            if not self.has_staged_changes():
                raise GitError(f"Nothing to squash from {branch} onto {base}")
            sha = self.commit(message)
            ok, detail = self.push(base)
            if not ok:
                raise GitError(f"Push of {base} rejected", detail=detail)
            return sha
        except GitError:
            self.run("reset", "--hard", self.remote_ref(base), check=False)
            raise
        finally:
            self.run("checkout", branch, check=False)
