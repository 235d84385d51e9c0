"""Test harness configuration.

This repo uses a `src/` layout. In some developer environments an older
installed `ralph_runner` package can shadow the local sources.

Ensure tests always import the in-repo code.
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


def git(cwd: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args], cwd=str(cwd), text=True, capture_output=True, check=True
    )
    return proc.stdout.strip()


@pytest.fixture()
def remote_repo(tmp_path: Path) -> Path:
    """A bare repository with one commit on `main`."""
    remote = tmp_path / "remote.git"
    subprocess.run(
        ["git", "init", "--bare", "-b", "main", str(remote)],
        check=True,
        capture_output=True,
    )
    seed = tmp_path / "seed"
    subprocess.run(
        ["git", "clone", str(remote), str(seed)], check=True, capture_output=True
    )
    git(seed, "config", "user.email", "test@example.com")
    git(seed, "config", "user.name", "Test")
    git(seed, "checkout", "-B", "main")
    (seed / "README.md").write_text("hello\n", encoding="utf-8")
    workflows = seed / ".github" / "workflows"
    workflows.mkdir(parents=True)
    (workflows / "ci.yml").write_text("name: ci\n", encoding="utf-8")
    git(seed, "add", "-A")
    git(seed, "commit", "-m", "initial")
    git(seed, "push", "origin", "main")
    return remote


@pytest.fixture()
def git_repo(tmp_path: Path, remote_repo: Path) -> Path:
    """A clone of `remote_repo` with a committer identity configured."""
    clone = tmp_path / "work"
    subprocess.run(
        ["git", "clone", str(remote_repo), str(clone)],
        check=True,
        capture_output=True,
    )
    git(clone, "config", "user.email", "test@example.com")
    git(clone, "config", "user.name", "Test")
    return clone


def install_pre_receive(remote: Path, *, forbidden: str) -> None:
    """Reject any pushed commit range that touches `forbidden`."""
    hook = remote / "hooks" / "pre-receive"
    hook.write_text(
        "#!/bin/sh\n"
        "while read old new ref; do\n"
        '  base=$(git merge-base main "$new")\n'
        f'  if git diff --name-only "$base" "$new" -- "{forbidden}" | grep -q .; then\n'
        f'    echo "refusing to allow changes to {forbidden}" >&2\n'
        "    exit 1\n"
        "  fi\n"
        "done\n"
        "exit 0\n",
        encoding="utf-8",
    )
    hook.chmod(0o755)
