import dataclasses
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .utils import RepoNotFoundError, find_repo_root

CONFIG_FILENAME = "ralph.yml"
CONFIG_VERSION = 1

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": CONFIG_VERSION,
    "loop": {
        "max_iterations": 5,
    },
    "state": {
        "dir": ".ralph",
    },
    "git": {
        "remote": "origin",
        "base_branch": None,
        "branch_template": "ralph/issue-{issue}",
        "user_name": "claude-ralph[bot]",
        "user_email": "claude-ralph[bot]@users.noreply.github.com",
        # Prefixes the hosting platform refuses to accept from the bot identity.
        "protected_paths": [".github/workflows"],
    },
    "merge": {
        "strategy": "pr",  # pr|squash-merge
    },
    "github": {
        "gh_path": "gh",
        "repo": None,
        "trigger_label": "ralph",
    },
    "agents": {
        "worker": {
            "command": ["claude", "-p"],
            "model": "sonnet",
            "max_turns": 30,
            "allowed_tools": "Bash,Read,Write,Edit,Glob,Grep,Task,WebFetch,WebSearch",
            "timeout_seconds": 3600,
        },
        "reviewer": {
            "command": ["claude", "-p"],
            "model": "sonnet",
            "max_turns": 10,
            "allowed_tools": "Read,Glob,Grep,Write",
            "timeout_seconds": 1800,
        },
    },
    "log": {
        "path": ".ralph/logs/ralph-runner.log",
        "max_bytes": 10_000_000,
        "backup_count": 3,
    },
}

# Environment inputs (GitHub Action style) mapped onto config keys.
ENV_OVERRIDES: Dict[str, tuple[str, ...]] = {
    "INPUT_MAX_ITERATIONS": ("loop", "max_iterations"),
    "INPUT_BASE_BRANCH": ("git", "base_branch"),
    "INPUT_MERGE_STRATEGY": ("merge", "strategy"),
    "INPUT_TRIGGER_LABEL": ("github", "trigger_label"),
    "INPUT_WORKER_MODEL": ("agents", "worker", "model"),
    "INPUT_REVIEWER_MODEL": ("agents", "reviewer", "model"),
    "INPUT_MAX_TURNS_WORKER": ("agents", "worker", "max_turns"),
    "INPUT_MAX_TURNS_REVIEWER": ("agents", "reviewer", "max_turns"),
    "INPUT_WORKER_ALLOWED_TOOLS": ("agents", "worker", "allowed_tools"),
    "INPUT_REVIEWER_TOOLS": ("agents", "reviewer", "allowed_tools"),
    "GITHUB_REPOSITORY": ("github", "repo"),
}
_INT_KEYS = {
    ("loop", "max_iterations"),
    ("agents", "worker", "max_turns"),
    ("agents", "reviewer", "max_turns"),
}


class ConfigError(Exception):
    """Raised when configuration is invalid."""


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclasses.dataclass
class AgentConfig:
    command: List[str]
    model: Optional[str]
    max_turns: Optional[int]
    allowed_tools: Optional[str]
    timeout_seconds: int


@dataclasses.dataclass
class RalphConfig:
    raw: Dict[str, Any]
    root: Path
    version: int
    max_iterations: int
    state_dir: Path
    git_remote: str
    base_branch: Optional[str]
    branch_template: str
    git_user_name: str
    git_user_email: str
    protected_paths: List[str]
    merge_strategy: str
    gh_path: str
    github_repo: Optional[str]
    trigger_label: str
    worker: AgentConfig
    reviewer: AgentConfig
    log: LogConfig

    def branch_for_issue(self, issue_number: int) -> str:
        return self.branch_template.replace("{issue}", str(issue_number))


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(base))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def find_nearest_config_path(start: Path) -> Optional[Path]:
    """Return the closest ralph.yml walking upward from start."""
    start = start.resolve()
    search_dir = start if start.is_dir() else start.parent
    for current in [search_dir] + list(search_dir.parents):
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def _load_dotenv_for_root(root: Path) -> None:
    candidate = root / ".env"
    try:
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=False)
    except Exception:
        # Never fail config loading due to dotenv issues.
        pass


def _apply_env_overrides(cfg: Dict[str, Any], env: Mapping[str, str]) -> None:
    for name, path in ENV_OVERRIDES.items():
        raw = env.get(name)
        if raw is None or not raw.strip():
            continue
        value: Any = raw.strip()
        if path in _INT_KEYS:
            try:
                value = int(value)
            except ValueError as exc:
                raise ConfigError(f"{name} must be an integer (got {raw!r})") from exc
        section = cfg
        for key in path[:-1]:
            section = section.setdefault(key, {})
        section[path[-1]] = value


def _default_root(start: Path) -> Path:
    try:
        return find_repo_root(start)
    except RepoNotFoundError:
        return start.resolve()


def load_config(
    start: Path, *, env: Optional[Mapping[str, str]] = None
) -> RalphConfig:
    """
    Load the nearest ralph.yml walking upward from `start`, falling back to
    defaults rooted at the enclosing git checkout (or `start`) when none
    exists. Environment inputs win.
    """
    config_path = find_nearest_config_path(start)
    root = config_path.parent if config_path else _default_root(start)
    _load_dotenv_for_root(root)
    data: Dict[str, Any] = {}
    if config_path is not None:
        try:
            with config_path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
    merged = _merge_defaults(DEFAULT_CONFIG, data)
    _apply_env_overrides(merged, os.environ if env is None else env)
    _validate_config(merged)
    return _build_config(root, merged)


def _build_agent_config(cfg: Dict[str, Any]) -> AgentConfig:
    max_turns = cfg.get("max_turns")
    return AgentConfig(
        command=[str(part) for part in cfg.get("command") or []],
        model=str(cfg["model"]) if cfg.get("model") else None,
        max_turns=int(max_turns) if max_turns is not None else None,
        allowed_tools=str(cfg["allowed_tools"]) if cfg.get("allowed_tools") else None,
        timeout_seconds=int(cfg.get("timeout_seconds") or 3600),
    )


def _build_config(root: Path, cfg: Dict[str, Any]) -> RalphConfig:
    git_cfg = cfg["git"]
    github_cfg = cfg["github"]
    log_cfg = cfg["log"]
    return RalphConfig(
        raw=cfg,
        root=root,
        version=int(cfg["version"]),
        max_iterations=int(cfg["loop"]["max_iterations"]),
        state_dir=root / str(cfg["state"]["dir"]),
        git_remote=str(git_cfg["remote"]),
        base_branch=git_cfg.get("base_branch") or None,
        branch_template=str(git_cfg["branch_template"]),
        git_user_name=str(git_cfg["user_name"]),
        git_user_email=str(git_cfg["user_email"]),
        protected_paths=[str(p).rstrip("/") for p in git_cfg["protected_paths"]],
        merge_strategy=str(cfg["merge"]["strategy"]),
        gh_path=str(github_cfg["gh_path"]),
        github_repo=github_cfg.get("repo") or None,
        trigger_label=str(github_cfg["trigger_label"]),
        worker=_build_agent_config(cfg["agents"]["worker"]),
        reviewer=_build_agent_config(cfg["agents"]["reviewer"]),
        log=LogConfig(
            path=root / log_cfg["path"],
            max_bytes=int(log_cfg["max_bytes"]),
            backup_count=int(log_cfg["backup_count"]),
        ),
    )


def _validate_agent(name: str, cfg: Any) -> None:
    if not isinstance(cfg, dict):
        raise ConfigError(f"agents.{name} must be a mapping")
    command = cfg.get("command")
    if not isinstance(command, list) or not command:
        raise ConfigError(f"agents.{name}.command must be a non-empty list")
    max_turns = cfg.get("max_turns")
    if max_turns is not None and not isinstance(max_turns, int):
        raise ConfigError(f"agents.{name}.max_turns must be an integer or null")
    if not isinstance(cfg.get("timeout_seconds", 0), int):
        raise ConfigError(f"agents.{name}.timeout_seconds must be an integer")


def _validate_config(cfg: Dict[str, Any]) -> None:
    if cfg.get("version") != CONFIG_VERSION:
        raise ConfigError(f"Unsupported config version; expected {CONFIG_VERSION}")
    loop = cfg.get("loop")
    if not isinstance(loop, dict):
        raise ConfigError("loop section must be a mapping")
    max_iterations = loop.get("max_iterations")
    if not isinstance(max_iterations, int) or max_iterations < 1:
        raise ConfigError("loop.max_iterations must be a positive integer")
    state = cfg.get("state")
    if not isinstance(state, dict) or not isinstance(state.get("dir"), str):
        raise ConfigError("state.dir must be a string path")
    git = cfg.get("git")
    if not isinstance(git, dict):
        raise ConfigError("git section must be a mapping")
    if "{issue}" not in str(git.get("branch_template", "")):
        raise ConfigError("git.branch_template must contain '{issue}'")
    protected = git.get("protected_paths")
    if not isinstance(protected, list) or not all(
        isinstance(p, str) and p.strip() for p in protected
    ):
        raise ConfigError("git.protected_paths must be a list of non-empty strings")
    merge = cfg.get("merge")
    if not isinstance(merge, dict) or not isinstance(merge.get("strategy"), str):
        raise ConfigError("merge.strategy must be a string")
    github = cfg.get("github")
    if not isinstance(github, dict):
        raise ConfigError("github section must be a mapping")
    agents = cfg.get("agents")
    if not isinstance(agents, dict):
        raise ConfigError("agents section must be a mapping")
    for name in ("worker", "reviewer"):
        _validate_agent(name, agents.get(name))
    log_cfg = cfg.get("log")
    if not isinstance(log_cfg, dict):
        raise ConfigError("log section must be a mapping")
    if not isinstance(log_cfg.get("path", ""), str):
        raise ConfigError("log.path must be a string path")
    for key in ("max_bytes", "backup_count"):
        if not isinstance(log_cfg.get(key, 0), int):
            raise ConfigError(f"log.{key} must be an integer")
