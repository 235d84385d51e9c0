from pathlib import Path
from typing import Mapping, Optional

from .models import FinalStatus

STATUS_MARKER = "<!-- ralph-comment-status -->"

_STATUS_HEADLINES = {
    FinalStatus.SHIPPED: "✅ **Ralph shipped this issue**",
    FinalStatus.MAX_ITERATIONS: "⏸️ **Ralph reached the iteration limit** (needs human review)",
    FinalStatus.ERROR: "❌ **Ralph stopped with an error**",
}


def format_status_comment(
    status: FinalStatus,
    *,
    iteration: int,
    max_iterations: int,
    branch: str,
    pr_url: Optional[str] = None,
    merge_commit: Optional[str] = None,
    feedback: Optional[str] = None,
) -> str:
    lines = [
        _STATUS_HEADLINES[status],
        "",
        f"- Iterations: {iteration}/{max_iterations}",
        f"- Branch: `{branch}`",
    ]
    if pr_url:
        lines.append(f"- Pull request: {pr_url}")
    if merge_commit:
        lines.append(f"- Merged as: {merge_commit}")
    if feedback and status != FinalStatus.SHIPPED:
        lines += ["", "<details>", "<summary>Last reviewer feedback</summary>", ""]
        lines += [feedback.strip(), "", "</details>"]
    lines += ["", STATUS_MARKER]
    return "\n".join(lines) + "\n"


def write_action_outputs(path: Path, outputs: Mapping[str, object]) -> None:
    """Append `key=value` lines to a GitHub Actions output file."""
    with path.open("a", encoding="utf-8") as f:
        for key, value in outputs.items():
            text = "" if value is None else str(value)
            f.write(f"{key}={text.splitlines()[0] if text else ''}\n")
