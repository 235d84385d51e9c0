from enum import Enum, IntEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Verdict(str, Enum):
    SHIP = "SHIP"
    REVISE = "REVISE"


class FinalStatus(str, Enum):
    SHIPPED = "SHIPPED"
    MAX_ITERATIONS = "MAX_ITERATIONS"
    ERROR = "ERROR"

    @property
    def exit_code(self) -> int:
        return int(ExitCode[self.name])


class ExitCode(IntEnum):
    """Process exit signal for each terminal state."""

    SHIPPED = 0
    ERROR = 1
    MAX_ITERATIONS = 2


class LoopPhase(str, Enum):
    ITERATING = "iterating"
    WORKING = "working"
    REVIEWING = "reviewing"
    DECIDING = "deciding"
    SHIPPED = "shipped"
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"

    def is_terminal(self) -> bool:
        return self in {self.SHIPPED, self.MAX_ITERATIONS, self.ERROR}


class PublishResult(str, Enum):
    SUCCESS = "success"
    ALREADY_UP_TO_DATE = "already_up_to_date"
    FAILURE = "failure"

    def is_ok(self) -> bool:
        return self in {self.SUCCESS, self.ALREADY_UP_TO_DATE}


class MergeStrategy(str, Enum):
    REVIEW_REQUEST = "pr"
    DIRECT_PUBLISH = "squash-merge"

    @classmethod
    def parse(cls, value: Optional[str]) -> "MergeStrategy":
        raw = (value or "").strip()
        for member in cls:
            if member.value == raw:
                return member
        return cls.REVIEW_REQUEST


class Task(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    description: str = ""
    discussion: Optional[str] = None

    def render(self) -> str:
        text = f"# {self.title}\n\n{self.description}\n"
        if self.discussion:
            text += f"\n---\n\n# Issue Comments\n\n{self.discussion}\n"
        return text

    @classmethod
    def parse(cls, text: str) -> "Task":
        raw = text or ""
        discussion: Optional[str] = None
        marker = "\n---\n\n# Issue Comments\n\n"
        if marker in raw:
            raw, discussion = raw.split(marker, 1)
            discussion = discussion.rstrip("\n") or None
        lines = raw.splitlines()
        title = ""
        if lines and lines[0].startswith("# "):
            title = lines[0][2:].strip()
            lines = lines[1:]
        return cls(
            title=title,
            description="\n".join(lines).strip("\n"),
            discussion=discussion,
        )


class RunContext(BaseModel):
    """Run metadata shared with agents (persisted as `key=value` lines)."""

    repo: Optional[str] = None
    branch: Optional[str] = None
    issue_title: Optional[str] = None
    merge_strategy: MergeStrategy = MergeStrategy.REVIEW_REQUEST
    default_branch: Optional[str] = None
    pr_number: Optional[int] = None

    def to_text(self) -> str:
        lines = []
        for key, value in self.model_dump(mode="json").items():
            lines.append(f"{key}={'' if value is None else value}")
        return "\n".join(lines) + "\n"

    @classmethod
    def from_text(cls, text: str) -> "RunContext":
        data: dict[str, Optional[str]] = {}
        for line in (text or "").splitlines():
            if "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            if key in cls.model_fields:
                data[key] = value.strip() or None
        strategy = MergeStrategy.parse(data.pop("merge_strategy", None))
        pr_number = data.pop("pr_number", None)
        return cls(
            merge_strategy=strategy,
            pr_number=int(pr_number) if pr_number and pr_number.isdigit() else None,
            **data,
        )


class MergeRecord(BaseModel):
    """Either a review-request link or a direct-publish commit, never both."""

    strategy: MergeStrategy
    pr_url: Optional[str] = None
    pr_number: Optional[int] = None
    commit_sha: Optional[str] = None
    fallback_reason: Optional[str] = None

    @property
    def is_direct_publish(self) -> bool:
        return self.strategy == MergeStrategy.DIRECT_PUBLISH


class EventInfo(BaseModel):
    """What triggered the run (persisted as `key=value` lines)."""

    action: Optional[str] = None
    comment_id: Optional[int] = None

    def to_text(self) -> str:
        return f"action={self.action or ''}\ncomment_id={self.comment_id or ''}\n"

    @classmethod
    def from_text(cls, text: str) -> "EventInfo":
        data: dict[str, str] = {}
        for line in (text or "").splitlines():
            if "=" in line:
                key, value = line.split("=", 1)
                data[key.strip()] = value.strip()
        comment_id = data.get("comment_id", "")
        return cls(
            action=data.get("action") or None,
            comment_id=int(comment_id) if comment_id.isdigit() else None,
        )


class LoopState(BaseModel):
    """Snapshot of every persisted field, loaded and saved as a whole."""

    task: Optional[Task] = None
    issue_number: Optional[int] = None
    iteration: int = Field(default=0, ge=0)
    work_summary: str = ""
    verdict: Verdict = Verdict.REVISE
    feedback: str = ""
    pr_title: str = ""
    push_error: str = ""
    final_status: Optional[FinalStatus] = None
    context: RunContext = Field(default_factory=RunContext)
    pr_url: str = ""
    merge_commit: str = ""
    event: EventInfo = Field(default_factory=EventInfo)


class IssueEvent(BaseModel):
    """The subset of a GitHub issue event payload the runner consumes."""

    model_config = ConfigDict(extra="ignore")

    class Issue(BaseModel):
        model_config = ConfigDict(extra="ignore")

        number: int
        title: str
        body: Optional[str] = None

    class Comment(BaseModel):
        model_config = ConfigDict(extra="ignore")

        id: int
        body: Optional[str] = None

    action: Optional[str] = None
    issue: Issue
    comment: Optional[Comment] = None

    def info(self) -> EventInfo:
        return EventInfo(
            action=self.action,
            comment_id=self.comment.id if self.comment else None,
        )

