from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, cast


MapDiffStatus = Literal["Created", "Modified", "Deleted"]
PullRequestAction = Literal["opened", "synchronize"]
SUPPORTED_ACTIONS: tuple[PullRequestAction, ...] = ("opened", "synchronize")


class PayloadError(ValueError):
    """Raised when a webhook payload does not have the expected shape."""


@dataclass(frozen=True)
class OperationKey:
    owner: str
    name: str
    pr_number: int

    def __str__(self) -> str:
        return f"{self.owner}/{self.name}#{self.pr_number}"

    @property
    def relative_dir(self) -> Path:
        return Path(self.owner) / self.name / str(self.pr_number)


@dataclass(frozen=True)
class DiffRegion:
    min_x: int
    max_x: int
    min_y: int
    max_y: int


@dataclass(frozen=True)
class MapDiff:
    map_name: str
    before_path: Path | None
    after_path: Path | None

    def __post_init__(self) -> None:
        if self.before_path is None and self.after_path is None:
            raise ValueError(
                f"MapDiff for {self.map_name!r} has neither a before nor an after image"
            )

    @property
    def status(self) -> MapDiffStatus:
        if self.before_path is None:
            return "Created"
        if self.after_path is None:
            return "Deleted"
        return "Modified"


@dataclass(frozen=True)
class RepositoryRef:
    owner: str
    name: str
    clone_url: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class PullRequestEvent:
    action: str
    repository: RepositoryRef
    number: int
    mergeable: bool | None
    base_sha: str
    head_sha: str

    @property
    def key(self) -> OperationKey:
        return OperationKey(
            owner=self.repository.owner,
            name=self.repository.name,
            pr_number=self.number,
        )


def parse_pull_request_event(payload: dict[str, object]) -> PullRequestEvent:
    action = _require_str(payload, "action", where="payload")
    repo_obj = _require_dict(payload, "repository", where="payload")
    pr_obj = _require_dict(payload, "pull_request", where="payload")
    owner_obj = _require_dict(repo_obj, "owner", where="repository")
    base_obj = _require_dict(pr_obj, "base", where="pull_request")
    head_obj = _require_dict(pr_obj, "head", where="pull_request")

    owner = _require_str(owner_obj, "login", where="repository.owner")
    name = _require_str(repo_obj, "name", where="repository")
    clone_url = repo_obj.get("clone_url")
    if not isinstance(clone_url, str) or not clone_url:
        clone_url = f"https://github.com/{owner}/{name}.git"

    number = pr_obj.get("number", payload.get("number"))
    if isinstance(number, bool) or not isinstance(number, int):
        raise PayloadError("pull_request.number must be an integer")

    mergeable = pr_obj.get("mergeable")
    if mergeable is not None and not isinstance(mergeable, bool):
        raise PayloadError("pull_request.mergeable must be a boolean or null")

    return PullRequestEvent(
        action=action,
        repository=RepositoryRef(owner=owner, name=name, clone_url=clone_url),
        number=number,
        mergeable=mergeable,
        base_sha=_require_str(base_obj, "sha", where="pull_request.base"),
        head_sha=_require_str(head_obj, "sha", where="pull_request.head"),
    )


def _require_dict(data: dict[str, object], key: str, *, where: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise PayloadError(f"{where}.{key} must be an object")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str, *, where: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise PayloadError(f"{where}.{key} must be a non-empty string")
    return value


@dataclass(frozen=True)
class IssueComment:
    comment_id: int
    body: str
