from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import cast
from urllib.parse import urlencode

from mapdiffbot.models import IssueComment
from mapdiffbot.observability import log_event
from mapdiffbot.shell import CommandError, run


LOGGER = logging.getLogger("mapdiffbot.github_gateway")
COMMENT_MARKER = "<!-- mapdiffbot -->"
_PAGE_SIZE = 100


class GitHubApiError(RuntimeError):
    """A GitHub API call failed or returned an unexpected shape."""


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    token: str = field(repr=False)

    async def get_pull_request_mergeable(self, pr_number: int) -> bool | None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload_obj = _as_object_dict(await self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for pull request")
        mergeable = payload_obj.get("mergeable")
        if mergeable is not None and not isinstance(mergeable, bool):
            raise GitHubApiError("Unexpected GitHub response type for mergeable")
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=pr_number,
            mergeable=mergeable,
        )
        return mergeable

    async def list_pull_request_files(self, pr_number: int) -> tuple[str, ...]:
        files: list[str] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/files?{query}"
            payload = await self._api_json("GET", path)
            if not isinstance(payload, list):
                raise GitHubApiError(
                    "Unexpected GitHub response: expected list of pull request files"
                )
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                filename = item_obj.get("filename")
                if isinstance(filename, str) and filename:
                    files.append(filename)
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_files",
            pr_number=pr_number,
            count=len(files),
        )
        return tuple(files)

    async def list_changed_map_files(self, pr_number: int, extension: str) -> tuple[str, ...]:
        suffix = extension.lower()
        files = await self.list_pull_request_files(pr_number)
        return tuple(path for path in files if path.lower().endswith(suffix))

    async def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        comments: list[IssueComment] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments?{query}"
            payload = await self._api_json("GET", path)
            if not isinstance(payload, list):
                raise GitHubApiError("Unexpected GitHub response: expected list of issue comments")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                comments.append(
                    IssueComment(
                        comment_id=_as_int(item_obj.get("id"), field="id"),
                        body=_as_string(item_obj.get("body")),
                    )
                )
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            count=len(comments),
        )
        return comments

    async def upsert_singleton_comment(self, issue_number: int, body: str) -> None:
        """Post ``body`` as the only bot comment on the issue.

        The first earlier bot comment is edited in place; any further ones are
        deleted so a pull request never accumulates stale renders.
        """
        marked_body = f"{body}\n\n{COMMENT_MARKER}"
        existing = [
            comment
            for comment in await self.list_issue_comments(issue_number)
            if COMMENT_MARKER in comment.body
        ]
        try:
            if existing:
                keep, *stale = existing
                await self._api_json(
                    "PATCH",
                    f"/repos/{self.owner}/{self.name}/issues/comments/{keep.comment_id}",
                    payload={"body": marked_body},
                )
                for comment in stale:
                    await self._api_json(
                        "DELETE",
                        f"/repos/{self.owner}/{self.name}/issues/comments/{comment.comment_id}",
                    )
            else:
                await self._api_json(
                    "POST",
                    f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments",
                    payload={"body": marked_body},
                )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_comment_failed",
                repo_full_name=f"{self.owner}/{self.name}",
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_comment_upserted",
            issue_number=issue_number,
            replaced=bool(existing),
        )

    async def _api_json(
        self, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        cmd = ["gh", "api", "--method", method.upper(), path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        try:
            raw = await run(cmd, input_text=stdin_payload, env={"GH_TOKEN": self.token})
        except CommandError as exc:
            raise GitHubApiError(f"GitHub API {method.upper()} {path} failed: {exc}") from exc
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise GitHubApiError(
                f"GitHub API {method.upper()} {path} returned invalid JSON"
            ) from exc


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubApiError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise GitHubApiError(f"Unexpected GitHub response type for {field}")
