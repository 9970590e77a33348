from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
import logging
from typing import Protocol

from mapdiffbot.config import IMGUR_ID_KEY, IMGUR_SECRET_KEY, SecretStore
from mapdiffbot.models import MapDiff
from mapdiffbot.observability import log_event
from mapdiffbot.tasks import gather_all
from mapdiffbot.uploader import FileUploader


LOGGER = logging.getLogger("mapdiffbot.publisher")

COMMENT_HEADER = (
    "<details><summary>Rendered Map Changes</summary>\n"
    "\n"
    "Map | Old | New | Status\n"
    "--- | --- | --- | ---"
)
COMMENT_FOOTER = "</details>"


class CommentSink(Protocol):
    async def upsert_singleton_comment(self, issue_number: int, body: str) -> None: ...


def _image_cell(url: str | None) -> str:
    return f"![]({url})" if url is not None else ""


def render_comment(diffs: Sequence[MapDiff], urls: Sequence[str | None]) -> str:
    """Render the comment table; ``urls`` holds (before, after) per diff, in order."""
    if len(urls) != 2 * len(diffs):
        raise ValueError("Expected exactly two image URLs per map diff")
    rows = [COMMENT_HEADER]
    for index, diff in enumerate(diffs):
        before_url = urls[2 * index]
        after_url = urls[2 * index + 1]
        cells = (diff.map_name, _image_cell(before_url), _image_cell(after_url), diff.status)
        rows.append(" | ".join(cells))
    rows.append("")
    rows.append(COMMENT_FOOTER)
    return "\n".join(rows)


async def upload_diffs_and_render(
    diffs: Sequence[MapDiff],
    secrets: SecretStore,
    uploader: FileUploader,
) -> str:
    imgur_id = await secrets.get_secret(IMGUR_ID_KEY)
    imgur_secret = await secrets.get_secret(IMGUR_SECRET_KEY)
    credentials = f"{imgur_id}/{imgur_secret}"

    # Substitution slots are collected while walking the rows; None marks an
    # absent side and stays an empty cell.
    slots: list[Path | None] = []
    for diff in diffs:
        slots.append(diff.before_path)
        slots.append(diff.after_path)

    async def _upload(path: Path | None) -> str | None:
        if path is None:
            return None
        return await uploader.upload(path, credentials)

    urls = await gather_all(_upload(path) for path in slots)
    log_event(
        LOGGER,
        "uploads_completed",
        diff_count=len(diffs),
        upload_count=sum(1 for path in slots if path is not None),
    )
    return render_comment(diffs, urls)


async def publish_diffs(
    diffs: Sequence[MapDiff],
    secrets: SecretStore,
    uploader: FileUploader,
    comments: CommentSink,
    pr_number: int,
) -> str:
    body = await upload_diffs_and_render(diffs, secrets, uploader)
    await comments.upsert_singleton_comment(pr_number, body)
    log_event(LOGGER, "diffs_published", pr_number=pr_number, diff_count=len(diffs))
    return body
