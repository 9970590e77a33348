from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path
import logging
import shutil
from typing import Literal

from mapdiffbot.models import DiffRegion, MapDiff
from mapdiffbot.observability import log_event
from mapdiffbot.shell import _preview, run_process
from mapdiffbot.tasks import gather_all


LOGGER = logging.getLogger("mapdiffbot.diff_generator")

SNAPSHOT_SUFFIX = ".old_map_diff_bot"
_SAVING_MARKER = "saving"
_IMAGE_EXTENSION = ".png"

Side = Literal["before", "after"]
RegionProvider = Callable[[Path | None, Path | None, Path], Awaitable[DiffRegion | None]]


class ToolExecutionError(RuntimeError):
    def __init__(self, message: str, *, stdout: str, stderr: str, exit_code: int | None) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code


async def full_map_region(
    before_path: Path | None, after_path: Path | None, working_dir: Path
) -> DiffRegion | None:
    """Region provider that always renders the whole map."""
    _ = before_path, after_path, working_dir
    return None


def build_render_args(tool_path: str, map_path: Path, region: DiffRegion | None) -> list[str]:
    argv = [tool_path]
    if region is not None:
        # max_x fills both the second and third coordinate slots; min_y is unused.
        argv.extend(
            [
                "--min",
                f"{region.min_x},{region.max_x}",
                "--max",
                f"{region.max_x},{region.max_y}",
            ]
        )
    argv.extend(["--disable", "hide-space", "--minimap", str(map_path)])
    return argv


def parse_render_output(stdout: str) -> str | None:
    """Return the image name announced as ``saving <name>.png``, if any."""
    expect_image = False
    for token in stdout.split():
        if token == _SAVING_MARKER:
            expect_image = True
        elif expect_image and token.endswith(_IMAGE_EXTENSION):
            return token
        else:
            expect_image = False
    return None


def map_display_name(before_path: Path | None, after_path: Path | None) -> str:
    candidates = [path for path in (before_path, after_path) if path is not None]
    if not candidates:
        raise ValueError("At least one map path is required")
    shortest = min(candidates, key=lambda path: len(str(path)))
    name = shortest.name
    if name.endswith(SNAPSHOT_SUFFIX):
        name = name[: -len(SNAPSHOT_SUFFIX)]
    return Path(name).stem


def unique_image_stem(output_dir: Path, map_name: str) -> str:
    """Return ``map_name``, or ``map_name-N`` if its images already exist in ``output_dir``.

    Maps with the same file name in different directories share a display
    name; their images must not overwrite each other.
    """
    stem = map_name
    index = 1
    while any(
        (output_dir / f"{stem}.{side}{_IMAGE_EXTENSION}").exists() for side in ("before", "after")
    ):
        index += 1
        stem = f"{map_name}-{index}"
    return stem


class DiffGenerator:
    def __init__(
        self,
        tool_path: str,
        *,
        region_provider: RegionProvider = full_map_region,
    ) -> None:
        self._tool_path = tool_path
        self._region_provider = region_provider

    async def generate_diff(
        self,
        before_path: Path | None,
        after_path: Path | None,
        working_dir: Path,
        output_dir: Path,
    ) -> MapDiff:
        map_name = map_display_name(before_path, after_path)
        region = await self._region_provider(before_path, after_path, working_dir)
        (working_dir / "data" / "minimaps").mkdir(parents=True, exist_ok=True)
        log_event(
            LOGGER,
            "map_diff_started",
            map_name=map_name,
            has_before=before_path is not None,
            has_after=after_path is not None,
            has_region=region is not None,
        )

        sides: list[tuple[Side, Path]] = []
        if before_path is not None:
            sides.append(("before", before_path))
        if after_path is not None:
            sides.append(("after", after_path))

        rendered = await gather_all(self._render(path, working_dir, region) for _, path in sides)

        image_stem = unique_image_stem(output_dir, map_name)
        if image_stem != map_name:
            log_event(LOGGER, "map_image_name_collision", map_name=map_name, image_stem=image_stem)
        moved: dict[Side, Path] = {}
        for (side, _), image_path in zip(sides, rendered, strict=True):
            destination = output_dir / f"{image_stem}.{side}{_IMAGE_EXTENSION}"
            shutil.move(str(image_path), str(destination))
            moved[side] = destination

        diff = MapDiff(
            map_name=map_name,
            before_path=moved.get("before"),
            after_path=moved.get("after"),
        )
        log_event(LOGGER, "map_diff_generated", map_name=map_name, status=diff.status)
        return diff

    async def _render(self, map_path: Path, working_dir: Path, region: DiffRegion | None) -> Path:
        argv = build_render_args(self._tool_path, map_path, region)
        log_event(LOGGER, "render_started", map_path=map_path)
        result = await run_process(argv, cwd=working_dir, check=False)
        if result.exit_code != 0:
            log_event(
                LOGGER,
                "render_failed",
                map_path=map_path,
                exit_code=result.exit_code,
                stdout=_preview(result.stdout),
            )
            raise ToolExecutionError(
                f"{self._tool_path} exited with code {result.exit_code}\n"
                f"stdout:\n{result.stdout}\n"
                f"stderr:\n{result.stderr}",
                stdout=result.stdout,
                stderr=result.stderr,
                exit_code=result.exit_code,
            )

        image_name = parse_render_output(result.stdout)
        if image_name is None:
            log_event(LOGGER, "render_failed", map_path=map_path, reason="no_image_in_output")
            raise ToolExecutionError(
                f"Unable to find a {_IMAGE_EXTENSION} file in {self._tool_path} output\n"
                f"stdout:\n{result.stdout}\n"
                f"stderr:\n{result.stderr}",
                stdout=result.stdout,
                stderr=result.stderr,
                exit_code=result.exit_code,
            )
        log_event(LOGGER, "render_finished", map_path=map_path, image=image_name)
        return working_dir / image_name
