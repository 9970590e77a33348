from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import cast

from mapdiffbot.config import AppConfig, EnvSecretStore, load_config
from mapdiffbot.coordinator import BuildCoordinator, OperationOutcome
from mapdiffbot.diff_generator import DiffGenerator
from mapdiffbot.dispatcher import PullRequestDispatcher
from mapdiffbot.git_ops import RepositoryManager
from mapdiffbot.observability import configure_logging
from mapdiffbot.uploader import ImgurUploader


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mapdiffbot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create the state directory layout")
    init_parser.add_argument("--config", type=Path, default=Path("mapdiffbot.toml"))
    _add_verbose(init_parser)

    handle_parser = subparsers.add_parser(
        "handle",
        help="Process pull_request webhook payloads and publish map diff comments",
    )
    handle_parser.add_argument("--config", type=Path, default=Path("mapdiffbot.toml"))
    handle_parser.add_argument(
        "--event",
        type=Path,
        action="append",
        required=True,
        help="Path to a pull_request event payload (repeatable; later events supersede "
        "earlier ones for the same pull request)",
    )
    _add_verbose(handle_parser)

    render_parser = subparsers.add_parser(
        "render", help="Render a before/after map pair without touching GitHub"
    )
    render_parser.add_argument("--config", type=Path, default=None)
    render_parser.add_argument("--tool", type=str, default=None, help="Render tool executable")
    render_parser.add_argument("--before", type=Path, default=None)
    render_parser.add_argument("--after", type=Path, default=None)
    render_parser.add_argument("--workdir", type=Path, required=True)
    render_parser.add_argument("--output", type=Path, required=True)
    _add_verbose(render_parser)

    return parser


def _add_verbose(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (default mode: high)",
    )


def main() -> None:
    args = build_parser().parse_args()

    if args.command == "init":
        config = load_config(args.config)
        configure_logging(args.verbose, state_dir=config.runtime.base_dir)
        _cmd_init(config)
        return
    if args.command == "handle":
        config = load_config(args.config)
        configure_logging(args.verbose, state_dir=config.runtime.base_dir)
        failures = asyncio.run(_cmd_handle(config, event_paths=tuple(args.event)))
        if failures:
            raise SystemExit(1)
        return
    if args.command == "render":
        configure_logging(args.verbose)
        asyncio.run(_cmd_render(args))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_init(config: AppConfig) -> None:
    config.runtime.repos_dir.mkdir(parents=True, exist_ok=True)
    config.runtime.output_dir.mkdir(parents=True, exist_ok=True)
    print(f"Initialized mapdiffbot base dir: {config.runtime.base_dir}")
    print(f"Repositories: {config.runtime.repos_dir}")
    print(f"Map diffs: {config.runtime.output_dir}")


def build_coordinator(config: AppConfig) -> BuildCoordinator:
    return BuildCoordinator(
        config,
        repositories=RepositoryManager(config.runtime.repos_dir, config.git),
        generator=DiffGenerator(config.render.tool_path),
        uploader=ImgurUploader(),
    )


async def _cmd_handle(config: AppConfig, *, event_paths: tuple[Path, ...]) -> int:
    payloads = [_read_payload(path) for path in event_paths]
    coordinator = build_coordinator(config)
    dispatcher = PullRequestDispatcher(coordinator)
    secrets = EnvSecretStore(config.secrets)

    try:
        results = await asyncio.gather(
            *(dispatcher.run(payload, secrets) for payload in payloads),
            return_exceptions=True,
        )
    finally:
        await coordinator.shutdown()

    failures = 0
    for path, result in zip(event_paths, results, strict=True):
        if isinstance(result, BaseException):
            failures += 1
            print(f"{path}: failed ({type(result).__name__}: {result})")
        else:
            print(f"{path}: {cast(OperationOutcome, result)}")
    return failures


async def _cmd_render(args: argparse.Namespace) -> None:
    if args.before is None and args.after is None:
        raise SystemExit("render requires --before, --after, or both")
    tool_path = args.tool
    if tool_path is None:
        tool_path = load_config(args.config).render.tool_path if args.config else "dmm-tools"
    args.output.mkdir(parents=True, exist_ok=True)
    diff = await DiffGenerator(tool_path).generate_diff(
        args.before, args.after, args.workdir, args.output
    )
    print(f"{diff.map_name}: {diff.status}")
    if diff.before_path is not None:
        print(f"Before: {diff.before_path}")
    if diff.after_path is not None:
        print(f"After: {diff.after_path}")


def _read_payload(path: Path) -> dict[str, object]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise SystemExit(f"{path}: event payload must be a JSON object")
    return cast(dict[str, object], payload)
