from __future__ import annotations

import asyncio
import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from mapdiffbot import cli
from mapdiffbot.config import AppConfig, RuntimeConfig
from mapdiffbot.models import MapDiff, PayloadError, PullRequestEvent


def _app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(runtime=RuntimeConfig(base_dir=tmp_path / "state"))


def _payload(action: str = "opened", number: int = 4) -> dict[str, object]:
    return {
        "action": action,
        "repository": {"name": "station", "owner": {"login": "tg"}},
        "pull_request": {
            "number": number,
            "mergeable": True,
            "base": {"sha": "base"},
            "head": {"sha": "head"},
        },
    }


def _write_event(path: Path, payload: object) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_build_parser_supports_commands() -> None:
    parser = cli.build_parser()

    parsed_init = parser.parse_args(["init", "--verbose"])
    parsed_handle = parser.parse_args(
        ["handle", "--event", "a.json", "--event", "b.json", "-v", "low"]
    )
    parsed_render = parser.parse_args(
        ["render", "--after", "m.dmm", "--workdir", "w", "--output", "o"]
    )

    assert parsed_init.command == "init"
    assert parsed_init.verbose == "high"
    assert parsed_handle.event == [Path("a.json"), Path("b.json")]
    assert parsed_handle.verbose == "low"
    assert parsed_render.before is None
    assert parsed_render.after == Path("m.dmm")
    assert parsed_render.tool is None


def test_handle_requires_an_event() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["handle"])


def test_main_dispatches_init(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    cfg = _app_config(tmp_path)

    class FakeParser:
        def parse_args(self) -> SimpleNamespace:
            return SimpleNamespace(command="init", config=Path("cfg.toml"), verbose=None)

    called: dict[str, object] = {}
    monkeypatch.setattr(cli, "build_parser", lambda: FakeParser())
    monkeypatch.setattr(cli, "load_config", lambda p: cfg)
    monkeypatch.setattr(
        cli,
        "configure_logging",
        lambda verbose, state_dir=None: called.update(verbose=verbose, state_dir=state_dir),
    )

    cli.main()

    assert called == {"verbose": None, "state_dir": cfg.runtime.base_dir}
    assert cfg.runtime.repos_dir.is_dir()
    assert cfg.runtime.output_dir.is_dir()
    assert "Initialized mapdiffbot base dir" in capsys.readouterr().out


class FakeCoordinator:
    def __init__(self, outcome: str = "published") -> None:
        self.outcome = outcome
        self.events: list[PullRequestEvent] = []
        self.shutdown_calls = 0

    async def handle_pull_request_event(self, event: PullRequestEvent, secrets: object) -> str:
        _ = secrets
        self.events.append(event)
        await asyncio.sleep(0)
        return self.outcome

    async def shutdown(self) -> None:
        self.shutdown_calls += 1


@pytest.mark.asyncio
async def test_cmd_handle_reports_each_event(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    coordinator = FakeCoordinator()
    monkeypatch.setattr(cli, "build_coordinator", lambda config: coordinator)
    good = _write_event(tmp_path / "good.json", _payload("synchronize", 9))
    closed = _write_event(tmp_path / "closed.json", _payload("closed", 9))

    failures = await cli._cmd_handle(_app_config(tmp_path), event_paths=(good, closed))

    out = capsys.readouterr().out
    assert failures == 1
    assert f"{good}: published" in out
    assert f"{closed}: failed (UnsupportedActionError" in out
    assert [event.number for event in coordinator.events] == [9]
    assert coordinator.shutdown_calls == 1


def test_main_handle_exits_nonzero_on_failure(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    cfg = _app_config(tmp_path)
    event = _write_event(tmp_path / "e.json", _payload())

    class FakeParser:
        def parse_args(self) -> SimpleNamespace:
            return SimpleNamespace(
                command="handle", config=Path("cfg.toml"), event=[event], verbose=None
            )

    async def fake_handle(config: AppConfig, *, event_paths: tuple[Path, ...]) -> int:
        assert config is cfg
        assert event_paths == (event,)
        return 1

    monkeypatch.setattr(cli, "build_parser", lambda: FakeParser())
    monkeypatch.setattr(cli, "load_config", lambda p: cfg)
    monkeypatch.setattr(cli, "configure_logging", lambda verbose, state_dir=None: None)
    monkeypatch.setattr(cli, "_cmd_handle", fake_handle)

    with pytest.raises(SystemExit) as excinfo:
        cli.main()
    assert excinfo.value.code == 1


def test_read_payload_rejects_non_objects(tmp_path: Path) -> None:
    path = _write_event(tmp_path / "list.json", [1, 2])

    with pytest.raises(SystemExit, match="must be a JSON object"):
        cli._read_payload(path)


@pytest.mark.asyncio
async def test_cmd_handle_malformed_payload_counts_as_failure(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(cli, "build_coordinator", lambda config: FakeCoordinator())
    broken = _write_event(tmp_path / "broken.json", {"action": "opened"})

    failures = await cli._cmd_handle(_app_config(tmp_path), event_paths=(broken,))

    assert failures == 1
    assert PayloadError.__name__ in capsys.readouterr().out


@pytest.mark.asyncio
async def test_cmd_render_prints_outputs(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    seen: dict[str, object] = {}

    class FakeGenerator:
        def __init__(self, tool_path: str) -> None:
            seen["tool"] = tool_path

        async def generate_diff(
            self, before: Path | None, after: Path | None, working_dir: Path, output_dir: Path
        ) -> MapDiff:
            seen["args"] = (before, after, working_dir, output_dir)
            return MapDiff(
                map_name="box", before_path=None, after_path=output_dir / "box.after.png"
            )

    monkeypatch.setattr(cli, "DiffGenerator", FakeGenerator)
    args = SimpleNamespace(
        config=None,
        tool=None,
        before=None,
        after=tmp_path / "box.dmm",
        workdir=tmp_path,
        output=tmp_path / "out",
    )

    await cli._cmd_render(args)

    out = capsys.readouterr().out
    assert seen["tool"] == "dmm-tools"
    assert (tmp_path / "out").is_dir()
    assert "box: Created" in out
    assert f"After: {tmp_path / 'out' / 'box.after.png'}" in out
    assert "Before:" not in out


@pytest.mark.asyncio
async def test_cmd_render_requires_a_side(tmp_path: Path) -> None:
    args = SimpleNamespace(
        config=None, tool="x", before=None, after=None, workdir=tmp_path, output=tmp_path
    )
    with pytest.raises(SystemExit, match="requires"):
        await cli._cmd_render(args)
