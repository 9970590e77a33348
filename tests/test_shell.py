from __future__ import annotations

import asyncio
from pathlib import Path
import sys

import pytest

from mapdiffbot.observability import configure_logging
from mapdiffbot.shell import CommandError, _preview, run, run_process


@pytest.mark.asyncio
async def test_run_returns_stdout_and_feeds_stdin(tmp_path: Path) -> None:
    script = "import os, sys; sys.stdout.write(os.getcwd() + '|' + sys.stdin.read())"

    out = await run([sys.executable, "-c", script], cwd=tmp_path, input_text="hi")

    cwd, _, stdin = out.partition("|")
    assert Path(cwd).resolve() == tmp_path.resolve()
    assert stdin == "hi"


@pytest.mark.asyncio
async def test_run_merges_env_overrides() -> None:
    script = "import os; print(os.environ['MAPDIFFBOT_TEST_VAR'], 'PATH' in os.environ)"

    out = await run([sys.executable, "-c", script], env={"MAPDIFFBOT_TEST_VAR": "set"})

    assert out.split() == ["set", "True"]


@pytest.mark.asyncio
async def test_run_failure_raises_and_logs(capsys: pytest.CaptureFixture[str]) -> None:
    script = "import sys; print('out'); print('err', file=sys.stderr); sys.exit(2)"
    configure_logging(verbose=True)

    with pytest.raises(CommandError, match="Command failed") as excinfo:
        await run([sys.executable, "-c", script])

    assert excinfo.value.result.exit_code == 2
    assert excinfo.value.result.stdout.strip() == "out"
    stderr = capsys.readouterr().err
    assert "event=command_failed" in stderr
    assert "exit_code=2" in stderr
    assert "stderr=err" in stderr
    configure_logging(verbose=False)


@pytest.mark.asyncio
async def test_run_process_without_check_returns_result() -> None:
    result = await run_process(
        [sys.executable, "-c", "import sys; sys.stderr.write('nope'); sys.exit(5)"],
        check=False,
    )

    assert result.exit_code == 5
    assert result.stderr == "nope"
    assert result.argv[0] == sys.executable


@pytest.mark.asyncio
async def test_cancelling_run_kills_child(tmp_path: Path) -> None:
    marker = tmp_path / "finished"
    script = f"import time, pathlib; time.sleep(30); pathlib.Path({str(marker)!r}).touch()"

    task = asyncio.create_task(run([sys.executable, "-c", script]))
    await asyncio.sleep(0.2)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        async with asyncio.timeout(10):
            await task
    assert not marker.exists()


def test_preview_handles_empty_and_truncation() -> None:
    assert _preview("") == "<empty>"
    assert _preview("a\nb") == "a\\nb"
    assert _preview("x" * 10, limit=4) == "xxxx..."
