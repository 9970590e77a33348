from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
import logging
import os


LOGGER = logging.getLogger("mapdiffbot.shell")


class CommandError(RuntimeError):
    def __init__(self, message: str, *, result: CommandResult) -> None:
        super().__init__(message)
        self.result = result


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


async def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    env: dict[str, str] | None = None,
    check: bool = True,
) -> str:
    result = await run_process(argv, cwd=cwd, input_text=input_text, env=env, check=check)
    return result.stdout


async def run_process(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    env: dict[str, str] | None = None,
    check: bool = True,
) -> CommandResult:
    """Run ``argv`` to completion, draining stdout and stderr concurrently.

    If the awaiting task is cancelled the child is killed and reaped before the
    cancellation propagates, so no process outlives its caller.
    """
    merged_env: dict[str, str] | None = None
    if env:
        merged_env = os.environ.copy()
        merged_env.update(env)

    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd) if cwd else None,
        env=merged_env,
        stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdin_bytes = input_text.encode("utf-8") if input_text is not None else None
    try:
        stdout_bytes, stderr_bytes = await proc.communicate(stdin_bytes)
    except asyncio.CancelledError:
        await _kill(proc, argv)
        raise

    result = CommandResult(
        argv=tuple(argv),
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout_bytes.decode("utf-8", errors="replace"),
        stderr=stderr_bytes.decode("utf-8", errors="replace"),
    )
    if check and result.exit_code != 0:
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            " ".join(argv),
            result.exit_code,
            _preview(result.stderr),
            _preview(result.stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {' '.join(argv)}\n"
            f"exit: {result.exit_code}\n"
            f"stdout:\n{result.stdout}\n"
            f"stderr:\n{result.stderr}",
            result=result,
        )
    return result


async def _kill(proc: asyncio.subprocess.Process, argv: list[str]) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        LOGGER.info("event=command_killed command=%s pid=%s", " ".join(argv), proc.pid)
    # Shielded so the reap completes even though we are already unwinding.
    await asyncio.shield(proc.wait())
