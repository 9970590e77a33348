from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from pathlib import Path
import logging
from typing import TypeVar

from mapdiffbot.config import GitConfig
from mapdiffbot.observability import log_event
from mapdiffbot.shell import CommandError, run, run_process


LOGGER = logging.getLogger("mapdiffbot.git_ops")
_STALE_LOCK_FILES = (
    "index.lock",
    "HEAD.lock",
    "ORIG_HEAD.lock",
    "MERGE_HEAD.lock",
    "shallow.lock",
    "config.lock",
)

T = TypeVar("T")


class RepositoryError(RuntimeError):
    """A git operation against a local mirror failed."""


class MergeConflictError(RepositoryError):
    """Merging a revision into the checkout did not apply cleanly."""


class Repository:
    """A leased local clone of one remote repository.

    Only the lease holder may call these methods; the manager guarantees that
    at most one holder exists per repository at a time.
    """

    def __init__(self, path: Path, remote_url: str, git: GitConfig) -> None:
        self.path = path
        self.remote_url = remote_url
        self._git = git

    async def ensure_cloned(self) -> None:
        if (self.path / ".git").exists():
            self.clear_stale_locks()
            await self._git_run("remote", "set-url", "origin", self.remote_url)
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        log_event(LOGGER, "git_repository_cloned", path=self.path)
        await self._run(["git", "clone", "--no-checkout", self.remote_url, str(self.path)])

    async def fetch(self) -> None:
        log_event(LOGGER, "git_fetch_origin", path=self.path)
        await self._git_run("fetch", "origin", "--prune", "--tags")

    async def fetch_revision(self, ref: str) -> None:
        log_event(LOGGER, "git_fetch_revision", path=self.path, ref=ref)
        await self._git_run("fetch", "origin", ref)

    async def fetch_pull_request(self, pr_number: int) -> None:
        await self.fetch_revision(f"pull/{pr_number}/head")

    async def contains_commit(self, sha: str) -> bool:
        result = await run_process(
            ["git", "-C", str(self.path), "cat-file", "-e", f"{sha}^{{commit}}"], check=False
        )
        return result.exit_code == 0

    def clear_stale_locks(self) -> list[Path]:
        """Delete lock files left behind by a git process that did not exit cleanly.

        Only safe while holding the repository lease: no other git process of
        ours can be running against this clone then.
        """
        git_dir = self.path / ".git"
        candidates = [git_dir / name for name in _STALE_LOCK_FILES]
        refs_dir = git_dir / "refs"
        if refs_dir.is_dir():
            candidates.extend(sorted(refs_dir.rglob("*.lock")))
        removed: list[Path] = []
        for lock_path in candidates:
            if lock_path.is_file():
                lock_path.unlink()
                removed.append(lock_path)
        if removed:
            log_event(
                LOGGER,
                "git_stale_locks_removed",
                path=self.path,
                count=len(removed),
                first=removed[0].name,
            )
        return removed

    async def checkout(self, sha: str) -> None:
        log_event(LOGGER, "git_checkout", path=self.path, sha=sha)
        self.clear_stale_locks()
        # No merge in progress is the common case; a failed abort is expected then.
        await _run_to_completion(
            run(["git", "-C", str(self.path), "merge", "--abort"], check=False)
        )
        await self._git_run("reset", "--hard")
        await self._git_run("clean", "-ffdx")
        await self._git_run("checkout", "--detach", "--force", sha)

    async def merge(self, sha: str) -> None:
        log_event(LOGGER, "git_merge", path=self.path, sha=sha)
        argv = [
            "git",
            "-C",
            str(self.path),
            "-c",
            f"user.name={self._git.author_name}",
            "-c",
            f"user.email={self._git.author_email}",
            "merge",
            "--no-edit",
            "--no-ff",
            sha,
        ]
        try:
            await _run_to_completion(run(argv))
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_merge_failed",
                path=self.path,
                sha=sha,
                exit_code=exc.result.exit_code,
            )
            raise MergeConflictError(f"Merging {sha} into {self.path} failed:\n{exc}") from exc

    async def _git_run(self, *args: str) -> str:
        return await self._run(["git", "-C", str(self.path), *args])

    async def _run(self, argv: list[str]) -> str:
        try:
            return await _run_to_completion(run(argv))
        except CommandError as exc:
            raise RepositoryError(str(exc)) from exc


class RepositoryManager:
    """Owns one persistent local clone per remote repository.

    Clones live under ``repos_dir/<owner>/<name>`` and are reused across leases.
    """

    def __init__(self, repos_dir: Path, git: GitConfig | None = None) -> None:
        self.repos_dir = repos_dir
        self._git = git or GitConfig()
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._repositories: dict[tuple[str, str], Repository] = {}

    def repository_path(self, owner: str, name: str) -> Path:
        return self.repos_dir / owner / name

    @asynccontextmanager
    async def lease(
        self, owner: str, name: str, remote_url: str | None = None
    ) -> AsyncIterator[Repository]:
        identity = (owner, name)
        # setdefault has no await point, so two tasks always share one lock.
        lock = self._locks.setdefault(identity, asyncio.Lock())
        log_event(LOGGER, "repository_lease_waiting", owner=owner, name=name)
        async with lock:
            log_event(LOGGER, "repository_lease_acquired", owner=owner, name=name)
            try:
                repo = self._repositories.get(identity)
                if repo is None:
                    repo = Repository(
                        self.repository_path(owner, name),
                        remote_url or f"https://github.com/{owner}/{name}.git",
                        self._git,
                    )
                    self._repositories[identity] = repo
                elif remote_url:
                    repo.remote_url = remote_url
                await repo.ensure_cloned()
                yield repo
            finally:
                log_event(LOGGER, "repository_lease_released", owner=owner, name=name)

    def is_leased(self, owner: str, name: str) -> bool:
        lock = self._locks.get((owner, name))
        return lock is not None and lock.locked()


async def _run_to_completion(awaitable: Awaitable[T]) -> T:
    """Await a git command without letting cancellation kill it midway.

    A git process killed partway through leaves lock files and a half-written
    index behind. On cancellation the command is allowed to finish and the
    cancellation is re-raised afterwards.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        while not task.done():
            try:
                await asyncio.wait([task])
            except asyncio.CancelledError:
                continue
        if not task.cancelled() and task.exception() is not None:
            log_event(
                LOGGER,
                "git_command_failed_after_cancel",
                error_type=type(task.exception()).__name__,
            )
        raise
