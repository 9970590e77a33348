from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
import logging
import shutil
from typing import Literal, Protocol

from mapdiffbot.config import ACCESS_TOKEN_KEY, AppConfig, SecretStore
from mapdiffbot.diff_generator import SNAPSHOT_SUFFIX, DiffGenerator
from mapdiffbot.git_ops import Repository, RepositoryManager
from mapdiffbot.github_gateway import GitHubGateway
from mapdiffbot.models import MapDiff, OperationKey, PullRequestEvent
from mapdiffbot.observability import log_event, logging_operation_context
from mapdiffbot.publisher import publish_diffs
from mapdiffbot.uploader import FileUploader


LOGGER = logging.getLogger("mapdiffbot.coordinator")

OperationOutcome = Literal["published", "no_diffs", "not_mergeable", "superseded"]


class PullRequestHost(Protocol):
    async def get_pull_request_mergeable(self, pr_number: int) -> bool | None: ...

    async def list_changed_map_files(self, pr_number: int, extension: str) -> tuple[str, ...]: ...

    async def upsert_singleton_comment(self, issue_number: int, body: str) -> None: ...


HostFactory = Callable[[str, str, str], PullRequestHost]


@dataclass(eq=False)
class _Operation:
    key: OperationKey
    task: asyncio.Task[OperationOutcome] | None = None
    diffs: list[MapDiff] = field(default_factory=list)
    superseded: bool = False


class OperationRegistry:
    """In-flight operations keyed by pull request.

    ``install`` cancels and replaces the current entry in one step under the
    lock, and ``remove`` only drops the entry if it is still the caller's.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._operations: dict[OperationKey, _Operation] = {}

    async def install(self, operation: _Operation) -> _Operation | None:
        async with self._lock:
            previous = self._operations.get(operation.key)
            if previous is not None:
                previous.superseded = True
                if previous.task is not None:
                    previous.task.cancel()
            self._operations[operation.key] = operation
            return previous

    async def remove(self, operation: _Operation) -> bool:
        async with self._lock:
            if self._operations.get(operation.key) is not operation:
                return False
            del self._operations[operation.key]
            return True

    def current(self, key: OperationKey) -> _Operation | None:
        return self._operations.get(key)

    def keys(self) -> tuple[OperationKey, ...]:
        return tuple(self._operations)

    def operations(self) -> tuple[_Operation, ...]:
        return tuple(self._operations.values())


class BuildCoordinator:
    def __init__(
        self,
        config: AppConfig,
        *,
        repositories: RepositoryManager,
        generator: DiffGenerator,
        uploader: FileUploader,
        host_factory: HostFactory = GitHubGateway,
    ) -> None:
        self._config = config
        self._repositories = repositories
        self._generator = generator
        self._uploader = uploader
        self._host_factory = host_factory
        self._registry = OperationRegistry()

    def running_keys(self) -> tuple[OperationKey, ...]:
        return self._registry.keys()

    async def handle_pull_request_event(
        self, event: PullRequestEvent, secrets: SecretStore
    ) -> OperationOutcome:
        """Render, upload and publish map diffs for one pull request event.

        A newer event for the same pull request cancels this one, which then
        returns ``"superseded"`` without publishing. Cancelling the caller
        cancels the operation as well.
        """
        operation = _Operation(key=event.key)
        # The task body cannot start before the next suspension point, so it is
        # always registered before it runs.
        operation.task = asyncio.create_task(
            self._run_operation(operation, event, secrets),
            name=f"mapdiff:{operation.key}",
        )
        previous = await self._registry.install(operation)
        if previous is not None:
            log_event(
                LOGGER,
                "operation_replaced",
                operation_key=str(operation.key),
            )
        try:
            return await operation.task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            caller_cancelled = current is not None and current.cancelling() > 0
            if operation.superseded and not caller_cancelled:
                return "superseded"
            raise
        finally:
            # A task cancelled before its first step never runs its own cleanup.
            await self._registry.remove(operation)

    async def shutdown(self) -> None:
        operations = self._registry.operations()
        tasks = [op.task for op in operations if op.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log_event(LOGGER, "coordinator_shutdown", cancelled_count=len(tasks))

    async def _run_operation(
        self, operation: _Operation, event: PullRequestEvent, secrets: SecretStore
    ) -> OperationOutcome:
        with logging_operation_context(str(operation.key)):
            log_event(
                LOGGER,
                "operation_started",
                action=event.action,
                base_sha=event.base_sha,
                head_sha=event.head_sha,
            )
            try:
                outcome = await self._generate_and_publish(operation, event, secrets)
            except asyncio.CancelledError:
                log_event(
                    LOGGER,
                    "operation_superseded" if operation.superseded else "operation_cancelled",
                    diff_count=len(operation.diffs),
                )
                raise
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "operation_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            finally:
                await self._registry.remove(operation)
            log_event(LOGGER, "operation_completed", outcome=outcome)
            return outcome

    async def _generate_and_publish(
        self, operation: _Operation, event: PullRequestEvent, secrets: SecretStore
    ) -> OperationOutcome:
        repo_ref = event.repository
        token = await secrets.get_secret(ACCESS_TOKEN_KEY)
        host = self._host_factory(repo_ref.owner, repo_ref.name, token)

        mergeable = await self._resolve_mergeable(event, host)
        if mergeable is not True:
            log_event(LOGGER, "operation_not_mergeable", mergeable=mergeable)
            return "not_mergeable"

        map_files = await host.list_changed_map_files(
            event.number, self._config.runtime.map_extension
        )
        if not map_files:
            log_event(LOGGER, "operation_no_map_changes")
            return "no_diffs"

        output_dir = self._config.runtime.output_dir / operation.key.relative_dir
        async with self._repositories.lease(
            repo_ref.owner, repo_ref.name, repo_ref.clone_url
        ) as repo:
            if not await repo.contains_commit(event.base_sha):
                await repo.fetch()
            await repo.fetch_pull_request(event.number)
            _reset_directory(output_dir)

            for relative_path in map_files:
                diff = await self._diff_one_file(repo, event, relative_path, output_dir)
                if diff is not None:
                    operation.diffs.append(diff)

        if not operation.diffs:
            log_event(LOGGER, "operation_no_diffs", map_file_count=len(map_files))
            return "no_diffs"

        await publish_diffs(operation.diffs, secrets, self._uploader, host, event.number)
        return "published"

    async def _resolve_mergeable(
        self, event: PullRequestEvent, host: PullRequestHost
    ) -> bool | None:
        mergeable = event.mergeable
        attempts = 0
        while mergeable is None and attempts < self._config.runtime.mergeable_poll_attempts:
            attempts += 1
            await asyncio.sleep(self._config.runtime.mergeable_poll_delay_seconds)
            mergeable = await host.get_pull_request_mergeable(event.number)
            log_event(LOGGER, "mergeable_polled", attempt=attempts, mergeable=mergeable)
        return mergeable

    async def _diff_one_file(
        self,
        repo: Repository,
        event: PullRequestEvent,
        relative_path: str,
        output_dir: Path,
    ) -> MapDiff | None:
        await repo.checkout(event.base_sha)
        map_path = repo.path / relative_path
        before_path: Path | None = None
        if map_path.is_file():
            before_path = map_path.with_name(map_path.name + SNAPSHOT_SUFFIX)
            shutil.copyfile(map_path, before_path)

        await repo.merge(event.head_sha)
        after_path = map_path if map_path.is_file() else None
        if before_path is None and after_path is None:
            log_event(LOGGER, "map_file_skipped", path=relative_path, reason="absent_on_both_sides")
            return None
        return await self._generator.generate_diff(before_path, after_path, repo.path, output_dir)


def _reset_directory(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)
