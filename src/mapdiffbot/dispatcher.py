from __future__ import annotations

import logging

from mapdiffbot.config import SecretStore
from mapdiffbot.coordinator import BuildCoordinator, OperationOutcome
from mapdiffbot.models import SUPPORTED_ACTIONS, parse_pull_request_event
from mapdiffbot.observability import log_event


LOGGER = logging.getLogger("mapdiffbot.dispatcher")


class UnsupportedActionError(RuntimeError):
    """The pull request event carries an action this bot does not handle."""

    def __init__(self, action: str) -> None:
        super().__init__(f"Unsupported pull_request action: {action!r}")
        self.action = action


class PullRequestDispatcher:
    event_type = "pull_request"

    def __init__(self, coordinator: BuildCoordinator) -> None:
        self._coordinator = coordinator

    async def run(self, payload: dict[str, object], secrets: SecretStore) -> OperationOutcome:
        event = parse_pull_request_event(payload)
        if event.action not in SUPPORTED_ACTIONS:
            log_event(
                LOGGER,
                "event_rejected",
                action=event.action,
                pr_number=event.number,
                repo_full_name=event.repository.full_name,
            )
            raise UnsupportedActionError(event.action)
        log_event(
            LOGGER,
            "event_dispatched",
            action=event.action,
            pr_number=event.number,
            repo_full_name=event.repository.full_name,
        )
        return await self._coordinator.handle_pull_request_event(event, secrets)
