"""Run store and event publisher that keep everything in memory."""

from __future__ import annotations

import uuid

from skillrun.models import (
    ActionRecord,
    EventPublisher,
    ExecutionEvent,
    ExecutionSession,
    RunStore,
    StoreError,
)


class InMemoryRunStore(RunStore):
    def __init__(self) -> None:
        self._runs: dict[uuid.UUID, ExecutionSession] = {}
        self._actions: dict[uuid.UUID, ActionRecord] = {}

    def create_run(self, session: ExecutionSession) -> None:
        self._runs[session.id] = session

    def save_run(self, session: ExecutionSession) -> None:
        self._runs[session.id] = session

    def load_run(self, run_id: uuid.UUID) -> ExecutionSession:
        try:
            return self._runs[run_id]
        except KeyError:
            raise StoreError(f"run {run_id} not found") from None

    def list_runs(self) -> list[uuid.UUID]:
        return sorted(self._runs)

    def save_action(self, action: ActionRecord) -> None:
        self._actions[action.request.id] = action

    def load_action(self, action_id: uuid.UUID) -> ActionRecord:
        try:
            return self._actions[action_id]
        except KeyError:
            raise StoreError(f"action {action_id} not found") from None

    def list_actions(self) -> list[uuid.UUID]:
        return sorted(self._actions)


class RecordingEventPublisher(EventPublisher):
    """Keeps every published event in order."""

    def __init__(self) -> None:
        self._events: list[ExecutionEvent] = []

    @property
    def events(self) -> tuple[ExecutionEvent, ...]:
        return tuple(self._events)

    def publish(self, event: ExecutionEvent) -> None:
        self._events.append(event)