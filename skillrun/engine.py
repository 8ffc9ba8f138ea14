"""An asynchronous engine that runs programs and dispatches their actions to a worker."""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Union

from skillrun.events import EventHub, EventSubscription
from skillrun.models import (
    ActionRequest,
    ActionResult,
    EventKind,
    EventPublisher,
    ExecutionEvent,
    ExecutionSession,
    ExecutionStatus,
    RunStore,
    StartExecutionRequest,
    StatusKind,
    StoreError,
)
from skillrun.run_executor import RunExecutor, RunExecutorError, RunTransition, TriggerKind

logger = logging.getLogger(__name__)

_CLOSED_MESSAGE = "execution engine is closed"


class ExecutionEngineError(Exception):
    """Raised when the engine cannot accept or process work."""


class EngineClosedError(ExecutionEngineError):
    """The engine has been closed and no longer accepts commands."""

    def __init__(self, message: str = _CLOSED_MESSAGE) -> None:
        super().__init__(message)


class UnknownRunError(ExecutionEngineError):
    """A run id that the engine does not know about."""

    def __init__(self, run_id: uuid.UUID) -> None:
        super().__init__(f"unknown run {run_id}")
        self.run_id = run_id


@contextmanager
def _engine_errors() -> Iterator[None]:
    try:
        yield
    except RunExecutorError as error:
        raise ExecutionEngineError(f"run executor error: {error}") from error
    except StoreError as error:
        raise ExecutionEngineError(f"store error: {error}") from error


class UpdateKind(str, enum.Enum):
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ActionExecutionUpdate:
    """Progress reported by an action worker; fields unused by a kind stay None."""

    kind: UpdateKind
    run_id: uuid.UUID | None = None
    action_id: uuid.UUID | None = None
    worker_id: str | None = None
    result: ActionResult | None = None
    message: str | None = None

    @staticmethod
    def claimed(run_id: uuid.UUID, action_id: uuid.UUID, worker_id: str) -> ActionExecutionUpdate:
        return ActionExecutionUpdate(
            UpdateKind.CLAIMED, run_id=run_id, action_id=action_id, worker_id=worker_id
        )

    @staticmethod
    def completed(result: ActionResult) -> ActionExecutionUpdate:
        return ActionExecutionUpdate(
            UpdateKind.COMPLETED, action_id=result.action_id, result=result
        )

    @staticmethod
    def failed(run_id: uuid.UUID, action_id: uuid.UUID, message: str) -> ActionExecutionUpdate:
        return ActionExecutionUpdate(
            UpdateKind.FAILED, run_id=run_id, action_id=action_id, message=message
        )


class ActionExecutor(ABC):
    """Carries out an action request and reports how it went."""

    @abstractmethod
    async def execute(self, action: ActionRequest) -> ActionExecutionUpdate:
        """Run the action and return a completed or failed update."""


class ActionWorker:
    """Takes queued actions one at a time, claims them and executes them."""

    def __init__(
        self,
        worker_id: str,
        executor: ActionExecutor,
        actions: asyncio.Queue,
        send_update: Callable[[ActionExecutionUpdate], None],
    ) -> None:
        self.worker_id = worker_id
        self._executor = executor
        self._actions = actions
        self._send_update = send_update

    async def run(self) -> None:
        while True:
            action: ActionRequest = await self._actions.get()
            self._send_update(
                ActionExecutionUpdate.claimed(action.run_id, action.id, self.worker_id)
            )
            try:
                update = await self._executor.execute(action)
            except asyncio.CancelledError:
                raise
            except Exception as error:  # an executor crash fails the action, not the worker
                update = ActionExecutionUpdate.failed(action.run_id, action.id, str(error))
            self._send_update(update)


@dataclass
class _Recover:
    events: list[ExecutionEvent]
    reply: asyncio.Future


@dataclass
class _Submit:
    request: StartExecutionRequest
    reply: asyncio.Future


@dataclass
class _Update:
    update: ActionExecutionUpdate


_Message = Union[_Recover, _Submit, _Update]


def _terminal_runs(events: Iterable[ExecutionEvent]) -> set[uuid.UUID]:
    return {
        event.run_id
        for event in events
        if event.kind in (EventKind.RUN_COMPLETED, EventKind.RUN_FAILED)
    }


class ExecutionEngine:
    """Serialises run transitions in one task and executes actions in another."""

    def __init__(
        self,
        run_executor: RunExecutor,
        store: RunStore,
        publisher: EventPublisher,
        action_executor: ActionExecutor,
        event_hub: EventHub,
        worker_id: str = "action-worker-1",
    ) -> None:
        self._run_executor = run_executor
        self._store = store
        self._publisher = publisher
        self._action_executor = action_executor
        self._event_hub = event_hub
        self._worker_id = worker_id
        self._run_statuses: dict[uuid.UUID, ExecutionStatus] = {}
        self._active_runs: set[uuid.UUID] = set()
        self._tasks: list[asyncio.Task] = []
        self._pending: set[asyncio.Future] = set()
        self._closed = False
        self._inbox: asyncio.Queue | None = None
        self._actions: asyncio.Queue | None = None

    async def __aenter__(self) -> ExecutionEngine:
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def start(self) -> None:
        """Start the background tasks; needs a running event loop."""
        if self._closed:
            raise EngineClosedError()
        if self._tasks:
            return
        self._inbox = asyncio.Queue()
        self._actions = asyncio.Queue()
        worker = ActionWorker(
            self._worker_id, self._action_executor, self._actions, self._deliver_update
        )
        self._tasks = [
            asyncio.create_task(worker.run()),
            asyncio.create_task(self._run()),
        ]

    async def close(self) -> None:
        """Stop the background tasks and fail any command still waiting."""
        if self._closed:
            return
        self._closed = True
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        for reply in self._pending:
            if not reply.done():
                reply.set_exception(EngineClosedError())
        self._pending.clear()

    def subscribe(self) -> EventSubscription:
        return self._event_hub.subscribe()

    async def recover_from_events(self, events: Iterable[ExecutionEvent]) -> None:
        """Re-enqueue the actions of runs that were waiting and never finished."""
        event_list = list(events)
        await self._call(lambda reply: _Recover(event_list, reply))

    async def submit(self, request: StartExecutionRequest) -> uuid.UUID:
        """Start a new run and return its id."""
        return await self._call(lambda reply: _Submit(request, reply))

    def run_status(self, run_id: uuid.UUID) -> ExecutionStatus | None:
        return self._run_statuses.get(run_id)

    def has_active_runs(self) -> bool:
        return bool(self._active_runs)

    async def _call(self, make: Callable[[asyncio.Future], _Message]) -> Any:
        if self._closed:
            raise EngineClosedError()
        self.start()
        reply = asyncio.get_running_loop().create_future()
        self._pending.add(reply)
        assert self._inbox is not None
        self._inbox.put_nowait(make(reply))
        try:
            return await reply
        finally:
            self._pending.discard(reply)

    def _deliver_update(self, update: ActionExecutionUpdate) -> None:
        if self._inbox is not None and not self._closed:
            self._inbox.put_nowait(_Update(update))

    async def _run(self) -> None:
        assert self._inbox is not None
        while True:
            message = await self._inbox.get()
            if isinstance(message, _Update):
                self._process_update(message.update)
                continue
            try:
                if isinstance(message, _Recover):
                    result = self._handle_recover(message.events)
                else:
                    result = self._handle_submit(message.request)
            except Exception as error:
                if not message.reply.done():
                    message.reply.set_exception(error)
            else:
                if not message.reply.done():
                    message.reply.set_result(result)

    def _process_update(self, update: ActionExecutionUpdate) -> None:
        try:
            self._handle_update(update)
        except ExecutionEngineError as error:
            logger.error("engine failed to process action update: %s", error)
            try:
                self._handle_update_error(update, error)
            except ExecutionEngineError as secondary:
                logger.error("engine failed to record action update failure: %s", secondary)

    def _handle_submit(self, request: StartExecutionRequest) -> uuid.UUID:
        run_id = uuid.uuid4()
        code_id = uuid.uuid4()
        with _engine_errors():
            transition = self._run_executor.start_run(request, run_id, code_id, uuid.uuid4)
        self._apply_transition(transition)
        return run_id

    def _handle_recover(self, events: list[ExecutionEvent]) -> None:
        terminal = _terminal_runs(events)
        with _engine_errors():
            for run_id in self._store.list_runs():
                session = self._store.load_run(run_id)
                self._record_status(session)
                if run_id in terminal:
                    continue
                if session.status.kind is StatusKind.WAITING_FOR_ACTION:
                    action = self._store.load_action(session.status.action_id)
                    self._enqueue(action.request)

    def _handle_update(self, update: ActionExecutionUpdate) -> None:
        with _engine_errors():
            if update.kind is UpdateKind.CLAIMED:
                self._publisher.publish(
                    ExecutionEvent(
                        EventKind.ACTION_CLAIMED,
                        run_id=update.run_id,
                        action_id=update.action_id,
                        worker_id=update.worker_id,
                    )
                )
            elif update.kind is UpdateKind.COMPLETED:
                result = update.result
                action = self._store.load_action(result.action_id)
                session = self._store.load_run(action.request.run_id)
                transition = self._run_executor.complete_action(
                    session, action.request, result, uuid.uuid4
                )
                self._apply_transition(transition)
            else:
                self._publish_action_failed(update.run_id, update.action_id, update.message)
                self._fail(update.run_id, update.message)

    def _handle_update_error(
        self, update: ActionExecutionUpdate, error: ExecutionEngineError
    ) -> None:
        message = str(error)
        with _engine_errors():
            if update.kind is UpdateKind.CLAIMED:
                self._publish_action_failed(update.run_id, update.action_id, message)
                self._fail(update.run_id, message)
            elif update.kind is UpdateKind.COMPLETED:
                action_id = update.result.action_id
                run_id = self._store.load_action(action_id).request.run_id
                self._publish_action_failed(run_id, action_id, message)
                self._fail(run_id, message)
            else:
                self._publish_action_failed(update.run_id, update.action_id, update.message)
                self._fail(update.run_id, message)

    def _publish_action_failed(
        self, run_id: uuid.UUID, action_id: uuid.UUID, message: str
    ) -> None:
        self._publisher.publish(
            ExecutionEvent(
                EventKind.ACTION_FAILED, run_id=run_id, action_id=action_id, message=message
            )
        )

    def _fail(self, run_id: uuid.UUID, message: str) -> None:
        session = self._store.load_run(run_id)
        self._apply_transition(self._run_executor.fail_run(session, message))

    def _enqueue(self, action: ActionRequest) -> None:
        if self._actions is None or self._closed:
            raise EngineClosedError()
        self._actions.put_nowait(action)

    def _record_status(self, session: ExecutionSession) -> None:
        self._run_statuses[session.id] = session.status
        if session.status.is_terminal():
            self._active_runs.discard(session.id)
        else:
            self._active_runs.add(session.id)

    def _apply_transition(self, transition: RunTransition) -> None:
        events = self._transition_events(transition)
        with _engine_errors():
            self._store.save_run(transition.session)
            for record in transition.action_records:
                self._store.save_action(record)
            if transition.action_to_enqueue is not None:
                self._enqueue(transition.action_to_enqueue)
            for event in events:
                self._publisher.publish(event)
        self._record_status(transition.session)

    @staticmethod
    def _transition_events(transition: RunTransition) -> list[ExecutionEvent]:
        run_id = transition.session.id
        events: list[ExecutionEvent] = []
        trigger = transition.trigger
        if trigger.kind is TriggerKind.STARTED:
            events.append(ExecutionEvent(EventKind.RUN_SUBMITTED, run_id=run_id))
            events.append(ExecutionEvent(EventKind.RUN_STARTED, run_id=run_id))
        elif trigger.kind is TriggerKind.RESUMED:
            events.append(
                ExecutionEvent(
                    EventKind.ACTION_COMPLETED,
                    run_id=run_id,
                    action_id=trigger.completed_action_id,
                )
            )
            events.append(ExecutionEvent(EventKind.RUN_RESUMED, run_id=run_id))

        if transition.action_to_enqueue is not None:
            events.append(
                ExecutionEvent(
                    EventKind.ACTION_ENQUEUED,
                    run_id=run_id,
                    action_id=transition.action_to_enqueue.id,
                )
            )

        status = transition.session.status
        if status.kind is StatusKind.COMPLETED:
            events.append(ExecutionEvent(EventKind.RUN_COMPLETED, run_id=run_id, value=status.value))
        elif status.kind is StatusKind.FAILED:
            events.append(
                ExecutionEvent(EventKind.RUN_FAILED, run_id=run_id, message=status.message)
            )
        return events