"""Run store and event log persisted as JSON files under a root directory."""

from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Any, Callable, TypeVar

from skillrun.models import (
    ActionRecord,
    EventPublisher,
    ExecutionEvent,
    ExecutionSession,
    RunStore,
    StoreError,
)

T = TypeVar("T")


class FileSystemLayout:
    """Paths of the on-disk layout; creating one creates its directories."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        for directory in (
            self.runs_dir(),
            self.orchestration_runs_dir(),
            self._system_actions_dir(),
            self._system_dir(),
        ):
            _create_dir_all(directory)

    def runs_dir(self) -> Path:
        return self.root / "runs"

    def orchestration_dir(self) -> Path:
        return self.root / "orchestration"

    def orchestration_runs_dir(self) -> Path:
        return self.orchestration_dir() / "runs"

    def _system_dir(self) -> Path:
        return self.root / "system"

    def _system_actions_dir(self) -> Path:
        return self._system_dir() / "actions"

    def _run_dir(self, run_id: uuid.UUID) -> Path:
        return self.runs_dir() / str(run_id)

    def _run_record_path(self, run_id: uuid.UUID) -> Path:
        return self._run_dir(run_id) / "run.json"

    def _system_action_path(self, action_id: uuid.UUID) -> Path:
        return self._system_actions_dir() / f"{action_id}.json"

    def _run_actions_dir(self, run_id: uuid.UUID) -> Path:
        return self._run_dir(run_id) / "actions"

    def _run_action_path(self, run_id: uuid.UUID, action_id: uuid.UUID) -> Path:
        return self._run_actions_dir(run_id) / f"{action_id}.json"

    def _system_events_path(self) -> Path:
        return self._system_dir() / "events.jsonl"

    def _run_events_path(self, run_id: uuid.UUID) -> Path:
        return self._run_dir(run_id) / "events.jsonl"


class FileSystemRunStore(RunStore):
    def __init__(self, root: str | Path) -> None:
        self.layout = FileSystemLayout(root)

    def create_run(self, session: ExecutionSession) -> None:
        self.save_run(session)

    def save_run(self, session: ExecutionSession) -> None:
        _create_dir_all(self.layout._run_dir(session.id))
        _create_dir_all(self.layout._run_actions_dir(session.id))
        _write_json(self.layout._run_record_path(session.id), session.to_dict())

    def load_run(self, run_id: uuid.UUID) -> ExecutionSession:
        return _read_json(self.layout._run_record_path(run_id), ExecutionSession.from_dict)

    def list_runs(self) -> list[uuid.UUID]:
        return _list_id_entries(self.layout.runs_dir())

    def save_action(self, action: ActionRecord) -> None:
        data = action.to_dict()
        _write_json(self.layout._system_action_path(action.request.id), data)
        _write_json(
            self.layout._run_action_path(action.request.run_id, action.request.id), data
        )

    def load_action(self, action_id: uuid.UUID) -> ActionRecord:
        return _read_json(self.layout._system_action_path(action_id), ActionRecord.from_dict)

    def list_actions(self) -> list[uuid.UUID]:
        return _list_id_entries(self.layout._system_actions_dir())


class FileSystemEventLog(EventPublisher):
    """Appends events to a system-wide log and to the run's own log."""

    def __init__(self, root: str | Path) -> None:
        self.layout = FileSystemLayout(root)

    def read_events(self) -> list[ExecutionEvent]:
        path = self.layout._system_events_path()
        if not path.exists():
            return []
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as error:
            raise StoreError(str(error)) from error
        events = []
        for line in content.splitlines():
            if not line.strip():
                continue
            try:
                events.append(ExecutionEvent.from_dict(json.loads(line)))
            except (ValueError, TypeError) as error:
                raise StoreError(str(error)) from error
        return events

    def publish(self, event: ExecutionEvent) -> None:
        try:
            line = json.dumps(event.to_dict())
        except (TypeError, ValueError) as error:
            raise StoreError(str(error)) from error
        _append_line(self.layout._system_events_path(), line)
        _append_line(self.layout._run_events_path(event.run_id), line)


def _list_id_entries(directory: Path) -> list[uuid.UUID]:
    if not directory.exists():
        return []
    try:
        names = sorted(entry.name for entry in directory.iterdir())
    except OSError as error:
        raise StoreError(str(error)) from error
    values = []
    for name in names:
        raw_id = name.split(".")[0]
        try:
            values.append(uuid.UUID(raw_id))
        except ValueError:
            raise StoreError(f"invalid id entry '{name}'") from None
    return values


def _write_json(path: Path, value: Any) -> None:
    _create_dir_all(path.parent)
    try:
        text = json.dumps(value, indent=2)
    except (TypeError, ValueError) as error:
        raise StoreError(str(error)) from error
    try:
        path.write_text(text, encoding="utf-8")
    except OSError as error:
        raise StoreError(str(error)) from error


def _read_json(path: Path, decode: Callable[[Any], T]) -> T:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as error:
        raise StoreError(str(error)) from error
    try:
        return decode(json.loads(text))
    except (ValueError, TypeError, KeyError) as error:
        raise StoreError(str(error)) from error


def _append_line(path: Path, line: str) -> None:
    _create_dir_all(path.parent)
    try:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
    except OSError as error:
        raise StoreError(str(error)) from error


def _create_dir_all(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise StoreError(str(error)) from error