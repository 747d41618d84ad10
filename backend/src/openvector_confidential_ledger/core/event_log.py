"""Implements the append-only ledger event log.

Every state changing entry point of the engine appends one LedgerEvent of
(operation, arguments, resulting state delta). Replaying the log in order
rebuilds all component stores, which makes it the audit trail of who was
granted or disclosed what and when.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import os
import time
from threading import Lock
from typing import Any, Callable, Dict, Iterator, List, TextIO

from pydantic import ValidationError

from openvector_confidential_ledger.common.types import LedgerEvent

EventSink = Callable[[str, Dict[str, Any], Dict[str, Any]], None]


def discard_event(
    operation: str, arguments: Dict[str, Any], delta: Dict[str, Any]
) -> None:
    pass


class EventLogError(Exception):
    """Raised when the event log cannot be read or written."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class EventLog(ABC):
    """Append-only sequence of ledger events."""

    __slots__ = ("_lock", "_next_sequence")

    _lock: Lock
    _next_sequence: int

    def __init__(self) -> None:
        self._lock = Lock()
        self._next_sequence = 0

    def append(
        self, operation: str, arguments: Dict[str, Any], delta: Dict[str, Any]
    ) -> LedgerEvent:
        """Appends an event, assigning the next sequence number."""
        with self._lock:
            event = LedgerEvent(
                sequence=self._next_sequence,
                timestamp=time.time(),
                operation=operation,
                arguments=arguments,
                delta=delta,
            )
            self._write(event)
            self._next_sequence += 1
            return event

    def __iter__(self) -> Iterator[LedgerEvent]:
        return iter(self.events())

    def __len__(self) -> int:
        return self._next_sequence

    @abstractmethod
    def events(self) -> List[LedgerEvent]:
        """All events in sequence order"""
        pass

    @abstractmethod
    def _write(self, event: LedgerEvent) -> None:
        pass

    def close(self) -> None:
        pass


class MemoryEventLog(EventLog):
    __slots__ = ("_events",)

    _events: List[LedgerEvent]

    def __init__(self) -> None:
        super().__init__()
        self._events = []

    def events(self) -> List[LedgerEvent]:
        with self._lock:
            return list(self._events)

    def _write(self, event: LedgerEvent) -> None:
        self._events.append(event)


class FileEventLog(EventLog):
    """Event log stored as one json event per line.

    Events are only ever appended to the end of the file and flushed right
    away, an existing line is never rewritten.
    """

    __slots__ = ("_file_path", "_file")

    _file_path: str
    _file: TextIO

    def __init__(self, file_path: str) -> None:
        super().__init__()
        self._file_path = file_path
        if not os.path.exists(file_path):
            raise EventLogError(f"Event log {file_path} does not exist")
        self._file = open(file_path, "a+", encoding="utf-8")
        self._next_sequence = len(self._read_all())

    def events(self) -> List[LedgerEvent]:
        with self._lock:
            return self._read_all()

    def _read_all(self) -> List[LedgerEvent]:
        self._file.seek(0)
        events: List[LedgerEvent] = []
        for line_number, line in enumerate(self._file):
            line = line.strip()
            if line == "":
                continue
            try:
                event = LedgerEvent.model_validate_json(line)
            except ValidationError as e:
                raise EventLogError(f"Invalid event on line {line_number + 1}") from e
            if event.sequence != len(events):
                raise EventLogError(
                    f"Out of order event {event.sequence} on line {line_number + 1}"
                )
            events.append(event)
        return events

    def _write(self, event: LedgerEvent) -> None:
        self._file.seek(0, 2)
        self._file.write(event.model_dump_json() + "\n")
        self._file.flush()

    def close(self) -> None:
        self._file.close()

    @classmethod
    def create(cls, file_path: str) -> FileEventLog:
        """Creates an empty event log file and opens it, an existing log is never replaced."""
        if os.path.exists(file_path):
            raise EventLogError(f"Event log {file_path} already exists")
        with open(file_path, "w", encoding="utf-8") as file:
            file.write("")
        return cls(file_path)
