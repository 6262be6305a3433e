"""Append-only, per-session event ledger.

Every fact that crosses an agent boundary goes through here. Within a
session the log assigns sequence numbers 1, 2, 3, ... with no gaps; that
sequence is the only ordering authority (timestamps are advisory).

Appending to a session that does not exist yet creates it. Reads on an
unknown session return an empty list. Re-appending an event whose
``event_id`` is already recorded is a no-op that returns the stored copy.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any

from roundtable.models import Event, EventType

logger = logging.getLogger(__name__)

MAX_READ_LIMIT = 100
SEQUENCE_ORIGIN = 1


class EventLogError(Exception):
    """Raised when the ledger cannot be read or written."""


@dataclass(frozen=True)
class EventPage:
    events: list[Event]
    total: int
    offset: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.events) < self.total


# Pruning strategies. None of them renumbers what is kept.

@dataclass(frozen=True)
class KeepLast:
    count: int


@dataclass(frozen=True)
class KeepTypes:
    types: frozenset[EventType]


@dataclass(frozen=True)
class KeepBefore:
    sequence: int


PruneStrategy = KeepLast | KeepTypes | KeepBefore


def _check_limit(limit: int) -> int:
    if limit <= 0:
        raise ValueError(f"limit must be positive, got {limit}")
    if limit > MAX_READ_LIMIT:
        raise ValueError(f"limit must be <= {MAX_READ_LIMIT}, got {limit}")
    return limit


def _apply_prune(events: list[Event], strategy: PruneStrategy) -> list[Event]:
    match strategy:
        case KeepLast(count=count):
            if count < 0:
                raise ValueError(f"count must be >= 0, got {count}")
            return events[-count:] if count else []
        case KeepTypes(types=types):
            return [e for e in events if e.type in types]
        case KeepBefore(sequence=sequence):
            return [e for e in events if e.sequence < sequence]
    raise TypeError(f"Unknown prune strategy: {strategy!r}")


class EventLog(ABC):
    """Storage contract for session events."""

    @abstractmethod
    def append(self, event: Event) -> Event:
        """Store ``event`` and return the copy carrying its assigned sequence.

        Raises:
            EventLogError: If the event could not be stored durably.
        """
        ...

    @abstractmethod
    def get_events(self, session_id: str) -> list[Event]:
        ...

    @abstractmethod
    def get_events_paginated(self, session_id: str, offset: int = 0, limit: int = 50) -> EventPage:
        ...

    @abstractmethod
    def get_events_by_type(
        self,
        session_id: str,
        types: Iterable[EventType],
        limit: int | None = None,
    ) -> list[Event]:
        """Events of the given types, oldest first. With ``limit``, the newest ``limit`` of them."""
        ...

    @abstractmethod
    def get_latest_events(self, session_id: str, n: int) -> list[Event]:
        ...

    @abstractmethod
    def get_events_after(self, session_id: str, sequence: int) -> list[Event]:
        ...

    @abstractmethod
    def prune(self, session_id: str, strategy: PruneStrategy) -> int:
        """Drop events per ``strategy``. Returns the number removed."""
        ...

    @abstractmethod
    def clear_session(self, session_id: str) -> None:
        ...

    @abstractmethod
    def has_session(self, session_id: str) -> bool:
        ...

    @abstractmethod
    def current_sequence(self, session_id: str) -> int:
        """Sequence of the last appended event, 0 if nothing was appended."""
        ...


class _SessionLedger:
    """One session's events plus its sequence counter."""

    def __init__(self) -> None:
        self.events: list[Event] = []
        self.last_sequence = SEQUENCE_ORIGIN - 1
        self.seen: dict[str, int] = {}  # event_id -> sequence, survives pruning


class MemoryEventLog(EventLog):
    """In-process event log. Safe for concurrent appends to different sessions."""

    def __init__(self) -> None:
        self._sessions: dict[str, _SessionLedger] = {}
        self._lock = threading.RLock()

    def _ledger(self, session_id: str) -> _SessionLedger | None:
        return self._sessions.get(session_id)

    def _ensure_ledger(self, session_id: str) -> _SessionLedger:
        ledger = self._sessions.get(session_id)
        if ledger is None:
            ledger = _SessionLedger()
            self._sessions[session_id] = ledger
            logger.debug("Session %s created in event log", session_id)
        return ledger

    def _persist_append(self, event: Event) -> None:
        """Hook for durable subclasses. Called before the event becomes visible."""

    def _persist_rewrite(self, session_id: str, ledger: _SessionLedger) -> None:
        """Hook for durable subclasses after a prune."""

    def _persist_clear(self, session_id: str) -> None:
        """Hook for durable subclasses after a clear."""

    def append(self, event: Event) -> Event:
        with self._lock:
            ledger = self._ensure_ledger(event.session_id)
            if event.event_id in ledger.seen:
                seq = ledger.seen[event.event_id]
                stored = next((e for e in ledger.events if e.sequence == seq), None)
                logger.debug("Duplicate append of %s ignored (seq %d)", event.event_id, seq)
                return stored if stored is not None else replace(event, sequence=seq)

            stored = replace(event, sequence=ledger.last_sequence + 1)
            try:
                self._persist_append(stored)
            except OSError as exc:
                raise EventLogError(f"Failed to append to session {event.session_id}: {exc}") from exc
            ledger.events.append(stored)
            ledger.last_sequence = stored.sequence
            ledger.seen[stored.event_id] = stored.sequence
            return stored

    def get_events(self, session_id: str) -> list[Event]:
        with self._lock:
            ledger = self._ledger(session_id)
            return list(ledger.events) if ledger else []

    def get_events_paginated(self, session_id: str, offset: int = 0, limit: int = 50) -> EventPage:
        _check_limit(limit)
        if offset < 0:
            raise ValueError(f"offset must be >= 0, got {offset}")
        events = self.get_events(session_id)
        return EventPage(
            events=events[offset:offset + limit],
            total=len(events),
            offset=offset,
            limit=limit,
        )

    def get_events_by_type(
        self,
        session_id: str,
        types: Iterable[EventType],
        limit: int | None = None,
    ) -> list[Event]:
        wanted = set(types)
        matched = [e for e in self.get_events(session_id) if e.type in wanted]
        if limit is not None:
            matched = matched[-_check_limit(limit):]
        return matched

    def get_latest_events(self, session_id: str, n: int) -> list[Event]:
        _check_limit(n)
        return self.get_events(session_id)[-n:]

    def get_events_after(self, session_id: str, sequence: int) -> list[Event]:
        return [e for e in self.get_events(session_id) if e.sequence > sequence]

    def prune(self, session_id: str, strategy: PruneStrategy) -> int:
        with self._lock:
            ledger = self._ledger(session_id)
            if ledger is None:
                return 0
            kept = _apply_prune(ledger.events, strategy)
            removed = len(ledger.events) - len(kept)
            if removed:
                previous = ledger.events
                ledger.events = kept
                try:
                    self._persist_rewrite(session_id, ledger)
                except OSError as exc:
                    ledger.events = previous
                    raise EventLogError(f"Failed to prune session {session_id}: {exc}") from exc
                logger.info("Pruned %d events from session %s", removed, session_id)
            return removed

    def clear_session(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
            try:
                self._persist_clear(session_id)
            except OSError as exc:
                raise EventLogError(f"Failed to clear session {session_id}: {exc}") from exc

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def current_sequence(self, session_id: str) -> int:
        with self._lock:
            ledger = self._ledger(session_id)
            return ledger.last_sequence if ledger else SEQUENCE_ORIGIN - 1


def event_to_dict(event: Event) -> dict[str, Any]:
    return {
        "event_id": event.event_id,
        "type": event.type.value,
        "speaker": event.speaker,
        "content": event.content,
        "timestamp": event.timestamp.isoformat(),
        "session_id": event.session_id,
        "sequence": event.sequence,
        "meta": event.meta,
    }


def event_from_dict(raw: dict[str, Any]) -> Event:
    return Event(
        event_id=raw["event_id"],
        type=EventType(raw["type"]),
        speaker=raw["speaker"],
        content=raw["content"],
        timestamp=datetime.fromisoformat(raw["timestamp"]),
        session_id=raw["session_id"],
        sequence=int(raw["sequence"]),
        meta=dict(raw.get("meta") or {}),
    )


class JsonlEventLog(MemoryEventLog):
    """Event log mirrored to one ``<session_id>.jsonl`` file per session.

    Each line is an event, except ``{"checkpoint": n}`` lines written after a
    prune so the sequence counter survives a reload.
    """

    def __init__(self, directory: Path) -> None:
        super().__init__()
        self._dir = Path(directory)
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise EventLogError(f"Cannot create event log directory {self._dir}: {exc}") from exc
        for path in sorted(self._dir.glob("*.jsonl")):
            self._load(path)

    def _path(self, session_id: str) -> Path:
        return self._dir / f"{session_id}.jsonl"

    def _load(self, path: Path) -> None:
        ledger = _SessionLedger()
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise EventLogError(f"Cannot read {path}: {exc}") from exc
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                raw = json.loads(line)
                if "checkpoint" in raw:
                    ledger.last_sequence = max(ledger.last_sequence, int(raw["checkpoint"]))
                    continue
                event = event_from_dict(raw)
            except (ValueError, KeyError, TypeError) as exc:
                raise EventLogError(f"Corrupt event log {path}:{lineno}: {exc}") from exc
            ledger.events.append(event)
            ledger.seen[event.event_id] = event.sequence
            ledger.last_sequence = max(ledger.last_sequence, event.sequence)
        self._sessions[path.stem] = ledger
        logger.debug("Loaded %d events for session %s", len(ledger.events), path.stem)

    def _persist_append(self, event: Event) -> None:
        with self._path(event.session_id).open("a", encoding="utf-8") as f:
            f.write(json.dumps(event_to_dict(event), ensure_ascii=False) + "\n")

    def _persist_rewrite(self, session_id: str, ledger: _SessionLedger) -> None:
        path = self._path(session_id)
        tmp = path.with_suffix(".jsonl.tmp")
        lines = [json.dumps(event_to_dict(e), ensure_ascii=False) for e in ledger.events]
        lines.append(json.dumps({"checkpoint": ledger.last_sequence}))
        tmp.write_text("\n".join(lines) + "\n", encoding="utf-8")
        tmp.replace(path)

    def _persist_clear(self, session_id: str) -> None:
        self._path(session_id).unlink(missing_ok=True)
