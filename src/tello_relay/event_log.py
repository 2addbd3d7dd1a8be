"""Relay lifecycle events kept in memory and mirrored to a JSON-lines file."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

EVENT_CATEGORIES = ("system", "device", "pipeline", "recording")


@dataclass(frozen=True, slots=True)
class RelayEvent:
    seq: int
    timestamp: float
    category: str
    event: str
    message: str
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        if not self.metadata:
            del payload["metadata"]
        return payload

    @classmethod
    def from_payload(cls, payload: object, seq: int) -> "RelayEvent | None":
        """Rebuild an event read back from disk, renumbered with ``seq``."""

        if not isinstance(payload, Mapping):
            return None
        event, message = payload.get("event"), payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        try:
            timestamp = float(payload.get("timestamp", 0.0))
        except (TypeError, ValueError):
            timestamp = 0.0
        metadata = payload.get("metadata")
        return cls(
            seq=seq,
            timestamp=timestamp,
            category=_category(payload.get("category")),
            event=event,
            message=message,
            metadata=dict(metadata) if isinstance(metadata, Mapping) else None,
        )


def _category(value: object) -> str:
    return value if value in EVENT_CATEGORIES else "system"


class EventLog:
    """Bounded event history; sequence numbers let readers poll for new entries."""

    def __init__(self, path: Path | str | None = None, *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._entries: deque[RelayEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._seq = 0
        self._path = Path(path) if path is not None else None
        if self._path is not None:
            self._restore(self._path)

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def last_seq(self) -> int:
        return self._seq

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        metadata: Mapping[str, object | None] | None = None,
    ) -> RelayEvent:
        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        with self._lock:
            self._seq += 1
            entry = RelayEvent(
                self._seq, time.time(), _category(category), event, message, cleaned or None
            )
            self._entries.append(entry)
            self._persist(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
        since: int | None = None,
    ) -> list[RelayEvent]:
        """Return recent events, oldest first.

        ``since`` keeps only events with a larger sequence number, and
        ``limit`` keeps the newest ``limit`` of what remains.
        """

        with self._lock:
            entries = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category]
        if since is not None:
            entries = [entry for entry in entries if entry.seq > since]
        if limit is not None:
            entries = entries[-max(1, int(limit)) :]
        return entries

    def _restore(self, path: Path) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            lines = path.read_text(encoding="utf-8").splitlines() if path.exists() else []
        except OSError as exc:  # pragma: no cover - filesystem errors are rare
            logger.warning("Event log unavailable at %s: %s", path, exc)
            self._path = None
            return
        for line in lines:
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = RelayEvent.from_payload(payload, self._seq + 1)
            if entry is not None:
                self._seq = entry.seq
                self._entries.append(entry)

    def _persist(self, entry: RelayEvent) -> None:
        if self._path is None:
            return
        line = json.dumps(entry.to_dict(), separators=(",", ":"), default=str)
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:  # pragma: no cover - best effort
            logger.warning("Unable to persist relay event: %s", exc)


__all__ = ["EVENT_CATEGORIES", "EventLog", "RelayEvent"]
