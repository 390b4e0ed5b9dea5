"""Bounded event history with query, clear and JSON/CSV/XML export."""

import csv
import fnmatch
import json
import logging
import threading
import xml.etree.ElementTree as ET
from collections import deque
from pathlib import Path
from typing import Any, Literal

from aither_core.comms.models import Event

logger = logging.getLogger(__name__)

ExportFormat = Literal["json", "csv", "xml"]

_FIELDS = [
    "id",
    "name",
    "channel",
    "timestamp",
    "source_module",
    "source_command",
    "source_user",
    "source_machine",
]


class EventHistory:
    """FIFO ring buffer of persisted events. Oldest entries are evicted at capacity."""

    def __init__(self, max_size: int = 1000) -> None:
        self._events: deque[Event] = deque(maxlen=max_size)
        self._lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._events.maxlen or 0

    def append(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def query(
        self,
        name: str | None = None,
        channel: str | None = None,
        since: float | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """Events in insertion order. name accepts '*' wildcards; limit keeps the newest."""
        with self._lock:
            events = list(self._events)
        result = [e for e in events if _selected(e, name, channel)]
        if since is not None:
            result = [e for e in result if e.timestamp >= since]
        if limit is not None:
            result = result[-limit:] if limit > 0 else []
        return result

    def clear(
        self,
        name: str | None = None,
        channel: str | None = None,
        older_than: float | None = None,
    ) -> int:
        """Remove matching events, keeping the rest in order. No filters clears everything."""
        with self._lock:
            kept: list[Event] = []
            removed = 0
            for e in self._events:
                old_enough = older_than is None or e.timestamp < older_than
                if old_enough and _selected(e, name, channel):
                    removed += 1
                else:
                    kept.append(e)
            self._events.clear()
            self._events.extend(kept)
        return removed

    def export(
        self,
        path: Path,
        fmt: ExportFormat = "json",
        include_data: bool = False,
        events: list[Event] | None = None,
    ) -> int:
        """Write history (or the given events) to path. Returns number of events written."""
        rows = [e.to_dict(include_data=include_data) for e in (events if events is not None else self.query())]
        path.parent.mkdir(parents=True, exist_ok=True)
        if fmt == "json":
            path.write_text(json.dumps(rows, indent=2, default=str), encoding="utf-8")
        elif fmt == "csv":
            _write_csv(path, rows, include_data)
        elif fmt == "xml":
            _write_xml(path, rows)
        else:
            raise ValueError(f"Unsupported export format: {fmt}")
        logger.info("Exported %d events to %s (%s)", len(rows), path, fmt)
        return len(rows)


def _selected(event: Event, name: str | None, channel: str | None) -> bool:
    if channel is not None and event.channel != channel:
        return False
    if name is not None and not fnmatch.fnmatchcase(event.name, name):
        return False
    return True


def _write_csv(path: Path, rows: list[dict[str, Any]], include_data: bool) -> None:
    fields = _FIELDS + (["data"] if include_data else [])
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fields)
        writer.writeheader()
        for row in rows:
            if include_data:
                row = {**row, "data": json.dumps(row.get("data"), default=str)}
            writer.writerow(row)


def _write_xml(path: Path, rows: list[dict[str, Any]]) -> None:
    root = ET.Element("Events")
    for row in rows:
        el = ET.SubElement(root, "Event", id=str(row["id"]))
        for key in _FIELDS[1:]:
            ET.SubElement(el, key).text = str(row.get(key, ""))
        if "data" in row:
            ET.SubElement(el, "data").text = json.dumps(row["data"], default=str)
    ET.ElementTree(root).write(path, encoding="utf-8", xml_declaration=True)
