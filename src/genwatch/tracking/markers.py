"""Durable "already notified" markers.

A marker records that a one-shot notification was emitted for a job
transition (for example ``("job-1", "completed")``). The aggregator checks the
marker before emitting, so a reload or a second tracking session for the same
owner never replays a celebration.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Protocol

from genwatch.core.logging import get_logger

_logger = get_logger("tracking.markers")


class MarkerStore(Protocol):
    """Set of (job_id, transition) pairs for one owner."""

    def has(self, job_id: str, transition: str) -> bool: ...

    def add(self, job_id: str, transition: str) -> None: ...

    def discard_job(self, job_id: str) -> None: ...


class MemoryMarkerStore:
    """Markers kept for the lifetime of the process."""

    def __init__(self) -> None:
        self._markers: dict[str, set[str]] = {}

    def has(self, job_id: str, transition: str) -> bool:
        return transition in self._markers.get(job_id, ())

    def add(self, job_id: str, transition: str) -> None:
        self._markers.setdefault(job_id, set()).add(transition)

    def discard_job(self, job_id: str) -> None:
        self._markers.pop(job_id, None)

    def __len__(self) -> int:
        return sum(len(t) for t in self._markers.values())


class JsonMarkerStore(MemoryMarkerStore):
    """Markers persisted to a JSON file, one section per owner.

    File layout::

        {"user-42": {"job-1": ["completed"], "job-7": ["failed"]}}

    The file is rewritten atomically (temp file + rename) on every change.
    A missing or corrupted file starts an empty marker set.
    """

    def __init__(self, path: Path, owner_id: str) -> None:
        super().__init__()
        self.path = Path(path).expanduser()
        self.owner_id = owner_id
        self._others: dict[str, dict[str, list[str]]] = {}
        self._load()

    def add(self, job_id: str, transition: str) -> None:
        if self.has(job_id, transition):
            return
        super().add(job_id, transition)
        self._save()

    def discard_job(self, job_id: str) -> None:
        if job_id not in self._markers:
            return
        super().discard_job(job_id)
        self._save()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("marker file must hold a JSON object")
        except (json.JSONDecodeError, ValueError, OSError) as e:
            _logger.warning("markers.load_failed", path=str(self.path), error=str(e))
            return

        for owner, jobs in data.items():
            if owner == self.owner_id:
                self._markers = {job_id: set(ts) for job_id, ts in jobs.items()}
            else:
                self._others[owner] = jobs
        _logger.debug("markers.loaded", path=str(self.path), count=len(self))

    def _save(self) -> None:
        data = dict(self._others)
        data[self.owner_id] = {
            job_id: sorted(transitions)
            for job_id, transitions in self._markers.items()
            if transitions
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self.path.with_suffix(".json.tmp")
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            temp_file.rename(self.path)
        except OSError as e:
            # Markers stay correct in memory; only durability is lost
            _logger.warning("markers.save_failed", path=str(self.path), error=str(e))


__all__ = ["JsonMarkerStore", "MarkerStore", "MemoryMarkerStore"]
