"""Anchor lifecycle: keep one virtual anchor per detected marker.

Each successful FrameResult is reconciled against the active anchors:
new markers get an anchor (and optional content), still-visible markers have
their anchor moved, and markers missing from the result are removed, after
`grace_results` consecutive misses.
"""

from __future__ import annotations

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np

from marker_pipeline.errors import AnchorHostError, AnchorStateError
from marker_pipeline.mp_types import Pose

from .worker import FrameResult


class AnchorHost(ABC):
    @abstractmethod
    def create_anchor(self, transform: np.ndarray) -> Any: ...

    @abstractmethod
    def update_anchor(self, handle: Any, transform: np.ndarray) -> None: ...

    @abstractmethod
    def remove_anchor(self, handle: Any) -> None: ...

    @abstractmethod
    def attach_content(
        self, handle: Any, content_ref: str, scale: float, local_offset: tuple[float, float, float]
    ) -> Any: ...


class InMemoryAnchorHost(AnchorHost):
    """Keeps anchor transforms in a dict; used by the CLI and tests."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.anchors: dict[int, np.ndarray] = {}
        self.content: dict[int, tuple[str, float, tuple[float, float, float]]] = {}

    def create_anchor(self, transform: np.ndarray) -> int:
        handle = next(self._ids)
        self.anchors[handle] = np.array(transform, dtype=np.float64)
        return handle

    def update_anchor(self, handle: int, transform: np.ndarray) -> None:
        if handle not in self.anchors:
            raise KeyError(f"unknown anchor {handle}")
        self.anchors[handle] = np.array(transform, dtype=np.float64)

    def remove_anchor(self, handle: int) -> None:
        self.anchors.pop(handle, None)
        self.content.pop(handle, None)

    def attach_content(self, handle, content_ref, scale, local_offset):
        if handle not in self.anchors:
            raise KeyError(f"unknown anchor {handle}")
        self.content[handle] = (content_ref, scale, tuple(local_offset))
        return handle


@dataclass(frozen=True)
class ContentSpec:
    content_ref: str
    scale: float = 0.1
    local_offset: tuple[float, float, float] = (0.0, 0.0, 0.0)


@dataclass
class AnchorRecord:
    marker_id: int
    handle: Any
    content_handle: Any = None
    last_seen_seq: int = -1
    missed: int = 0


@dataclass
class ReconcileReport:
    created: list[int] = field(default_factory=list)
    updated: list[int] = field(default_factory=list)
    removed: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.removed)


class AnchorLifecycleManager:
    def __init__(
        self,
        host: AnchorHost,
        grace_results: int = 0,
        default_content: Optional[ContentSpec] = None,
        content_by_id: Optional[dict[int, ContentSpec]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if grace_results < 0:
            raise ValueError("grace_results must be >= 0")
        self.host = host
        self.grace_results = grace_results
        self.default_content = default_content
        self.content_by_id = dict(content_by_id or {})
        self.logger = logger or logging.getLogger(__name__)
        self._records: dict[int, AnchorRecord] = {}
        self._lock = threading.RLock()

    @property
    def active_ids(self) -> set[int]:
        with self._lock:
            return set(self._records)

    def records(self) -> dict[int, AnchorRecord]:
        with self._lock:
            return dict(self._records)

    def get(self, marker_id: int) -> Optional[AnchorRecord]:
        with self._lock:
            return self._records.get(marker_id)

    def _content_for(self, marker_id: int) -> Optional[ContentSpec]:
        return self.content_by_id.get(marker_id, self.default_content)

    def create(self, marker_id: int, pose: Pose, seq: int = -1) -> AnchorRecord:
        with self._lock:
            if marker_id in self._records:
                raise AnchorStateError(f"anchor for marker {marker_id} already active")
            try:
                handle = self.host.create_anchor(pose.as_matrix())
            except Exception as exc:
                raise AnchorHostError(f"create_anchor for marker {marker_id}: {exc}") from exc

            record = AnchorRecord(marker_id, handle, last_seen_seq=seq)
            spec = self._content_for(marker_id)
            if spec is not None:
                try:
                    record.content_handle = self.host.attach_content(
                        handle, spec.content_ref, spec.scale, spec.local_offset
                    )
                except Exception as exc:
                    # roll back so the id stays absent and is retried next time
                    self._remove_handle(marker_id, handle)
                    raise AnchorHostError(f"attach_content for marker {marker_id}: {exc}") from exc

            self._records[marker_id] = record
            self.logger.debug("anchor created marker=%d handle=%s", marker_id, handle)
            return record

    def update(self, marker_id: int, pose: Pose, seq: int = -1) -> AnchorRecord:
        with self._lock:
            record = self._records.get(marker_id)
            if record is None:
                raise AnchorStateError(f"no active anchor for marker {marker_id}")
            try:
                self.host.update_anchor(record.handle, pose.as_matrix())
            except Exception as exc:
                raise AnchorHostError(f"update_anchor for marker {marker_id}: {exc}") from exc
            record.last_seen_seq = seq
            record.missed = 0
            return record

    def remove(self, marker_id: int) -> bool:
        with self._lock:
            record = self._records.get(marker_id)
            if record is None:
                return False
            self._remove_handle(marker_id, record.handle)
            del self._records[marker_id]
            self.logger.debug("anchor removed marker=%d", marker_id)
            return True

    def _remove_handle(self, marker_id: int, handle: Any) -> None:
        try:
            self.host.remove_anchor(handle)
        except Exception as exc:
            raise AnchorHostError(f"remove_anchor for marker {marker_id}: {exc}") from exc

    def reconcile(self, result: FrameResult) -> ReconcileReport:
        report = ReconcileReport()
        if not result.ok:
            return report

        with self._lock:
            for marker_id, pose in result.poses.items():
                try:
                    if marker_id in self._records:
                        self.update(marker_id, pose, result.seq)
                        report.updated.append(marker_id)
                    else:
                        self.create(marker_id, pose, result.seq)
                        report.created.append(marker_id)
                except AnchorHostError as exc:
                    self.logger.warning("frame=%d %s", result.seq, exc)
                    report.failed[marker_id] = str(exc)

            for marker_id in [m for m in self._records if m not in result.poses]:
                record = self._records[marker_id]
                record.missed += 1
                if record.missed <= self.grace_results:
                    continue
                try:
                    self.remove(marker_id)
                    report.removed.append(marker_id)
                except AnchorHostError as exc:
                    record.missed -= 1
                    self.logger.warning("frame=%d %s", result.seq, exc)
                    report.failed[marker_id] = str(exc)

        if report.changed:
            self.logger.info(
                "frame=%d anchors +%s -%s active=%s",
                result.seq, report.created, report.removed, sorted(self.active_ids),
            )
        return report

    def clear(self) -> list[int]:
        """Remove every anchor; ids whose host removal fails stay active."""
        removed = []
        with self._lock:
            for marker_id in list(self._records):
                try:
                    self.remove(marker_id)
                    removed.append(marker_id)
                except AnchorHostError as exc:
                    self.logger.warning("clear: %s", exc)
        return removed
