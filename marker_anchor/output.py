from __future__ import annotations

import csv
import io
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from marker_pipeline.mp_types import Pose

HEADER = [
    "recorded_at",
    "frame_seq", "marker_id",
    "rvec_x", "rvec_y", "rvec_z",
    "tvec_x", "tvec_y", "tvec_z",
    "qx", "qy", "qz", "qw",
]


def pose_row(recorded_at: float, frame_seq: int, marker_id: int, pose: Pose) -> list:
    q = pose.to_quaternion()
    return [
        f"{recorded_at:.6f}",
        frame_seq, marker_id,
        *pose.rvec.tolist(),
        *pose.tvec.tolist(),
        *q.as_tuple(),
    ]


def to_csv_line(recorded_at: float, frame_seq: int, marker_id: int, pose: Pose) -> str:
    buf = io.StringIO()
    csv.writer(buf).writerow(pose_row(recorded_at, frame_seq, marker_id, pose))
    return buf.getvalue().strip()


class OutputSink(ABC):
    @abstractmethod
    def open(self) -> None: ...

    @abstractmethod
    def write_pose(self, recorded_at: float, frame_seq: int, marker_id: int, pose: Pose) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


class CsvPoseOutput(OutputSink):
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.rows = 0
        self._fh = None
        self._w = None

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.path.open("w", newline="", encoding="utf-8")
        self._w = csv.writer(self._fh)
        self._w.writerow(HEADER)

    def write_pose(self, recorded_at, frame_seq, marker_id, pose) -> None:
        if self._w is None:
            return
        self._w.writerow(pose_row(recorded_at, frame_seq, marker_id, pose))
        self.rows += 1

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
            self._w = None


class MqttPoseOutput(OutputSink):
    """Publishes one CSV line per pose to an MQTT topic."""

    def __init__(
        self,
        host: str,
        topic: str = "markers/poses",
        port: int = 1883,
        keepalive: int = 60,
        client: Optional[Any] = None,
    ):
        self.host = host
        self.topic = topic
        self.port = port
        self.keepalive = keepalive
        self.client = client
        self.published = 0

    def open(self) -> None:
        if self.client is None:
            import paho.mqtt.client as mqtt

            self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self.client.connect(self.host, self.port, self.keepalive)
        self.client.loop_start()

    def write_pose(self, recorded_at, frame_seq, marker_id, pose) -> None:
        if self.client is None:
            return
        self.client.publish(self.topic, to_csv_line(recorded_at, frame_seq, marker_id, pose))
        self.published += 1

    def close(self) -> None:
        if self.client is not None:
            self.client.loop_stop()
            self.client.disconnect()
            self.client = None


class NullOutput(OutputSink):
    def open(self) -> None:
        return None

    def write_pose(self, recorded_at, frame_seq, marker_id, pose) -> None:
        return None

    def close(self) -> None:
        return None
