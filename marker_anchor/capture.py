from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod
from typing import Any, Sequence

import cv2
import numpy as np

from marker_pipeline.mp_types import Frame, PixelFormat
from marker_pipeline.synthetic import bgr_to_i420, render_marker_scene


class BaseCapture(ABC):
    @abstractmethod
    def start(self) -> None: ...

    @abstractmethod
    def next_frame(self) -> Frame | None: ...

    @abstractmethod
    def stop(self) -> None: ...


class USBOpenCVCapture(BaseCapture):
    def __init__(self, device: int | str, fps: int = 30, width: int = 640, height: int = 480):
        self.device = device
        self.fps = fps
        self.width = width
        self.height = height
        self.cap: Any = None
        self.seq = 0

    def start(self) -> None:
        if isinstance(self.device, int):
            self.cap = cv2.VideoCapture(self.device, cv2.CAP_V4L2)
        else:
            dev_str = str(self.device)
            match = re.match(r"^/dev/video(\d+)$", dev_str)
            if match:
                self.cap = cv2.VideoCapture(int(match.group(1)), cv2.CAP_V4L2)
            else:
                self.cap = cv2.VideoCapture(dev_str)

        self.cap.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*"MJPG"))
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.cap.set(cv2.CAP_PROP_FPS, self.fps)

        if not self.cap.isOpened():
            raise RuntimeError(f"Failed to open camera: {self.device}")

    def next_frame(self) -> Frame | None:
        ok, img = self.cap.read()
        if not ok:
            return None
        self.seq += 1
        h, w = img.shape[:2]
        return Frame(self.seq, time.time(), img, w, h, PixelFormat.BGR8.value)

    def stop(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None


class SyntheticCapture(BaseCapture):
    """
    Renders a fixed marker scene and replays it, as planar I420 like a phone
    camera would deliver. fps <= 0 means no pacing.
    """

    def __init__(
        self,
        placements: Sequence[tuple[int, int, int]] = ((5, 100, 100),),
        fps: int = 0,
        width: int = 640,
        height: int = 480,
        size_px: int = 240,
        dict_name: str = "4x4_50",
        pixel_format: str = PixelFormat.LUMA_CHROMA_420.value,
    ):
        self.placements = list(placements)
        self.fps = fps
        self.width = width
        self.height = height
        self.size_px = size_px
        self.dict_name = dict_name
        self.pixel_format = pixel_format
        self.seq = 0
        self._payload: Any = None
        self._last = 0.0

    def start(self) -> None:
        scene, _ = render_marker_scene(
            self.placements, self.width, self.height, self.size_px, self.dict_name
        )
        if self.pixel_format == PixelFormat.LUMA_CHROMA_420.value:
            self._payload = bgr_to_i420(scene)
        elif self.pixel_format == PixelFormat.BGR8.value:
            self._payload = scene
        else:
            raise ValueError(f"synthetic capture cannot produce {self.pixel_format!r}")
        self._last = time.time()

    def next_frame(self) -> Frame | None:
        if self.fps > 0:
            wait = max(0.0, (1.0 / self.fps) - (time.time() - self._last))
            if wait > 0:
                time.sleep(wait)
        self._last = time.time()
        self.seq += 1
        buf = self._payload.copy() if isinstance(self._payload, np.ndarray) else self._payload
        return Frame(self.seq, self._last, buf, self.width, self.height, self.pixel_format)

    def stop(self) -> None:
        self._payload = None
