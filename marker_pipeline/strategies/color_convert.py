"""Raw sensor buffers -> canonical BGR images.

Planar luma/chroma conversion uses BT.601 full-range coefficients computed in
float64, clamped to [0, 255] and truncated, so the same input bytes always
give the same output bytes.
"""

from __future__ import annotations

from typing import Any

import cv2
import numpy as np

from ..errors import FrameConversionError
from ..mp_types import Frame, PixelFormat

# BT.601 full range, as used by camera YUV_420_888 / NV21 streams
_R_V = 1.402
_G_U = 0.344136
_G_V = 0.714136
_B_U = 1.772


def _as_bytes(buffer: Any) -> np.ndarray:
    if buffer is None:
        raise FrameConversionError("frame buffer has been released")
    if isinstance(buffer, np.ndarray):
        if buffer.dtype != np.uint8:
            raise FrameConversionError(f"expected uint8 buffer, got {buffer.dtype}")
        return buffer.reshape(-1)
    try:
        return np.frombuffer(memoryview(buffer), dtype=np.uint8)
    except TypeError as exc:
        raise FrameConversionError(f"unsupported buffer type {type(buffer).__name__}") from exc


def _take(data: np.ndarray, expected: int, fmt: PixelFormat) -> np.ndarray:
    if data.size < expected:
        raise FrameConversionError(
            f"{fmt.value} buffer too short: {data.size} < {expected} bytes"
        )
    return data[:expected]


def _yuv_to_bgr(y: np.ndarray, u: np.ndarray, v: np.ndarray, width: int, height: int) -> np.ndarray:
    rows = np.arange(height) // 2
    cols = np.arange(width) // 2
    u = u[rows][:, cols].astype(np.float64) - 128.0
    v = v[rows][:, cols].astype(np.float64) - 128.0
    yf = y.astype(np.float64)

    r = yf + _R_V * v
    g = yf - _G_U * u - _G_V * v
    b = yf + _B_U * u

    out = np.empty((height, width, 3), dtype=np.uint8)
    out[..., 0] = np.clip(b, 0.0, 255.0).astype(np.uint8)
    out[..., 1] = np.clip(g, 0.0, 255.0).astype(np.uint8)
    out[..., 2] = np.clip(r, 0.0, 255.0).astype(np.uint8)
    return out


class ColorConverter:
    """Stateless converter; one instance can be shared freely."""

    canonical_channels = 3

    def convert(self, buffer: Any, width: int, height: int, source_format: str) -> np.ndarray:
        if width <= 0 or height <= 0:
            raise FrameConversionError(f"invalid frame size {width}x{height}")
        try:
            fmt = PixelFormat(source_format)
        except ValueError as exc:
            raise FrameConversionError(f"unsupported pixel format {source_format!r}") from exc

        data = _as_bytes(buffer)
        n = width * height

        if fmt in (PixelFormat.LUMA_CHROMA_420, PixelFormat.LUMA_CHROMA_NV21):
            cw, ch = (width + 1) // 2, (height + 1) // 2
            data = _take(data, n + 2 * cw * ch, fmt)
            y = data[:n].reshape(height, width)
            chroma = data[n:]
            if fmt is PixelFormat.LUMA_CHROMA_420:
                u = chroma[: cw * ch].reshape(ch, cw)
                v = chroma[cw * ch:].reshape(ch, cw)
            else:
                vu = chroma.reshape(ch, cw, 2)
                v, u = vu[..., 0], vu[..., 1]
            return _yuv_to_bgr(y, u, v, width, height)

        if fmt is PixelFormat.GRAY8:
            gray = _take(data, n, fmt).reshape(height, width)
            return cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)

        if fmt is PixelFormat.BGR8:
            return _take(data, n * 3, fmt).reshape(height, width, 3).copy()

        packed = _take(data, n * 4, fmt).reshape(height, width, 4)
        if fmt is PixelFormat.PACKED_BGRA:
            return cv2.cvtColor(packed, cv2.COLOR_BGRA2BGR)
        if fmt is PixelFormat.PACKED_RGBA:
            return cv2.cvtColor(packed, cv2.COLOR_RGBA2BGR)
        # ARGB: alpha first, then R, G, B
        return np.ascontiguousarray(packed[..., [3, 2, 1]])

    def convert_frame(self, f: Frame) -> np.ndarray:
        return self.convert(f.buffer, f.width, f.height, f.pixel_format)


def to_gray(image: np.ndarray) -> np.ndarray:
    """Single-channel view of a canonical image for the detector."""
    if image.ndim == 2:
        return image
    channels = image.shape[2]
    if channels == 1:
        return image[..., 0]
    if channels == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    raise ValueError(f"unsupported channel count {channels}")
