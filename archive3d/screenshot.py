"""
Screenshot and thumbnail capture from rendered frames.

Frames are RGB uint8 arrays (HxWx3) as produced by most renderers.
"""

import cv2
import numpy as np
from typing import Tuple

from archive3d.payload import PayloadHandle

FORMATS = {
    "jpeg": (".jpg", "image/jpeg"),
    "jpg": (".jpg", "image/jpeg"),
    "png": (".png", "image/png"),
    "webp": (".webp", "image/webp"),
}


def center_square(frame: np.ndarray) -> np.ndarray:
    """Crop the largest centered square from a frame."""
    height, width = frame.shape[:2]
    side = min(height, width)
    top = (height - side) // 2
    left = (width - side) // 2
    return frame[top:top + side, left:left + side]


def _encode_params(fmt: str, quality: float) -> list:
    if fmt in ("jpeg", "jpg"):
        return [cv2.IMWRITE_JPEG_QUALITY, int(round(quality * 100))]
    if fmt == "webp":
        return [cv2.IMWRITE_WEBP_QUALITY, int(round(quality * 100))]
    return []


def capture_screenshot(
    frame: np.ndarray,
    width: int = 1024,
    height: int = 1024,
    format: str = "jpeg",
    quality: float = 0.9,
    name: str = "screenshot",
) -> PayloadHandle:
    """
    Center-crop a frame to a square, resize it and encode it.

    Args:
        frame: HxWx3 RGB uint8 image
        width: Output width in pixels
        height: Output height in pixels
        format: "jpeg", "png" or "webp"
        quality: Encoder quality 0.0 - 1.0 (jpeg/webp only)
        name: File stem for the returned handle

    Returns:
        PayloadHandle named {name}.{ext} with the encoded image

    Raises:
        ValueError: For an unknown format or a frame that is not HxWx3
    """
    fmt = format.lower()
    if fmt not in FORMATS:
        raise ValueError(f"Unsupported screenshot format: {format}")
    frame = np.asarray(frame)
    if frame.ndim != 3 or frame.shape[2] != 3:
        raise ValueError(f"Expected an HxWx3 RGB frame, got shape {frame.shape}")

    square = center_square(frame)
    resized = cv2.resize(square, (width, height), interpolation=cv2.INTER_AREA)
    bgr = cv2.cvtColor(resized.astype(np.uint8), cv2.COLOR_RGB2BGR)

    ext, mime = FORMATS[fmt]
    ok, encoded = cv2.imencode(ext, bgr, _encode_params(fmt, quality))
    if not ok:
        raise ValueError(f"Failed to encode screenshot as {format}")
    return PayloadHandle.from_bytes(encoded.tobytes(), name=f"{name}{ext}", mime=mime)


def decode_image(handle: PayloadHandle) -> np.ndarray:
    """Decode an image payload back to an HxWx3 RGB array."""
    buffer = np.frombuffer(handle.read(), dtype=np.uint8)
    bgr = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if bgr is None:
        raise ValueError(f"Could not decode image {handle.name}")
    return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)


def image_size(handle: PayloadHandle) -> Tuple[int, int]:
    """(width, height) of an encoded image."""
    height, width = decode_image(handle).shape[:2]
    return width, height
