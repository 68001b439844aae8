from __future__ import annotations

"""
Camera scan session for QR membership cards.

State machine:

    idle -> requesting-camera -> scanning -> idle     (decode or cancel)
            requesting-camera -> error    -> idle     (cancel)

The capture device is a scoped resource. It is released on every way out
of `scanning`: a successful decode, cancel(), close(), and cancellation of
the run() task. Releasing twice, or releasing a device that was never
opened, does nothing.
"""

import asyncio
import logging
import os
import sys
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class ScanState(str, Enum):
    IDLE = "idle"
    REQUESTING_CAMERA = "requesting-camera"
    SCANNING = "scanning"
    ERROR = "error"


class Facing(str, Enum):
    REAR = "environment"
    FRONT = "user"


class CameraErrorReason(str, Enum):
    PERMISSION_DENIED = "permission-denied"
    NO_CAMERA = "no-camera"
    OTHER = "other"


CAMERA_ERROR_MESSAGES = {
    CameraErrorReason.PERMISSION_DENIED: (
        "Camera permission denied. Allow camera access and try again."
    ),
    CameraErrorReason.NO_CAMERA: "No camera found on this device.",
    CameraErrorReason.OTHER: "Could not access the camera. Check the device and permissions.",
}


class CameraError(Exception):
    pass


class CameraPermissionDenied(CameraError):
    pass


class NoCameraFound(CameraError):
    pass


def classify_camera_error(error: BaseException) -> CameraErrorReason:
    if isinstance(error, (CameraPermissionDenied, PermissionError)):
        return CameraErrorReason.PERMISSION_DENIED
    if isinstance(error, NoCameraFound):
        return CameraErrorReason.NO_CAMERA
    return CameraErrorReason.OTHER


class CaptureDevice(Protocol):
    def read(self) -> Any: ...

    def release(self) -> None: ...


DeviceOpener = Callable[[Facing], CaptureDevice]
Decoder = Callable[[Any], Optional[str]]


# --- OpenCV backend ---


class OpenCVCamera:
    """A cv2.VideoCapture handle; read() and release() may race safely."""

    def __init__(self, index: int):
        # Imported here so deployments without a camera never load OpenCV
        import cv2

        if sys.platform.startswith("linux"):
            node = Path(f"/dev/video{index}")
            if node.exists() and not os.access(node, os.R_OK | os.W_OK):
                raise CameraPermissionDenied(f"No permission to open {node}")

        self.index = index
        self._lock = threading.Lock()
        self._cap = cv2.VideoCapture(index)
        if not self._cap.isOpened():
            self._cap.release()
            self._cap = None
            raise NoCameraFound(f"No camera at index {index}")

    def read(self) -> Any:
        with self._lock:
            if self._cap is None:
                return None
            ok, frame = self._cap.read()
        return frame if ok else None

    def release(self) -> None:
        with self._lock:
            if self._cap is not None:
                self._cap.release()
                self._cap = None


def opencv_opener(rear_index: int, front_index: int | None) -> DeviceOpener:
    def open_device(facing: Facing) -> CaptureDevice:
        index = rear_index if facing is Facing.REAR else front_index
        if index is None:
            raise NoCameraFound(f"No {facing.value} camera configured")
        return OpenCVCamera(index)

    return open_device


def decode_qr(frame: Any) -> str | None:
    """Decode a QR code in a BGR frame; None when nothing was read."""
    import cv2

    text, _points, _ = cv2.QRCodeDetector().detectAndDecode(frame)
    return text or None


# --- Session ---


class ScanSession:
    def __init__(self, open_device: DeviceOpener, decoder: Decoder = decode_qr):
        self._open_device = open_device
        self._decoder = decoder
        self._device: CaptureDevice | None = None
        self.state = ScanState.IDLE
        self.error_reason: CameraErrorReason | None = None
        self._attempt = 0

    @property
    def error_message(self) -> str | None:
        if self.error_reason is None:
            return None
        return CAMERA_ERROR_MESSAGES[self.error_reason]

    @property
    def has_device(self) -> bool:
        return self._device is not None

    def _release(self) -> None:
        device, self._device = self._device, None
        if device is None:
            return
        try:
            device.release()
        except Exception as e:
            logger.warning("Error releasing capture device: %s", e)

    def _open_preferred(self) -> CaptureDevice:
        try:
            return self._open_device(Facing.REAR)
        except Exception as e:
            logger.info("Rear camera unavailable (%s), trying front camera", e)
        return self._open_device(Facing.FRONT)

    async def start(self) -> ScanState:
        """
        Open a camera, rear-facing first, and begin scanning.

        The device is opened in a worker thread; while that runs the session
        reports `requesting-camera`. A cancel() or close() that lands during
        the open wins: the late device is released and the session stays put.
        """
        if self.state in (ScanState.REQUESTING_CAMERA, ScanState.SCANNING):
            return self.state

        self._release()
        self.error_reason = None
        self.state = ScanState.REQUESTING_CAMERA
        self._attempt += 1
        attempt = self._attempt
        try:
            device = await asyncio.to_thread(self._open_preferred)
        except Exception as e:
            if attempt != self._attempt:
                return self.state
            self.error_reason = classify_camera_error(e)
            self.state = ScanState.ERROR
            logger.warning("Camera error (%s): %s", self.error_reason.value, e)
            return self.state

        if attempt != self._attempt:
            logger.info("Scan cancelled while the camera was opening")
            try:
                device.release()
            except Exception as e:
                logger.warning("Error releasing capture device: %s", e)
            return self.state

        self._device = device
        self.state = ScanState.SCANNING
        return self.state

    def feed(self, frame: Any) -> str | None:
        """
        Try to decode one frame.

        Misses and decoder errors are ignored and scanning continues. On a
        successful read the device is released, the session goes idle, and
        the decoded text is returned; this happens once per decode.
        """
        if self.state is not ScanState.SCANNING:
            return None
        try:
            text = self._decoder(frame)
        except Exception as e:
            logger.debug("Frame not decoded: %s", e)
            return None
        if not text:
            return None

        self._release()
        self.state = ScanState.IDLE
        return text

    def cancel(self) -> None:
        if self.state is ScanState.IDLE:
            return
        self._attempt += 1
        self._release()
        self.error_reason = None
        self.state = ScanState.IDLE

    def close(self) -> None:
        self._attempt += 1
        self._release()
        self.error_reason = None
        self.state = ScanState.IDLE

    async def run(
        self, on_decoded: Callable[[str], Awaitable[Any]], fps: float = 10.0
    ) -> None:
        """Read frames until a code is decoded or the session stops scanning."""
        interval = 1.0 / fps
        try:
            while self.state is ScanState.SCANNING:
                device = self._device
                if device is None:
                    break
                try:
                    frame = await asyncio.to_thread(device.read)
                except Exception as e:
                    logger.warning("Capture device read failed: %s", e)
                    break
                if frame is not None:
                    text = self.feed(frame)
                    if text is not None:
                        await on_decoded(text)
                        return
                await asyncio.sleep(interval)
        finally:
            if self.state is ScanState.SCANNING:
                self.cancel()
