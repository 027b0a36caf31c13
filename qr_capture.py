# ============================================================
# qr_capture.py  -  QR scanning sessions and QR rendering
# ============================================================
#
# The browser owns the camera; it posts JPEG frames grabbed from
# getUserMedia. Decoding runs here with OpenCV's QRCodeDetector,
# behind a two-call capability so the flow can be tested with a
# fake scanner:
#
#   scanner.start(constraints, on_decode, on_error) -> handle
#   scanner.stop(handle)
#
# CaptureSession keeps at most one live handle per student and
# releases it on every exit path.
# ============================================================

from __future__ import annotations

import io
import itertools
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional
from urllib.parse import quote

import cv2
import numpy as np
import qrcode

logger = logging.getLogger(__name__)

DEFAULT_CONSTRAINTS: Dict[str, Any] = {
    "facingMode":  "environment",   # back camera on phones
    "fps":         10,
    "qrbox":       {"width": 250, "height": 250},
    "aspectRatio": 1.0,
}

PERMISSION_DENIED_MESSAGE = (
    "Camera permission denied. Please enable camera access in your browser settings."
)
NO_CAMERA_MESSAGE    = "No camera found on this device"
START_FAILED_MESSAGE = "Failed to start camera"

SCAN_PATH = "/student/scan-attendance"


class ScanError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CameraPermissionError(ScanError):
    pass


class CameraUnavailableError(ScanError):
    pass


def camera_error(name: str, message: str = "") -> ScanError:
    """Map a browser MediaDevices error name to a ScanError."""
    if name in ("NotAllowedError", "PermissionDeniedError", "SecurityError"):
        return CameraPermissionError(PERMISSION_DENIED_MESSAGE)
    if name in ("NotFoundError", "DevicesNotFoundError", "OverconstrainedError"):
        return CameraUnavailableError(NO_CAMERA_MESSAGE)
    return CameraUnavailableError(message or START_FAILED_MESSAGE)


# ================================================================
# SCANNER CAPABILITY
# ================================================================

_handle_ids = itertools.count(1)


class ScanHandle(ABC):
    def __init__(
        self,
        constraints: Dict[str, Any],
        on_decode: Callable[[str], None],
        on_error: Callable[[ScanError], None],
    ):
        self.id          = next(_handle_ids)
        self.constraints = constraints
        self.on_decode   = on_decode
        self.on_error    = on_error
        self.active      = True

    @abstractmethod
    def push(self, frame: bytes) -> None:
        """Decode one frame; report through on_decode / on_error."""


class QRScanner(ABC):
    @abstractmethod
    def start(
        self,
        constraints: Dict[str, Any],
        on_decode: Callable[[str], None],
        on_error: Callable[[ScanError], None],
    ) -> ScanHandle:
        """Open a handle; raise ScanError if the camera cannot be used."""

    @abstractmethod
    def stop(self, handle: ScanHandle) -> None:
        """Release the handle. Must be safe on an already released one."""


class _OpenCVHandle(ScanHandle):
    def __init__(self, constraints, on_decode, on_error):
        super().__init__(constraints, on_decode, on_error)
        self.detector: Optional[cv2.QRCodeDetector] = cv2.QRCodeDetector()

    def push(self, frame: bytes) -> None:
        if not self.active or self.detector is None:
            return
        text = decode_frame(frame, self.detector)
        if text:
            self.on_decode(text)


class OpenCVFrameScanner(QRScanner):
    def start(self, constraints, on_decode, on_error) -> ScanHandle:
        handle = _OpenCVHandle(constraints, on_decode, on_error)
        logger.info("QR scan handle %d opened", handle.id)
        return handle

    def stop(self, handle: ScanHandle) -> None:
        handle.active = False
        if isinstance(handle, _OpenCVHandle):
            handle.detector = None
        logger.info("QR scan handle %d released", handle.id)


def decode_frame(frame: bytes, detector: Optional[cv2.QRCodeDetector] = None) -> Optional[str]:
    """QR text in an encoded image, or None. Misses are normal while scanning."""
    nparr = np.frombuffer(frame, np.uint8)
    img   = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    if img is None:
        return None
    detector = detector or cv2.QRCodeDetector()
    text, points, _ = detector.detectAndDecode(img)
    if not text:
        logger.debug("No QR code in frame (%d bytes)", len(frame))
        return None
    return text


# ================================================================
# CAPTURE SESSION
# ================================================================

class CaptureSession:
    """
    Exclusive owner of one scan handle.

    ``on_token`` gets the decoded text after the handle is released.
    A permission denial sticks until ``grant_permission()``.
    """

    def __init__(
        self,
        scanner: QRScanner,
        on_token: Callable[[str], Any],
        on_error: Optional[Callable[[ScanError], None]] = None,
    ):
        self._scanner  = scanner
        self._on_token = on_token
        self._on_error = on_error
        self._handle: Optional[ScanHandle] = None
        self.permission   = "prompt"   # prompt | granted | denied
        self.initializing = False
        self.error: Optional[str] = None
        self.last_result: Any = None

    @property
    def scanning(self) -> bool:
        return self._handle is not None

    def start(self, constraints: Optional[Dict[str, Any]] = None) -> bool:
        if self.permission == "denied":
            self.error = PERMISSION_DENIED_MESSAGE
            return False
        self.stop()
        self.error        = None
        self.initializing = True
        try:
            self._handle = self._scanner.start(
                constraints or DEFAULT_CONSTRAINTS, self._decoded, self._failed
            )
        except ScanError as e:
            self._fail(e)
            return False
        finally:
            self.initializing = False
        return True

    def feed(self, frame: bytes) -> Any:
        """Hand one frame to the live handle; returns the redemption result if it decoded."""
        handle = self._handle
        if handle is None:
            return None
        self.last_result = None
        try:
            handle.push(frame)
        except ScanError as e:
            self._fail(e)
        except Exception:
            self.stop()
            raise
        return self.last_result

    def stop(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            self._scanner.stop(handle)

    @contextmanager
    def scanning_scope(self, constraints: Optional[Dict[str, Any]] = None) -> Iterator["CaptureSession"]:
        """Start, yield, and always release."""
        started = self.start(constraints)
        try:
            if not started:
                raise ScanError(self.error or START_FAILED_MESSAGE)
            yield self
        finally:
            self.stop()

    def report_client_error(self, name: str, message: str = "") -> ScanError:
        error = camera_error(name, message)
        self._fail(error)
        return error

    def grant_permission(self) -> None:
        self.permission = "granted"
        if self.error == PERMISSION_DENIED_MESSAGE:
            self.error = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "scanning":     self.scanning,
            "initializing": self.initializing,
            "permission":   self.permission,
            "error":        self.error,
        }

    def _decoded(self, text: str) -> None:
        self.stop()
        self.last_result = self._on_token(text)

    def _failed(self, error: ScanError) -> None:
        self._fail(error)

    def _fail(self, error: ScanError) -> None:
        self.stop()
        if isinstance(error, CameraPermissionError):
            self.permission = "denied"
        self.error = error.message
        logger.info("QR capture error: %s", error.message)
        if self._on_error:
            self._on_error(error)


# ================================================================
# RENDERING
# ================================================================

def share_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}{SCAN_PATH}?token={quote(token, safe='')}"


def render_qr_png(data: str) -> bytes:
    img = qrcode.make(data)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
