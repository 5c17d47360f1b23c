import logging
import threading
from typing import Optional, Protocol

import cv2
import numpy as np

from face_proctor import config
from face_proctor.exceptions import CameraUnavailableError

logger = logging.getLogger(__name__)


class FrameSource(Protocol):
    """Read-only handle on a live video feed."""

    @property
    def is_live(self) -> bool:
        """False once the device has stopped producing frames for good."""
        ...

    def read_frame(self) -> Optional[np.ndarray]:
        """Current decoded frame, or None if nothing is ready yet."""
        ...


def _usable(frame: Optional[np.ndarray]) -> bool:
    return frame is not None and frame.size > 0 and frame.shape[0] > 0 and frame.shape[1] > 0


class CameraFrameSource:
    """
    Local webcam through OpenCV.

    Whoever calls open() owns the capture and is the only one who should
    call release(); the monitor just reads from it.
    """

    def __init__(
        self,
        camera_index: int = config.CAMERA_INDEX,
        frame_width: Optional[int] = None,
        frame_height: Optional[int] = None,
    ):
        self.camera_index = camera_index
        self.frame_width = frame_width
        self.frame_height = frame_height
        self.cap = None
        self._lock = threading.Lock()

    def open(self) -> None:
        with self._lock:
            if self.cap is not None:
                return
            cap = cv2.VideoCapture(self.camera_index)
            if not cap.isOpened():
                cap.release()
                raise CameraUnavailableError(f"Could not open camera {self.camera_index}")
            if self.frame_width:
                cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.frame_width)
            if self.frame_height:
                cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.frame_height)
            self.cap = cap
            logger.info(f"Camera {self.camera_index} opened.")

    @property
    def is_live(self) -> bool:
        cap = self.cap
        return cap is not None and cap.isOpened()

    def read_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            if self.cap is None:
                return None
            success, frame = self.cap.read()
        if not success or not _usable(frame):
            return None
        return frame

    def release(self) -> None:
        with self._lock:
            if self.cap is None:
                return
            self.cap.release()
            self.cap = None
            logger.info(f"Camera {self.camera_index} released.")


class PushedFrameSource:
    """
    Frames pushed by a remote client as JPEG bytes.

    Only the newest frame is kept and each frame is handed out once, so the
    monitor never re-runs detection on a frame it has already seen.
    """

    def __init__(self):
        self._latest: Optional[np.ndarray] = None
        self._ended = False
        self._lock = threading.Lock()
        self.frames_received = 0
        self.frames_dropped = 0

    @property
    def is_live(self) -> bool:
        return not self._ended

    def push_jpeg(self, frame_bytes: bytes) -> bool:
        nparr = np.frombuffer(frame_bytes, np.uint8)
        frame = cv2.imdecode(nparr, cv2.IMREAD_COLOR) if nparr.size else None
        if not _usable(frame):
            self.frames_dropped += 1
            return False
        self.push_frame(frame)
        return True

    def push_frame(self, frame: np.ndarray) -> None:
        with self._lock:
            if self._latest is not None:
                self.frames_dropped += 1
            self._latest = frame
            self.frames_received += 1
            # A new frame means the feed is back
            self._ended = False

    def read_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            frame, self._latest = self._latest, None
        return frame

    def end(self) -> None:
        with self._lock:
            self._ended = True
            self._latest = None

    def resume(self) -> None:
        with self._lock:
            self._ended = False
