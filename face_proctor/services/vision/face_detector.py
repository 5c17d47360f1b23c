import asyncio
import logging
import os
import threading
from typing import Iterable, List, Optional, Protocol

import cv2
import mediapipe as mp
import numpy as np
from mediapipe.tasks import python
from mediapipe.tasks.python import vision

from face_proctor import config
from face_proctor.exceptions import DetectorLoadError, InferenceError
from face_proctor.schemas import FaceDetection, MonitorMode

logger = logging.getLogger(__name__)

BaseOptions = python.BaseOptions
FaceDetector = vision.FaceDetector
FaceDetectorOptions = vision.FaceDetectorOptions
VisionRunningMode = vision.RunningMode


class FaceDetectorBackend(Protocol):
    async def initialize(self) -> MonitorMode:
        ...

    async def detect(self, frame: np.ndarray) -> List[FaceDetection]:
        ...

    async def dispose(self) -> None:
        ...


def count_present_faces(
    detections: Iterable[FaceDetection],
    threshold: float = config.FACE_CONFIDENCE_THRESHOLD,
) -> int:
    return sum(1 for d in detections if d.confidence > threshold)


class MediaPipeFaceDetector:
    """
    BlazeFace detector from MediaPipe Tasks.

    Loading and inference run on worker threads so the event loop keeps
    ticking; a lock serialises them against dispose(), which therefore waits
    for an in-flight detection before closing the model.
    """

    def __init__(
        self,
        model_path: str = config.FACE_MODEL_PATH,
        min_confidence: float = config.FACE_CANDIDATE_CONFIDENCE,
        prefer_gpu: bool = config.PREFER_GPU,
    ):
        self.model_path = model_path
        self.min_confidence = min_confidence
        self.prefer_gpu = prefer_gpu
        self.mode = MonitorMode.NONE

        self._detector = None
        self._disposed = False
        self._lock = threading.Lock()

    async def initialize(self) -> MonitorMode:
        return await asyncio.to_thread(self._load)

    async def detect(self, frame: np.ndarray) -> List[FaceDetection]:
        return await asyncio.to_thread(self._detect_sync, frame)

    async def dispose(self) -> None:
        await asyncio.to_thread(self._release)

    def _load(self) -> MonitorMode:
        with self._lock:
            if self._disposed:
                raise DetectorLoadError("Detector was disposed before it finished loading")
            if self._detector is not None:
                return self.mode
            if not os.path.exists(self.model_path):
                raise DetectorLoadError(f"Face detection model not found: {self.model_path}")

            attempts = []
            if self.prefer_gpu:
                attempts.append((BaseOptions.Delegate.GPU, MonitorMode.FULL))
            attempts.append((BaseOptions.Delegate.CPU, MonitorMode.REDUCED))

            last_error: Optional[Exception] = None
            for delegate, mode in attempts:
                try:
                    options = FaceDetectorOptions(
                        base_options=BaseOptions(model_asset_path=self.model_path, delegate=delegate),
                        running_mode=VisionRunningMode.IMAGE,
                        min_detection_confidence=self.min_confidence,
                    )
                    self._detector = FaceDetector.create_from_options(options)
                    self.mode = mode
                    logger.info(f"Face detector loaded ({mode.value} mode, {delegate.name} delegate)")
                    return mode
                except Exception as e:
                    logger.warning(f"Face detector failed on {delegate.name} delegate: {e}")
                    last_error = e

            raise DetectorLoadError(f"Could not load face detector: {last_error}") from last_error

    def _detect_sync(self, img_bgr: np.ndarray) -> List[FaceDetection]:
        with self._lock:
            if self._detector is None:
                raise InferenceError("Face detector is not initialized")

            if img_bgr.ndim == 2:
                img_rgb = cv2.cvtColor(img_bgr, cv2.COLOR_GRAY2RGB)
            elif img_bgr.shape[2] == 4:
                img_rgb = cv2.cvtColor(img_bgr, cv2.COLOR_BGRA2RGB)
            else:
                img_rgb = cv2.cvtColor(img_bgr, cv2.COLOR_BGR2RGB)
            mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=np.ascontiguousarray(img_rgb))

            try:
                result = self._detector.detect(mp_image)
            except Exception as e:
                raise InferenceError(f"Face detection failed: {e}") from e

        faces = []
        for detection in result.detections:
            score = detection.categories[0].score if detection.categories else 0.0
            box = detection.bounding_box
            faces.append(
                FaceDetection(
                    confidence=float(score),
                    bbox=(box.origin_x, box.origin_y, box.width, box.height),
                )
            )
        return faces

    def _release(self) -> None:
        with self._lock:
            self._disposed = True
            if self._detector is None:
                return
            try:
                self._detector.close()
            finally:
                self._detector = None
                self.mode = MonitorMode.NONE
                logger.info("Face detector released")
