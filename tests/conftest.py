import asyncio
from typing import Iterable, List, Optional

import numpy as np
import pytest

from face_proctor.exceptions import DetectorLoadError, InferenceError
from face_proctor.schemas import FaceDetection, MonitorMode
from face_proctor.services.violation_store import ProctorStore


def bright_frame() -> np.ndarray:
    return np.full((48, 64, 3), 140, dtype=np.uint8)


def dark_frame() -> np.ndarray:
    return np.zeros((48, 64, 3), dtype=np.uint8)


class FakeDetector:
    """Scripted detector: returns the next face count per detect() call, then repeats the last one."""

    def __init__(
        self,
        face_counts: Iterable[int] = (1,),
        confidence: float = 0.9,
        mode: MonitorMode = MonitorMode.REDUCED,
        fail_on_init: bool = False,
        fail_on_detect_call: Optional[int] = None,
    ):
        self.face_counts = list(face_counts)
        self.confidence = confidence
        self.mode = mode
        self.fail_on_init = fail_on_init
        self.fail_on_detect_call = fail_on_detect_call

        self.initialize_calls = 0
        self.detect_calls = 0
        self.dispose_calls = 0
        self.detect_started = asyncio.Event()
        self.release_detect: Optional[asyncio.Event] = None
        self.release_init: Optional[asyncio.Event] = None

    async def initialize(self) -> MonitorMode:
        self.initialize_calls += 1
        if self.release_init is not None:
            await self.release_init.wait()
        await asyncio.sleep(0)
        if self.fail_on_init:
            raise DetectorLoadError("model assets missing")
        return self.mode

    async def detect(self, frame) -> List[FaceDetection]:
        self.detect_calls += 1
        self.detect_started.set()
        if self.release_detect is not None:
            await self.release_detect.wait()
        if self.fail_on_detect_call is not None and self.detect_calls >= self.fail_on_detect_call:
            raise InferenceError("backend crashed")
        index = min(self.detect_calls - 1, len(self.face_counts) - 1)
        return [FaceDetection(confidence=self.confidence) for _ in range(self.face_counts[index])]

    async def dispose(self) -> None:
        self.dispose_calls += 1


class FakeFrameSource:
    def __init__(self, frame: Optional[np.ndarray] = None, live: bool = True):
        self.frame = bright_frame() if frame is None else frame
        self.live = live
        self.reads = 0

    @property
    def is_live(self) -> bool:
        return self.live

    def read_frame(self):
        self.reads += 1
        return self.frame


class ImmediateFrameClock:
    """Ticks as fast as the event loop allows."""

    def __init__(self):
        self.waits = 0

    async def wait_next_frame(self) -> None:
        self.waits += 1
        await asyncio.sleep(0)

    def reset(self) -> None:
        pass


class ManualClock:
    """Millisecond clock that advances a fixed step on every read."""

    def __init__(self, start: float = 1_000_000.0, step: float = 10.0):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


async def wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def store():
    store = ProctorStore()
    store.enable()
    return store
